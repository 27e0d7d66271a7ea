"""
Unit tests for upgrade checks and variable merging.
"""
import pytest

from stackpilot.MANAGERS.catalog import InMemoryStackCatalog
from stackpilot.MANAGERS.upgrade_engine import UpgradeEngine
from stackpilot.MODELS.deployment_plan import ResourceKind
from stackpilot.MODELS.product_deployment import ProductDeployment, StackDeployment

V1_APP = "services:\n  app:\n    image: demo/app:${A}-${B}\n"
V2_APP = "services:\n  app:\n    image: demo/app:${B}-${C:-x}\n"
V2_CACHE = "metadata:\n  name: cache\nservices:\n  redis:\n    image: redis:7\n"


@pytest.fixture
def catalog():
    catalog = InMemoryStackCatalog()
    catalog.register("demo", "1.0.0", {"demo:1.0.0:app": V1_APP})
    catalog.register("demo", "2.0.0", {"demo:2.0.0:app": V2_APP, "demo:2.0.0:cache": V2_CACHE})
    return catalog


def deployed(version="1.0.0", succeed=True):
    deployment = ProductDeployment(
        environment_id="env-1",
        product_group_id="demo",
        product_name="Demo",
        product_version=version,
        stacks=[StackDeployment(stack_name="demo-app", display_name="app", stack_id=f"demo:{version}:app", order=0)],
        shared_variables={"A": "1", "B": "2"},
    )
    deployment.begin_deploy_pass()
    deployment.start_stack("demo-app", "run-1")
    if succeed:
        deployment.complete_stack("demo-app", [(ResourceKind.SERVICE, "demo-app_app")])
    else:
        deployment.fail_stack("demo-app", "boom")
    deployment.end_pass()
    return deployment


class TestCheckUpgrade:
    """Tests for UpgradeEngine.check_upgrade."""

    def test_variable_and_stack_differences(self, catalog):
        info = UpgradeEngine().check_upgrade(deployed(), catalog)

        assert info.upgrade_available
        assert info.can_upgrade
        assert info.reason is None
        assert info.current_version == "1.0.0"
        assert info.latest_version == "2.0.0"
        assert info.new_variables == ["C"]
        assert info.removed_variables == ["A"]
        assert info.new_stacks == ["cache"]
        assert info.removed_stacks == []
        assert info.latest_stack_ids == ["demo:2.0.0:app", "demo:2.0.0:cache"]

    def test_failed_deployment_cannot_upgrade(self, catalog):
        info = UpgradeEngine().check_upgrade(deployed(succeed=False), catalog)

        assert info.upgrade_available
        assert not info.can_upgrade
        assert info.reason == "deployment is not running (status: Failed)"

    def test_no_newer_version(self, catalog):
        info = UpgradeEngine().check_upgrade(deployed("2.0.0"), catalog)

        assert not info.upgrade_available
        assert not info.can_upgrade
        assert info.reason is not None
        assert info.new_variables == []

    def test_changed_default_is_not_a_change(self):
        catalog = InMemoryStackCatalog()
        catalog.register("demo", "1.0.0", {"demo:1.0.0:app": "services:\n  app:\n    image: a:${TAG:-1}\n"})
        catalog.register("demo", "1.1.0", {"demo:1.1.0:app": "services:\n  app:\n    image: a:${TAG:-2}\n"})
        deployment = deployed()

        info = UpgradeEngine().check_upgrade(deployment, catalog)

        assert info.upgrade_available
        assert info.new_variables == []
        assert info.removed_variables == []

    def test_unknown_product(self):
        info = UpgradeEngine().check_upgrade(deployed(), InMemoryStackCatalog())
        assert not info.can_upgrade
        assert info.reason == "product not found in catalog"


class TestMergeVariables:
    """Tests for UpgradeEngine.merge_variables."""

    def test_merge(self):
        merged = UpgradeEngine.merge_variables(
            existing={"A": "1", "B": "2"},
            supplied={"C": "3"},
            declared=["B", "C"],
        )
        assert merged == {"B": "2", "C": "3"}

    def test_supplied_value_wins(self):
        merged = UpgradeEngine.merge_variables({"B": "2"}, {"B": "20"}, ["B"])
        assert merged == {"B": "20"}

    def test_new_variable_without_value_is_left_to_default(self):
        assert UpgradeEngine.merge_variables({"A": "1"}, None, ["A", "C"]) == {"A": "1"}
