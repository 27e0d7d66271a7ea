"""
Unit tests for applying a single stack's plan.
"""
import threading

import pytest

from stackpilot.config import OrchestratorSettings
from stackpilot.errors import AdapterPermanent, AdapterTransient
from stackpilot.MANAGERS.runtime_adapter import InMemoryRuntimeAdapter
from stackpilot.MODELS.deployment_plan import FailureKind, ResourceKind, StepOutcome
from stackpilot.PARSERS.manifest_parser import ManifestParser
from stackpilot.RUNNERS.plan_builder import PlanBuilder
from stackpilot.RUNNERS.plan_executor import DeploymentOrchestrator

MANIFEST = """
services:
  web:
    image: nginx:1.25
    ports: ["8080:80"]
    depends_on: [api]
  api:
    image: shop/api:2.0
    volumes: [data:/data]
volumes:
  data: {}
"""


@pytest.fixture
def plan():
    return PlanBuilder().build(ManifestParser().parse(MANIFEST), {}, "shop")


@pytest.fixture
def adapter():
    return InMemoryRuntimeAdapter()


@pytest.fixture
def executor(adapter):
    return DeploymentOrchestrator(adapter, OrchestratorSettings(retry_backoff_seconds=0))


class TestApply:
    """Tests for DeploymentOrchestrator.apply."""

    def test_applies_every_step_in_order(self, plan, adapter, executor):
        result = executor.apply(plan)

        assert result.succeeded
        assert [r.outcome for r in result.results] == [StepOutcome.APPLIED] * 4
        assert [name for _, name in adapter.calls_for('create_or_update')] == [
            'shop_default', 'shop_data', 'shop_api', 'shop_web'
        ]

    def test_reapplying_is_a_noop(self, plan, adapter, executor):
        executor.apply(plan)
        state = adapter.snapshot()

        second = executor.apply(plan)

        assert second.succeeded
        assert all(r.outcome == StepOutcome.UNCHANGED for r in second.results)
        assert adapter.snapshot() == state

    def test_stops_at_first_failure(self, plan, adapter, executor):
        adapter.fail_on('shop_api', AdapterPermanent('invalid spec'))

        result = executor.apply(plan)

        assert not result.succeeded
        outcomes = [r.outcome for r in result.results]
        assert outcomes == [StepOutcome.APPLIED, StepOutcome.APPLIED, StepOutcome.FAILED, StepOutcome.SKIPPED]
        assert result.failed_step.failure_kind == FailureKind.PERMANENT
        assert result.failed_step.attempts == 1
        assert "shop_api" in result.error_message
        # Already applied steps are left in place
        assert adapter.exists(ResourceKind.VOLUME, 'shop_data')
        assert result.applied_resources == [(ResourceKind.NETWORK, 'shop_default'), (ResourceKind.VOLUME, 'shop_data')]

    def test_best_effort_keeps_going(self, plan, adapter, executor):
        adapter.fail_on('shop_data', AdapterPermanent('disk full'))

        result = executor.apply(plan, best_effort=True)

        outcomes = {r.step.name: r.outcome for r in result.results}
        assert outcomes['shop_data'] == StepOutcome.FAILED
        assert outcomes['shop_default'] == StepOutcome.APPLIED
        # The api service needs the missing volume
        assert outcomes['shop_api'] == StepOutcome.FAILED
        assert outcomes['shop_web'] == StepOutcome.APPLIED

    def test_transient_failure_is_retried_once(self, plan, adapter, executor):
        adapter.fail_on('shop_api', AdapterTransient('timeout'), times=1)

        result = executor.apply(plan)

        assert result.succeeded
        api = [r for r in result.results if r.step.name == 'shop_api'][0]
        assert api.outcome == StepOutcome.APPLIED
        assert api.attempts == 2

    def test_transient_failure_escalates_after_retry(self, plan, adapter, executor):
        adapter.fail_on('shop_api', AdapterTransient('timeout'))

        result = executor.apply(plan)

        assert result.failed_step.failure_kind == FailureKind.TRANSIENT
        assert result.failed_step.attempts == 2
        assert len([c for c in adapter.calls_for('create_or_update') if c[1] == 'shop_api']) == 2

    def test_unexpected_error_is_permanent(self, plan, adapter, executor):
        adapter.fail_on('shop_web', RuntimeError('adapter bug'))

        result = executor.apply(plan)

        assert result.failed_step.failure_kind == FailureKind.PERMANENT
        assert 'RuntimeError' in result.failed_step.error

    def test_cancellation_between_steps(self, plan):
        cancel = threading.Event()

        def cancel_after_volume(operation, kind, name):
            if name == 'shop_data':
                cancel.set()

        adapter = InMemoryRuntimeAdapter(before_call=cancel_after_volume)
        result = DeploymentOrchestrator(adapter).apply(plan, cancel_event=cancel)

        assert result.cancelled
        assert [r.outcome for r in result.results] == [
            StepOutcome.APPLIED, StepOutcome.APPLIED, StepOutcome.CANCELLED, StepOutcome.CANCELLED
        ]
        assert result.error_message == "Deployment cancelled"
        assert adapter.exists(ResourceKind.VOLUME, 'shop_data')
        assert not adapter.exists(ResourceKind.SERVICE, 'shop_api')


class TestRemove:
    """Tests for DeploymentOrchestrator.remove."""

    def test_removes_in_reverse_order(self, plan, adapter, executor):
        applied = executor.apply(plan).applied_resources

        result = executor.remove('shop', applied)

        assert result.succeeded
        assert [name for _, name in adapter.calls_for('remove')] == [
            'shop_web', 'shop_api', 'shop_data', 'shop_default'
        ]
        assert adapter.snapshot() == {}

    def test_absent_resources_are_removed_successfully(self, adapter, executor):
        result = executor.remove('shop', [(ResourceKind.SERVICE, 'shop_ghost')])
        assert result.succeeded

    def test_every_removal_is_attempted(self, plan, adapter, executor):
        applied = executor.apply(plan).applied_resources
        adapter.fail_on('shop_api', AdapterPermanent('in use'), operation='remove')

        result = executor.remove('shop', applied)

        assert not result.succeeded
        assert [r.outcome for r in result.results] == [
            StepOutcome.APPLIED, StepOutcome.FAILED, StepOutcome.APPLIED, StepOutcome.APPLIED
        ]
