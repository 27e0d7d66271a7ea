"""
Unit tests for service ordering.
"""
import pytest

from stackpilot.errors import DependencyCycle, MalformedManifest
from stackpilot.MODELS.service_definition import ServiceSpec
from stackpilot.MODELS.stack_definition import StackDefinition
from stackpilot.RUNNERS.dependency_resolver import DependencyResolver


def make_definition(**deps):
    return StackDefinition(services=[
        ServiceSpec(name=name, image=f"{name}:latest", depends_on=list(after))
        for name, after in deps.items()
    ])


class TestDependencyResolver:
    """Tests for DependencyResolver."""

    def test_dependencies_come_first(self):
        definition = make_definition(web=['api'], api=['db', 'cache'], db=[], cache=[])
        order = DependencyResolver().resolve_order(definition)
        assert order == ['db', 'cache', 'api', 'web']

    def test_ties_keep_declaration_order(self):
        definition = make_definition(c=[], a=[], b=[])
        assert DependencyResolver().resolve_order(definition) == ['c', 'a', 'b']

    def test_order_is_stable_across_runs(self):
        definition = make_definition(web=['db'], worker=['db'], db=[], admin=['web'])
        resolver = DependencyResolver()
        assert resolver.resolve_order(definition) == resolver.resolve_order(definition)
        assert resolver.resolve_order(definition) == ['db', 'web', 'worker', 'admin']

    def test_removal_order_is_reversed(self):
        definition = make_definition(web=['db'], db=[])
        assert DependencyResolver().removal_order(definition) == ['web', 'db']

    def test_two_service_cycle(self):
        definition = make_definition(a=['b'], b=['a'])
        with pytest.raises(DependencyCycle) as excinfo:
            DependencyResolver().resolve_order(definition)
        assert set(excinfo.value.services) & {'a', 'b'}
        assert ('a', 'b') in excinfo.value.edges

    def test_cycle_behind_a_healthy_service(self):
        definition = make_definition(db=[], x=['db', 'z'], y=['x'], z=['y'])
        with pytest.raises(DependencyCycle) as excinfo:
            DependencyResolver().resolve_order(definition)
        assert set(excinfo.value.services) == {'x', 'y', 'z'}

    def test_self_dependency(self):
        definition = make_definition(a=['a'])
        with pytest.raises(DependencyCycle) as excinfo:
            DependencyResolver().resolve_order(definition)
        assert excinfo.value.edges == [('a', 'a')]

    def test_unknown_dependency(self):
        definition = make_definition(web=['ghost'])
        with pytest.raises(MalformedManifest):
            DependencyResolver().resolve_order(definition)
