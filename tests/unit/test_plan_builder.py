"""
Unit tests for deployment plan building.
"""
import pytest

from stackpilot.errors import DependencyCycle, MalformedManifest, UnresolvedVariable
from stackpilot.MODELS.deployment_plan import ResourceKind
from stackpilot.PARSERS.manifest_parser import ManifestParser
from stackpilot.RUNNERS.plan_builder import PlanBuilder

MANIFEST = """
services:
  web:
    image: nginx:${NGINX_TAG:-1.25}
    ports:
      - "${WEB_PORT:-8080}:80"
    depends_on: [api]
    networks: [front]
  api:
    image: shop/api:${API_TAG}
    environment:
      DATABASE_URL: postgres://db:5432/${DB_NAME:-shop}
    depends_on: [db]
    networks: [front, back]
  db:
    image: postgres:16
    volumes:
      - pgdata:/var/lib/postgresql/data
      - /srv/backups:/backups:ro
    networks: [back]
networks:
  front: {}
  back: {}
  shared:
    external: true
    name: edge
volumes:
  pgdata: {}
"""


def build(text=MANIFEST, values=None, stack_name="shop"):
    definition = ManifestParser().parse(text)
    return PlanBuilder().build(definition, values if values is not None else {"API_TAG": "2.0"}, stack_name)


class TestPlanBuilder:
    """Tests for PlanBuilder."""

    def test_steps_are_networks_then_volumes_then_services(self):
        plan = build()
        kinds = [s.kind for s in plan.steps]
        assert kinds == [ResourceKind.NETWORK] * 2 + [ResourceKind.VOLUME] + [ResourceKind.SERVICE] * 3
        assert [s.name for s in plan.networks] == ['shop_front', 'shop_back']
        assert [s.name for s in plan.volumes] == ['shop_pgdata']
        assert [s.source_name for s in plan.services] == ['db', 'api', 'web']

    def test_topological_invariant(self):
        definition = ManifestParser().parse(MANIFEST)
        plan = PlanBuilder().build(definition, {"API_TAG": "2.0"}, "shop")
        for service in definition.services:
            index = plan.index_of(ResourceKind.SERVICE, service.name)
            for dep in service.depends_on:
                assert index > plan.index_of(ResourceKind.SERVICE, dep)

    def test_variables_are_resolved(self):
        plan = build(values={"API_TAG": "2.0", "WEB_PORT": "9000"})
        api = plan.steps[plan.index_of(ResourceKind.SERVICE, 'api')].spec
        web = plan.steps[plan.index_of(ResourceKind.SERVICE, 'web')].spec
        assert api['image'] == 'shop/api:2.0'
        assert api['environment'] == {'DATABASE_URL': 'postgres://db:5432/shop'}
        assert web['image'] == 'nginx:1.25'
        assert web['ports'] == [{'container': 80, 'host': 9000, 'host_ip': None, 'protocol': 'tcp'}]
        assert plan.variables['WEB_PORT'] == '9000'
        assert plan.variables['NGINX_TAG'] == '1.25'

    def test_service_spec_uses_runtime_names(self):
        plan = build()
        api = plan.steps[plan.index_of(ResourceKind.SERVICE, 'api')].spec
        db = plan.steps[plan.index_of(ResourceKind.SERVICE, 'db')].spec
        assert api['networks'] == ['shop_front', 'shop_back']
        assert api['depends_on'] == ['shop_db']
        assert api['labels']['stackpilot.stack'] == 'shop'
        assert api['labels']['stackpilot.service'] == 'api'
        assert db['volumes'] == [
            {'type': 'volume', 'source': 'shop_pgdata', 'target': '/var/lib/postgresql/data', 'read_only': False},
            {'type': 'bind', 'source': '/srv/backups', 'target': '/backups', 'read_only': True},
        ]

    def test_external_network_gets_no_step(self):
        plan = build()
        assert 'edge' not in [s.name for s in plan.steps]

    def test_unresolved_variable(self):
        with pytest.raises(UnresolvedVariable) as excinfo:
            build(values={})
        assert excinfo.value.names == ['API_TAG']

    def test_default_network_is_implicit(self):
        plan = build(text="services:\n  app:\n    image: app\n", values={}, stack_name="demo")
        assert [s.name for s in plan.steps] == ['demo_default', 'demo_app']
        assert plan.services[0].spec['networks'] == ['demo_default']

    def test_cycle(self):
        text = """
services:
  a:
    image: a
    depends_on: [b]
  b:
    image: b
    depends_on: [a]
"""
        with pytest.raises(DependencyCycle) as excinfo:
            build(text=text, values={})
        assert {'a', 'b'} & set(excinfo.value.services)

    def test_undefined_network(self):
        text = "services:\n  app:\n    image: app\n    networks: [nowhere]\n"
        with pytest.raises(MalformedManifest):
            build(text=text, values={})

    def test_resolved_port_must_be_numeric(self):
        text = 'services:\n  app:\n    image: app\n    ports: ["${PORT}:80"]\n'
        with pytest.raises(MalformedManifest):
            build(text=text, values={"PORT": "http"})
        with pytest.raises(MalformedManifest):
            build(text=text, values={"PORT": "70000"})

    def test_invalid_stack_name(self):
        with pytest.raises(ValueError):
            build(stack_name="bad name")

    def test_same_input_same_plan(self):
        assert build() == build()
