"""
Idempotency contract for container runtime adapters.

RuntimeAdapterContract is meant to be subclassed for every adapter
implementation; the subclass only provides the 'adapter' fixture.
"""
import pytest

from stackpilot.errors import AdapterPermanent, AdapterTransient
from stackpilot.MANAGERS.runtime_adapter import InMemoryRuntimeAdapter
from stackpilot.MODELS.deployment_plan import ResourceKind

NETWORK_SPEC = {'driver': 'bridge', 'labels': {'stackpilot.stack': 'contract'}}
SERVICE_SPEC = {
    'image': 'nginx:1.25',
    'networks': ['contract_default'],
    'ports': [],
    'volumes': [],
}


class RuntimeAdapterContract:
    """Behaviour every ContainerRuntimeAdapter must provide."""

    @pytest.fixture
    def adapter(self):
        raise NotImplementedError

    def test_create_then_exists(self, adapter):
        handle = adapter.create_or_update(ResourceKind.NETWORK, 'contract_default', NETWORK_SPEC)
        assert handle.changed
        assert adapter.exists(ResourceKind.NETWORK, 'contract_default')

    def test_reapplying_same_spec_is_a_noop(self, adapter):
        adapter.create_or_update(ResourceKind.NETWORK, 'contract_default', NETWORK_SPEC)
        adapter.create_or_update(ResourceKind.SERVICE, 'contract_web', SERVICE_SPEC)

        network = adapter.create_or_update(ResourceKind.NETWORK, 'contract_default', NETWORK_SPEC)
        service = adapter.create_or_update(ResourceKind.SERVICE, 'contract_web', SERVICE_SPEC)

        assert not network.changed
        assert not service.changed
        assert adapter.exists(ResourceKind.SERVICE, 'contract_web')

    def test_changed_spec_updates(self, adapter):
        adapter.create_or_update(ResourceKind.NETWORK, 'contract_default', NETWORK_SPEC)
        adapter.create_or_update(ResourceKind.SERVICE, 'contract_web', SERVICE_SPEC)
        handle = adapter.create_or_update(
            ResourceKind.SERVICE, 'contract_web', {**SERVICE_SPEC, 'image': 'nginx:1.27'}
        )
        assert handle.changed

    def test_removing_absent_resource_succeeds(self, adapter):
        adapter.remove(ResourceKind.SERVICE, 'contract_missing')
        assert not adapter.exists(ResourceKind.SERVICE, 'contract_missing')

    def test_remove_twice(self, adapter):
        adapter.create_or_update(ResourceKind.NETWORK, 'contract_default', NETWORK_SPEC)
        adapter.remove(ResourceKind.NETWORK, 'contract_default')
        adapter.remove(ResourceKind.NETWORK, 'contract_default')
        assert not adapter.exists(ResourceKind.NETWORK, 'contract_default')


class TestInMemoryRuntimeAdapter(RuntimeAdapterContract):
    """Contract and fault injection for the in-memory adapter."""

    @pytest.fixture
    def adapter(self):
        return InMemoryRuntimeAdapter()

    def test_service_needs_its_network(self, adapter):
        with pytest.raises(AdapterPermanent):
            adapter.create_or_update(ResourceKind.SERVICE, 'contract_web', SERVICE_SPEC)

    def test_host_port_conflict(self, adapter):
        adapter.create_or_update(ResourceKind.NETWORK, 'contract_default', NETWORK_SPEC)
        spec = {**SERVICE_SPEC, 'ports': [{'container': 80, 'host': 8080, 'protocol': 'tcp'}]}
        adapter.create_or_update(ResourceKind.SERVICE, 'contract_a', spec)
        with pytest.raises(AdapterPermanent, match='already allocated'):
            adapter.create_or_update(ResourceKind.SERVICE, 'contract_b', spec)

    def test_fault_injection_with_limit(self, adapter):
        adapter.fail_on('contract_default', AdapterTransient('timeout'), times=1)
        with pytest.raises(AdapterTransient):
            adapter.create_or_update(ResourceKind.NETWORK, 'contract_default', NETWORK_SPEC)
        assert adapter.create_or_update(ResourceKind.NETWORK, 'contract_default', NETWORK_SPEC).changed
        assert adapter.calls_for('create_or_update') == [(ResourceKind.NETWORK, 'contract_default')] * 2

    def test_fault_limited_to_operation(self, adapter):
        adapter.fail_on('contract_default', AdapterPermanent('busy'), operation='remove')
        adapter.create_or_update(ResourceKind.NETWORK, 'contract_default', NETWORK_SPEC)
        with pytest.raises(AdapterPermanent):
            adapter.remove(ResourceKind.NETWORK, 'contract_default')
        adapter.clear_faults()
        adapter.remove(ResourceKind.NETWORK, 'contract_default')
        assert adapter.names(ResourceKind.NETWORK) == []

    def test_stored_spec_is_a_copy(self, adapter):
        spec = {'driver': 'bridge', 'labels': {}}
        adapter.create_or_update(ResourceKind.NETWORK, 'contract_default', spec)
        spec['labels']['changed'] = 'yes'
        assert adapter.snapshot()[(ResourceKind.NETWORK, 'contract_default')]['labels'] == {}
