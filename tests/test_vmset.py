"""Tests for the availability set and scale set topologies."""

import pytest
from azure_mock import (
    MockAzureState,
    add_availability_set,
    add_scale_set,
    add_scale_set_vm,
    add_vm,
    backend_pool_id,
    scale_set_computer_name,
)

from azureprovider.clients import ResourceClientSet
from azureprovider.config import CloudConfig, VMType
from azureprovider.errors import AmbiguousPool, NotFound, PermanentError
from azureprovider.ratelimit import AlwaysAdmitRateLimiter
from azureprovider.resilience import ResilientCallGate
from azureprovider.vmset import (
    AvailabilitySetTopology,
    ScaleSetTopology,
    VMSet,
    last_segment,
    new_vm_set,
    parse_scale_set_computer_name,
    resource_group_from_id,
    select_primary,
)

RG = "k8s-rg"
POOL = backend_pool_id(RG, "kubernetes", "kubernetes")
OTHER_POOL = backend_pool_id(RG, "kubernetes-internal", "kubernetes")


def _vm_set(state: MockAzureState, **config: object) -> VMSet:
    gate = ResilientCallGate(AlwaysAdmitRateLimiter())
    clients = ResourceClientSet.from_management_clients(
        state.network, state.compute, state.storage, gate
    )
    return new_vm_set(clients, CloudConfig(resource_group=RG, **config))


def _nic_pools(state: MockAzureState, resource_group: str, nic_name: str) -> list[str]:
    interface = state.network_interfaces.stored(resource_group, nic_name)
    pools = interface.ip_configurations[0].load_balancer_backend_address_pools or []
    return [p.id for p in pools]


def _scale_set_pools(state: MockAzureState, name: str) -> list[str]:
    scale_set = state.virtual_machine_scale_sets.stored(RG, name)
    nic_config = scale_set.virtual_machine_profile.network_profile.network_interface_configurations[0]
    pools = nic_config.ip_configurations[0].load_balancer_backend_address_pools or []
    return [p.id for p in pools]


class TestHelpers:
    """Tests for resource ID and naming helpers."""

    def test_last_segment(self) -> None:
        assert last_segment("/subscriptions/s/resourceGroups/rg/providers/x/nics/nic-1") == "nic-1"

    def test_last_segment_invalid(self) -> None:
        with pytest.raises(PermanentError):
            last_segment("///")

    def test_resource_group_from_id(self) -> None:
        resource_id = "/subscriptions/s/resourcegroups/Net-RG/providers/x/nics/nic-1"

        assert resource_group_from_id(resource_id, "default") == "Net-RG"
        assert resource_group_from_id("nic-1", "default") == "default"

    @pytest.mark.parametrize(
        "name, expected",
        [
            ("pool000001", ("pool", "1")),
            ("k8s-agentpool-1234500000a", ("k8s-agentpool-12345", "10")),
            ("pool00000z", ("pool", "35")),
            ("pool", None),
            ("my-node-1", None),
        ],
    )
    def test_parse_scale_set_computer_name(self, name: str, expected: object) -> None:
        assert parse_scale_set_computer_name(name) == expected

    def test_parse_matches_builder(self) -> None:
        assert parse_scale_set_computer_name(scale_set_computer_name("pool", 1295)) == (
            "pool",
            "1295",
        )

    def test_select_primary_single_entry(self) -> None:
        class Entry:
            primary = None

        entry = Entry()
        assert select_primary([entry], "ip configuration") is entry

    def test_select_primary_requires_flag(self) -> None:
        class Entry:
            primary = False

        with pytest.raises(PermanentError, match="primary"):
            select_primary([Entry(), Entry()], "ip configuration")

    def test_select_primary_empty(self) -> None:
        with pytest.raises(PermanentError):
            select_primary([], "ip configuration")


class TestNewVMSet:
    """Tests for topology selection."""

    def test_standard(self) -> None:
        vm_set = _vm_set(MockAzureState())

        assert isinstance(vm_set, AvailabilitySetTopology)
        assert vm_set.vm_type == VMType.STANDARD

    def test_vmss(self) -> None:
        vm_set = _vm_set(MockAzureState(), vm_type="vmss")

        assert isinstance(vm_set, ScaleSetTopology)
        assert vm_set.vm_type == VMType.VMSS


class TestAvailabilitySetTopology:
    """Tests for standalone VM nodes."""

    async def test_resolve_node_network_interface(self) -> None:
        state = MockAzureState()
        add_vm(state, RG, "node-1", "10.0.0.4", pools=(POOL,))
        vm_set = _vm_set(state)

        interface = await vm_set.resolve_node_network_interface("node-1")

        assert interface.name == "node-1-nic"
        assert interface.resource_group == RG
        assert interface.private_ip == "10.0.0.4"
        assert interface.backend_pool_ids == (POOL,)
        assert interface.scale_set_name is None

    async def test_interface_in_other_resource_group(self) -> None:
        state = MockAzureState()
        add_vm(state, RG, "node-1", "10.0.0.4", nic_resource_group="net-rg")
        vm_set = _vm_set(state)

        interface = await vm_set.resolve_node_network_interface("node-1")

        assert interface.resource_group == "net-rg"

    async def test_unknown_node(self) -> None:
        vm_set = _vm_set(MockAzureState())

        with pytest.raises(NotFound):
            await vm_set.resolve_node_network_interface("ghost")

    async def test_add_is_idempotent(self) -> None:
        """Test that adding twice writes membership once."""
        state = MockAzureState()
        add_vm(state, RG, "node-1", "10.0.0.4")
        vm_set = _vm_set(state)

        assert await vm_set.add_node_to_backend_pool(POOL, "node-1") is True
        assert await vm_set.add_node_to_backend_pool(POOL, "node-1") is False

        assert state.call_count("network_interfaces.begin_create_or_update") == 1
        assert _nic_pools(state, RG, "node-1-nic") == [POOL]

    async def test_add_keeps_existing_pools(self) -> None:
        state = MockAzureState()
        add_vm(state, RG, "node-1", "10.0.0.4", pools=(OTHER_POOL,))
        vm_set = _vm_set(state)

        await vm_set.add_node_to_backend_pool(POOL, "node-1")

        assert _nic_pools(state, RG, "node-1-nic") == [OTHER_POOL, POOL]

    async def test_pool_ids_compared_case_insensitively(self) -> None:
        state = MockAzureState()
        add_vm(state, RG, "node-1", "10.0.0.4", pools=(POOL,))
        vm_set = _vm_set(state)

        assert await vm_set.add_node_to_backend_pool(POOL.upper(), "node-1") is False

    async def test_remove(self) -> None:
        state = MockAzureState()
        add_vm(state, RG, "node-1", "10.0.0.4", pools=(POOL, OTHER_POOL))
        vm_set = _vm_set(state)

        assert await vm_set.remove_node_from_backend_pool(POOL, "node-1") is True
        assert await vm_set.remove_node_from_backend_pool(POOL, "node-1") is False

        assert state.call_count("network_interfaces.begin_create_or_update") == 1
        assert _nic_pools(state, RG, "node-1-nic") == [OTHER_POOL]

    async def test_node_outside_primary_availability_set_skipped(self) -> None:
        state = MockAzureState()
        add_availability_set(state, RG, "as-primary")
        add_availability_set(state, RG, "as-other")
        add_vm(state, RG, "node-1", "10.0.0.4", availability_set="as-other")
        add_vm(state, RG, "node-2", "10.0.0.5", availability_set="as-primary")
        vm_set = _vm_set(state, primary_availability_set_name="AS-Primary")

        assert await vm_set.add_node_to_backend_pool(POOL, "node-1") is False
        assert await vm_set.add_node_to_backend_pool(POOL, "node-2") is True

        assert _nic_pools(state, RG, "node-1-nic") == []
        assert _nic_pools(state, RG, "node-2-nic") == [POOL]

    async def test_primary_pool_name_configured(self) -> None:
        state = MockAzureState()
        add_availability_set(state, RG, "as-1")
        add_availability_set(state, RG, "as-2")
        vm_set = _vm_set(state, primary_availability_set_name="as-2")

        assert await vm_set.get_primary_pool_name() == "as-2"
        assert state.call_count("availability_sets.list") == 0

    async def test_primary_pool_name_single_candidate(self) -> None:
        state = MockAzureState()
        add_availability_set(state, RG, "as-1")
        vm_set = _vm_set(state)

        assert await vm_set.get_primary_pool_name() == "as-1"

    async def test_primary_pool_name_ambiguous(self) -> None:
        state = MockAzureState()
        add_availability_set(state, RG, "as-1")
        add_availability_set(state, RG, "as-2")
        vm_set = _vm_set(state)

        with pytest.raises(AmbiguousPool) as exc_info:
            await vm_set.get_primary_pool_name()

        assert sorted(exc_info.value.candidates) == ["as-1", "as-2"]

    async def test_primary_pool_name_none(self) -> None:
        vm_set = _vm_set(MockAzureState())

        with pytest.raises(NotFound):
            await vm_set.get_primary_pool_name()

    async def test_node_ip_and_instance_id(self) -> None:
        state = MockAzureState()
        vm = add_vm(state, RG, "node-1", "10.0.0.4")
        vm_set = _vm_set(state)

        assert await vm_set.get_node_ip("node-1") == "10.0.0.4"
        assert await vm_set.get_instance_id("node-1") == vm.id

    async def test_lists(self) -> None:
        state = MockAzureState()
        add_availability_set(state, RG, "as-1")
        vm_set = _vm_set(state)

        assert await vm_set.list_availability_sets() == ["as-1"]
        assert await vm_set.list_scale_sets() == []


class TestScaleSetTopology:
    """Tests for scale set member nodes."""

    async def test_resolve_by_naming_scheme(self) -> None:
        """Test that conventional computer names resolve without scanning."""
        state = MockAzureState()
        add_scale_set(state, RG, "pool")
        add_scale_set_vm(state, RG, "pool", 1, "10.1.0.5")
        vm_set = _vm_set(state, vm_type="vmss")

        interface = await vm_set.resolve_node_network_interface("pool000001")

        assert interface.scale_set_name == "pool"
        assert interface.instance_id == "1"
        assert interface.private_ip == "10.1.0.5"
        assert state.call_count("virtual_machine_scale_sets.list") == 0

    async def test_resolve_custom_computer_name_by_scan(self) -> None:
        state = MockAzureState()
        add_scale_set(state, RG, "pool-a")
        add_scale_set(state, RG, "pool-b")
        for i in range(3):
            add_scale_set_vm(state, RG, "pool-a", i, f"10.1.0.{i + 4}")
        add_scale_set_vm(state, RG, "pool-b", 4, "10.2.0.8", computer_name="gpu-node")
        vm_set = _vm_set(state, vm_type="vmss")

        interface = await vm_set.resolve_node_network_interface("gpu-node")

        assert interface.scale_set_name == "pool-b"
        assert interface.instance_id == "4"
        assert interface.private_ip == "10.2.0.8"

    async def test_unknown_node(self) -> None:
        """Test that a node in no scale set is NotFound."""
        state = MockAzureState()
        add_scale_set(state, RG, "pool")
        add_scale_set_vm(state, RG, "pool", 1, "10.1.0.5")
        vm_set = _vm_set(state, vm_type="vmss")

        with pytest.raises(NotFound):
            await vm_set.resolve_node_network_interface("pool000009")

    async def test_add_is_idempotent(self) -> None:
        state = MockAzureState()
        add_scale_set(state, RG, "pool")
        add_scale_set_vm(state, RG, "pool", 1, "10.1.0.5")
        vm_set = _vm_set(state, vm_type="vmss")

        assert await vm_set.add_node_to_backend_pool(POOL, "pool000001") is True
        assert await vm_set.add_node_to_backend_pool(POOL, "pool000001") is False

        assert state.call_count("virtual_machine_scale_sets.begin_create_or_update") == 1
        assert state.virtual_machine_scale_sets.updated_instances == [("pool", ["1"])]
        assert _scale_set_pools(state, "pool") == [POOL]

    async def test_remove(self) -> None:
        state = MockAzureState()
        add_scale_set(state, RG, "pool", pools=(POOL,))
        add_scale_set_vm(state, RG, "pool", 1, "10.1.0.5")
        vm_set = _vm_set(state, vm_type="vmss")

        assert await vm_set.remove_node_from_backend_pool(POOL, "pool000001") is True
        assert await vm_set.remove_node_from_backend_pool(POOL, "pool000001") is False

        assert _scale_set_pools(state, "pool") == []
        assert state.virtual_machine_scale_sets.updated_instances == [("pool", ["1"])]

    async def test_node_outside_primary_scale_set_skipped(self) -> None:
        state = MockAzureState()
        add_scale_set(state, RG, "pool-a")
        add_scale_set(state, RG, "pool-b")
        add_scale_set_vm(state, RG, "pool-b", 2, "10.2.0.6")
        vm_set = _vm_set(state, vm_type="vmss", primary_scale_set_name="pool-a")

        assert await vm_set.add_node_to_backend_pool(POOL, "pool-b000002") is False

        assert state.call_count("virtual_machine_scale_sets.begin_create_or_update") == 0

    async def test_primary_pool_name_ambiguous(self) -> None:
        state = MockAzureState()
        add_scale_set(state, RG, "pool-a")
        add_scale_set(state, RG, "pool-b")
        vm_set = _vm_set(state, vm_type="vmss")

        with pytest.raises(AmbiguousPool):
            await vm_set.get_primary_pool_name()

    async def test_primary_pool_name_configured(self) -> None:
        vm_set = _vm_set(MockAzureState(), vm_type="vmss", primary_scale_set_name="pool-a")

        assert await vm_set.get_primary_pool_name() == "pool-a"

    async def test_primary_pool_name_single_candidate(self) -> None:
        state = MockAzureState()
        add_scale_set(state, RG, "pool")
        vm_set = _vm_set(state, vm_type="vmss")

        assert await vm_set.get_primary_pool_name() == "pool"

    async def test_node_ip_and_instance_id(self) -> None:
        state = MockAzureState()
        add_scale_set(state, RG, "pool")
        vm = add_scale_set_vm(state, RG, "pool", 36, "10.1.0.7")
        vm_set = _vm_set(state, vm_type="vmss")

        assert await vm_set.get_node_ip("pool000010") == "10.1.0.7"
        assert await vm_set.get_instance_id("pool000010") == vm.id

    async def test_lists(self) -> None:
        state = MockAzureState()
        add_scale_set(state, RG, "pool")
        vm_set = _vm_set(state, vm_type="vmss")

        assert await vm_set.list_scale_sets() == ["pool"]
        assert await vm_set.list_availability_sets() == []
