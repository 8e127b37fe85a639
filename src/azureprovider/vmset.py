"""Compute topology abstraction shared by load balancer, instance and route logic.

Cluster nodes are either standalone virtual machines grouped in availability
sets, or members of virtual machine scale sets. VMSet hides the difference:
callers resolve a node's network interface and edit backend pool
membership the same way for both. The variant is chosen once at startup
(see new_vm_set) and never changes.

Membership edits are idempotent. Adding a node that is already a member or
removing one that is not returns False without writing anything.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from azure.mgmt.compute.models import SubResource
from azure.mgmt.network.models import BackendAddressPool

from .clients import ResourceClientSet
from .config import CloudConfig, VMType
from .errors import AmbiguousPool, NotFound, PermanentError

logger = logging.getLogger(__name__)

# Scale set computer names are <prefix><6 base36 digits of the instance id>
SCALE_SET_INSTANCE_SUFFIX_LENGTH = 6


@dataclass(frozen=True)
class InterfaceRef:
    """The network interface attached to a node.

    Attributes:
        name: Interface name.
        id: Full ARM resource ID.
        resource_group: Resource group of the interface.
        private_ip: Private IP of the primary IP configuration.
        backend_pool_ids: Backend pools the primary IP configuration belongs to.
        scale_set_name: Owning scale set (scale set topology only).
        instance_id: Scale set instance ID (scale set topology only).
    """

    name: str
    id: str
    resource_group: str
    private_ip: str | None = None
    backend_pool_ids: tuple[str, ...] = ()
    scale_set_name: str | None = None
    instance_id: str | None = None


def last_segment(resource_id: str) -> str:
    """Return the last path segment of an ARM resource ID."""
    segments = [s for s in resource_id.split("/") if s]
    if not segments:
        raise PermanentError(f"invalid resource ID: {resource_id!r}")
    return segments[-1]


def resource_group_from_id(resource_id: str, default: str) -> str:
    """Return the resource group named in an ARM resource ID, or ``default``."""
    segments = resource_id.split("/")
    for i, segment in enumerate(segments[:-1]):
        if segment.lower() == "resourcegroups" and segments[i + 1]:
            return segments[i + 1]
    return default


def select_primary(items: list[Any] | None, what: str) -> Any:
    """Pick the primary entry of a list of NIC references or IP configurations.

    A single entry is primary by definition.

    Raises:
        PermanentError: If the list is empty or no entry is marked primary.
    """
    if not items:
        raise PermanentError(f"no {what} found")
    if len(items) == 1:
        return items[0]
    for item in items:
        if getattr(item, "primary", False):
            return item
    raise PermanentError(f"failed to find a primary {what}")


def parse_scale_set_computer_name(computer_name: str) -> tuple[str, str] | None:
    """Split a scale set computer name into (scale set name, instance ID).

    Returns:
        The pair, or None if the name does not follow the naming scheme.
    """
    if len(computer_name) <= SCALE_SET_INSTANCE_SUFFIX_LENGTH:
        return None

    prefix = computer_name[:-SCALE_SET_INSTANCE_SUFFIX_LENGTH]
    suffix = computer_name[-SCALE_SET_INSTANCE_SUFFIX_LENGTH:]
    try:
        instance_id = int(suffix, 36)
    except ValueError:
        return None
    return prefix, str(instance_id)


def _contains_pool(pools: list[Any], pool_id: str) -> bool:
    return any((p.id or "").lower() == pool_id.lower() for p in pools)


def _interface_ref(
    interface: Any,
    resource_group: str,
    scale_set_name: str | None = None,
    instance_id: str | None = None,
) -> InterfaceRef:
    ip_config = select_primary(interface.ip_configurations, "ip configuration")
    pools = ip_config.load_balancer_backend_address_pools or []
    return InterfaceRef(
        name=interface.name,
        id=interface.id,
        resource_group=resource_group,
        private_ip=ip_config.private_ip_address,
        backend_pool_ids=tuple(p.id for p in pools),
        scale_set_name=scale_set_name,
        instance_id=instance_id,
    )


class VMSet(ABC):
    """Capabilities every compute topology provides."""

    @property
    @abstractmethod
    def vm_type(self) -> VMType:
        """Topology implemented by this variant."""

    @abstractmethod
    async def resolve_node_network_interface(
        self, node_name: str, cancel: asyncio.Event | None = None
    ) -> InterfaceRef:
        """Resolve a node to its primary network interface.

        Raises:
            NotFound: If the node does not exist in this topology.
        """

    @abstractmethod
    async def add_node_to_backend_pool(
        self, pool_id: str, node_name: str, cancel: asyncio.Event | None = None
    ) -> bool:
        """Make the node a member of the backend pool.

        Returns:
            True if membership was written, False if nothing had to change.
        """

    @abstractmethod
    async def remove_node_from_backend_pool(
        self, pool_id: str, node_name: str, cancel: asyncio.Event | None = None
    ) -> bool:
        """Remove the node from the backend pool.

        Returns:
            True if membership was written, False if nothing had to change.
        """

    @abstractmethod
    async def list_availability_sets(self, cancel: asyncio.Event | None = None) -> list[str]:
        """Names of the availability sets in the resource group."""

    @abstractmethod
    async def list_scale_sets(self, cancel: asyncio.Event | None = None) -> list[str]:
        """Names of the scale sets in the resource group."""

    @abstractmethod
    async def get_primary_pool_name(self, cancel: asyncio.Event | None = None) -> str:
        """Name of the availability set or scale set whose nodes back the load balancer.

        Raises:
            AmbiguousPool: If several exist and no primary name is configured.
            NotFound: If none exist.
        """

    @abstractmethod
    async def get_instance_id(self, node_name: str, cancel: asyncio.Event | None = None) -> str:
        """ARM resource ID of the machine backing the node."""

    async def get_node_ip(self, node_name: str, cancel: asyncio.Event | None = None) -> str:
        """Private IP of the node's primary interface."""
        interface = await self.resolve_node_network_interface(node_name, cancel)
        if not interface.private_ip:
            raise NotFound(f"no private IP on interface {interface.name} of node {node_name}")
        return interface.private_ip


def _choose_primary(kind: str, candidates: list[str]) -> str:
    if len(candidates) == 1:
        return candidates[0]
    if not candidates:
        raise NotFound(f"no {kind} found and no primary {kind} name is configured")
    raise AmbiguousPool(candidates)


class AvailabilitySetTopology(VMSet):
    """Nodes are standalone virtual machines; node name == VM name."""

    def __init__(self, clients: ResourceClientSet, config: CloudConfig) -> None:
        self._virtual_machines = clients.virtual_machines
        self._availability_sets = clients.availability_sets
        self._interfaces = clients.interfaces
        self._resource_group = config.resource_group
        self._primary_availability_set = config.primary_availability_set_name

    @property
    def vm_type(self) -> VMType:
        return VMType.STANDARD

    async def _get_node_interface(
        self, node_name: str, cancel: asyncio.Event | None
    ) -> tuple[Any, Any, str]:
        vm = await self._virtual_machines.get(self._resource_group, node_name, cancel)
        network_profile = vm.network_profile
        nic_reference = select_primary(
            network_profile.network_interfaces if network_profile else None,
            f"network interface of VM {node_name}",
        )
        nic_resource_group = resource_group_from_id(nic_reference.id, self._resource_group)
        interface = await self._interfaces.get(
            nic_resource_group, last_segment(nic_reference.id), cancel
        )
        return vm, interface, nic_resource_group

    def _in_primary_availability_set(self, vm: Any) -> bool:
        if not self._primary_availability_set:
            return True
        if vm.availability_set is None or not vm.availability_set.id:
            return False
        return last_segment(vm.availability_set.id).lower() == self._primary_availability_set.lower()

    async def resolve_node_network_interface(
        self, node_name: str, cancel: asyncio.Event | None = None
    ) -> InterfaceRef:
        _, interface, resource_group = await self._get_node_interface(node_name, cancel)
        return _interface_ref(interface, resource_group)

    async def add_node_to_backend_pool(
        self, pool_id: str, node_name: str, cancel: asyncio.Event | None = None
    ) -> bool:
        vm, interface, resource_group = await self._get_node_interface(node_name, cancel)

        if not self._in_primary_availability_set(vm):
            logger.info(
                "Skipping node outside the primary availability set",
                extra={"node": node_name, "primary": self._primary_availability_set},
            )
            return False

        ip_config = select_primary(interface.ip_configurations, "ip configuration")
        pools = list(ip_config.load_balancer_backend_address_pools or [])
        if _contains_pool(pools, pool_id):
            return False

        pools.append(BackendAddressPool(id=pool_id))
        ip_config.load_balancer_backend_address_pools = pools
        logger.info("Adding node to backend pool", extra={"node": node_name, "pool": pool_id})
        await self._interfaces.create_or_update(resource_group, interface.name, interface).result(
            cancel
        )
        return True

    async def remove_node_from_backend_pool(
        self, pool_id: str, node_name: str, cancel: asyncio.Event | None = None
    ) -> bool:
        _, interface, resource_group = await self._get_node_interface(node_name, cancel)

        ip_config = select_primary(interface.ip_configurations, "ip configuration")
        pools = list(ip_config.load_balancer_backend_address_pools or [])
        if not _contains_pool(pools, pool_id):
            return False

        ip_config.load_balancer_backend_address_pools = [
            p for p in pools if (p.id or "").lower() != pool_id.lower()
        ]
        logger.info("Removing node from backend pool", extra={"node": node_name, "pool": pool_id})
        await self._interfaces.create_or_update(resource_group, interface.name, interface).result(
            cancel
        )
        return True

    async def list_availability_sets(self, cancel: asyncio.Event | None = None) -> list[str]:
        availability_sets = await self._availability_sets.list(self._resource_group).collect(cancel)
        return [a.name for a in availability_sets]

    async def list_scale_sets(self, cancel: asyncio.Event | None = None) -> list[str]:
        return []

    async def get_primary_pool_name(self, cancel: asyncio.Event | None = None) -> str:
        if self._primary_availability_set:
            return self._primary_availability_set
        return _choose_primary("availability set", await self.list_availability_sets(cancel))

    async def get_instance_id(self, node_name: str, cancel: asyncio.Event | None = None) -> str:
        vm = await self._virtual_machines.get(self._resource_group, node_name, cancel)
        return vm.id


class ScaleSetTopology(VMSet):
    """Nodes are scale set members; node name == the member's computer name."""

    def __init__(self, clients: ResourceClientSet, config: CloudConfig) -> None:
        self._scale_sets = clients.scale_sets
        self._scale_set_vms = clients.scale_set_vms
        self._interfaces = clients.interfaces
        self._resource_group = config.resource_group
        self._primary_scale_set = config.primary_scale_set_name

    @property
    def vm_type(self) -> VMType:
        return VMType.VMSS

    @staticmethod
    def _computer_name(vm: Any) -> str:
        os_profile = getattr(vm, "os_profile", None)
        return (getattr(os_profile, "computer_name", None) or "").lower()

    async def _resolve_node(self, node_name: str, cancel: asyncio.Event | None) -> tuple[str, Any]:
        """Find (scale set name, scale set VM) for a node.

        The naming scheme gives a direct lookup; members with custom computer
        names are found by scanning every scale set.
        """
        parsed = parse_scale_set_computer_name(node_name)
        if parsed is not None:
            scale_set_name, instance_id = parsed
            try:
                vm = await self._scale_set_vms.get(
                    self._resource_group, scale_set_name, instance_id, cancel
                )
            except NotFound:
                vm = None
            if vm is not None and self._computer_name(vm) in ("", node_name.lower()):
                return scale_set_name, vm

        for scale_set_name in await self.list_scale_sets(cancel):
            members = await self._scale_set_vms.list(self._resource_group, scale_set_name).collect(
                cancel
            )
            for vm in members:
                if self._computer_name(vm) == node_name.lower():
                    return scale_set_name, vm

        raise NotFound(f"node {node_name} not found in any scale set")

    async def resolve_node_network_interface(
        self, node_name: str, cancel: asyncio.Event | None = None
    ) -> InterfaceRef:
        scale_set_name, vm = await self._resolve_node(node_name, cancel)
        network_profile = vm.network_profile
        nic_reference = select_primary(
            network_profile.network_interfaces if network_profile else None,
            f"network interface of node {node_name}",
        )
        interface = await self._interfaces.get_scale_set_interface(
            self._resource_group,
            scale_set_name,
            vm.instance_id,
            last_segment(nic_reference.id),
            cancel,
        )
        return _interface_ref(
            interface,
            self._resource_group,
            scale_set_name=scale_set_name,
            instance_id=vm.instance_id,
        )

    def _primary_ip_configuration(self, scale_set: Any) -> Any:
        profile = scale_set.virtual_machine_profile
        network_profile = profile.network_profile if profile else None
        nic_config = select_primary(
            network_profile.network_interface_configurations if network_profile else None,
            f"network interface configuration of scale set {scale_set.name}",
        )
        return select_primary(nic_config.ip_configurations, "ip configuration")

    async def _write_scale_set(
        self, scale_set_name: str, scale_set: Any, instance_id: str, cancel: asyncio.Event | None
    ) -> None:
        await self._scale_sets.create_or_update(
            self._resource_group, scale_set_name, scale_set
        ).result(cancel)
        await self._scale_sets.update_instances(
            self._resource_group, scale_set_name, [instance_id]
        ).result(cancel)

    async def add_node_to_backend_pool(
        self, pool_id: str, node_name: str, cancel: asyncio.Event | None = None
    ) -> bool:
        scale_set_name, vm = await self._resolve_node(node_name, cancel)

        if self._primary_scale_set and scale_set_name.lower() != self._primary_scale_set.lower():
            logger.info(
                "Skipping node outside the primary scale set",
                extra={"node": node_name, "primary": self._primary_scale_set},
            )
            return False

        scale_set = await self._scale_sets.get(self._resource_group, scale_set_name, cancel)
        ip_config = self._primary_ip_configuration(scale_set)
        pools = list(ip_config.load_balancer_backend_address_pools or [])
        if _contains_pool(pools, pool_id):
            return False

        pools.append(SubResource(id=pool_id))
        ip_config.load_balancer_backend_address_pools = pools
        logger.info(
            "Adding scale set node to backend pool",
            extra={"node": node_name, "scale_set": scale_set_name, "pool": pool_id},
        )
        await self._write_scale_set(scale_set_name, scale_set, vm.instance_id, cancel)
        return True

    async def remove_node_from_backend_pool(
        self, pool_id: str, node_name: str, cancel: asyncio.Event | None = None
    ) -> bool:
        scale_set_name, vm = await self._resolve_node(node_name, cancel)

        scale_set = await self._scale_sets.get(self._resource_group, scale_set_name, cancel)
        ip_config = self._primary_ip_configuration(scale_set)
        pools = list(ip_config.load_balancer_backend_address_pools or [])
        if not _contains_pool(pools, pool_id):
            return False

        ip_config.load_balancer_backend_address_pools = [
            p for p in pools if (p.id or "").lower() != pool_id.lower()
        ]
        logger.info(
            "Removing scale set node from backend pool",
            extra={"node": node_name, "scale_set": scale_set_name, "pool": pool_id},
        )
        await self._write_scale_set(scale_set_name, scale_set, vm.instance_id, cancel)
        return True

    async def list_availability_sets(self, cancel: asyncio.Event | None = None) -> list[str]:
        return []

    async def list_scale_sets(self, cancel: asyncio.Event | None = None) -> list[str]:
        scale_sets = await self._scale_sets.list(self._resource_group).collect(cancel)
        return [s.name for s in scale_sets]

    async def get_primary_pool_name(self, cancel: asyncio.Event | None = None) -> str:
        if self._primary_scale_set:
            return self._primary_scale_set
        return _choose_primary("scale set", await self.list_scale_sets(cancel))

    async def get_instance_id(self, node_name: str, cancel: asyncio.Event | None = None) -> str:
        _, vm = await self._resolve_node(node_name, cancel)
        return vm.id


def new_vm_set(clients: ResourceClientSet, config: CloudConfig) -> VMSet:
    """Create the VMSet variant for the configured topology."""
    if config.vm_type == VMType.VMSS:
        logger.info("Using scale set topology")
        return ScaleSetTopology(clients, config)
    logger.info("Using availability set topology")
    return AvailabilitySetTopology(clients, config)
