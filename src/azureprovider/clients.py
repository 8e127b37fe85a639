"""Narrow per-resource clients over the Azure management SDK.

Each client exposes only what the adapter needs from one resource kind:
create/update, get, list and delete where applicable. Mutations return a
LongRunningOperation, reads are coroutines that raise NotFound or a
TransientError-derived error, listings are ResourcePager objects. Every
call is routed through the shared ResilientCallGate.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from azure.core.credentials import TokenCredential
from azure.core.polling import PollingMethod
from azure.mgmt.compute import ComputeManagementClient
from azure.mgmt.compute.models import VirtualMachineScaleSetVMInstanceRequiredIDs
from azure.mgmt.network import NetworkManagementClient
from azure.mgmt.storage import StorageManagementClient

from .config import ADAPTER_VERSION, CloudConfig
from .environment import CloudEnvironment
from .resilience import LongRunningOperation, ResilientCallGate

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Default polling interval of the management clients. Operations started
# through the gate use its GatedARMPolling interval instead.
CLIENT_POLLING_INTERVAL_SECONDS = 5

USER_AGENT_PRODUCT = "azureprovider"
HOST_USER_AGENT_PRODUCT = "kubernetes-cloudprovider"

_END_OF_PAGES = object()


def user_agent(host_version: str = "unknown") -> str:
    """User agent suffix identifying the adapter and host versions."""
    return f"{USER_AGENT_PRODUCT}/{ADAPTER_VERSION}; {HOST_USER_AGENT_PRODUCT}/{host_version}"


def _next_page(page_iterator: Any) -> Any:
    try:
        return list(next(page_iterator))
    except StopIteration:
        return _END_OF_PAGES


class ResourcePager(Generic[T]):
    """Restartable, finite lazy listing of a paged collection.

    ``pages()`` fetches one page per step through the gate. The continuation
    token of the last successfully fetched page is kept so a failed listing
    can be resumed from that boundary; starting over with no token re-lists
    from the beginning.
    """

    def __init__(self, gate: ResilientCallGate, name: str, list_call: Callable[[], Any]) -> None:
        self._gate = gate
        self._name = name
        self._list_call = list_call
        self.continuation_token: str | None = None
        self.exhausted = False

    async def pages(
        self,
        continuation_token: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[list[T]]:
        """Yield pages until no continuation token remains."""
        self.exhausted = False
        page_iterator = self._list_call().by_page(continuation_token=continuation_token)

        while True:
            page = await self._gate.execute(
                self._name, lambda: _next_page(page_iterator), cancel
            )
            if page is _END_OF_PAGES:
                self.exhausted = True
                return
            self.continuation_token = page_iterator.continuation_token
            yield page

    async def collect(self, cancel: asyncio.Event | None = None) -> list[T]:
        """Exhaust the listing and return every item."""
        items: list[T] = []
        async for page in self.pages(cancel=cancel):
            items.extend(page)
        return items


class _ResourceClient:
    """Common plumbing for the narrow resource clients."""

    kind = "resource"

    def __init__(self, operations: Any, gate: ResilientCallGate) -> None:
        self._ops = operations
        self._gate = gate

    def _op_name(self, action: str, *names: str) -> str:
        return f"{self.kind}.{action}({'/'.join(names)})"

    def _lro(
        self, action: str, names: tuple[str, ...], begin: Callable[[PollingMethod[Any]], Any]
    ) -> LongRunningOperation[Any]:
        return LongRunningOperation(self._gate, self._op_name(action, *names), begin)

    async def _read(
        self,
        action: str,
        names: tuple[str, ...],
        call: Callable[[], Any],
        cancel: asyncio.Event | None,
    ) -> Any:
        return await self._gate.execute(self._op_name(action, *names), call, cancel)

    def _pager(self, names: tuple[str, ...], list_call: Callable[[], Any]) -> ResourcePager[Any]:
        return ResourcePager(self._gate, self._op_name("list", *names), list_call)


class InterfacesClient(_ResourceClient):
    kind = "networkInterface"

    def create_or_update(self, resource_group: str, name: str, parameters: Any) -> LongRunningOperation[Any]:
        return self._lro(
            "createOrUpdate",
            (resource_group, name),
            lambda polling: self._ops.begin_create_or_update(
                resource_group, name, parameters, polling=polling
            ),
        )

    async def get(
        self, resource_group: str, name: str, cancel: asyncio.Event | None = None
    ) -> Any:
        return await self._read(
            "get", (resource_group, name), lambda: self._ops.get(resource_group, name), cancel
        )

    async def get_scale_set_interface(
        self,
        resource_group: str,
        scale_set_name: str,
        instance_id: str,
        name: str,
        cancel: asyncio.Event | None = None,
    ) -> Any:
        return await self._read(
            "getScaleSetInterface",
            (resource_group, scale_set_name, instance_id, name),
            lambda: self._ops.get_virtual_machine_scale_set_network_interface(
                resource_group, scale_set_name, instance_id, name
            ),
            cancel,
        )

    def list(self, resource_group: str) -> ResourcePager[Any]:
        return self._pager((resource_group,), lambda: self._ops.list(resource_group))


class LoadBalancersClient(_ResourceClient):
    kind = "loadBalancer"

    def create_or_update(self, resource_group: str, name: str, parameters: Any) -> LongRunningOperation[Any]:
        return self._lro(
            "createOrUpdate",
            (resource_group, name),
            lambda polling: self._ops.begin_create_or_update(
                resource_group, name, parameters, polling=polling
            ),
        )

    async def get(
        self, resource_group: str, name: str, cancel: asyncio.Event | None = None
    ) -> Any:
        return await self._read(
            "get", (resource_group, name), lambda: self._ops.get(resource_group, name), cancel
        )

    def list(self, resource_group: str) -> ResourcePager[Any]:
        return self._pager((resource_group,), lambda: self._ops.list(resource_group))

    def delete(self, resource_group: str, name: str) -> LongRunningOperation[None]:
        return self._lro(
            "delete",
            (resource_group, name),
            lambda polling: self._ops.begin_delete(resource_group, name, polling=polling),
        )


class PublicIPAddressesClient(_ResourceClient):
    kind = "publicIPAddress"

    def create_or_update(self, resource_group: str, name: str, parameters: Any) -> LongRunningOperation[Any]:
        return self._lro(
            "createOrUpdate",
            (resource_group, name),
            lambda polling: self._ops.begin_create_or_update(
                resource_group, name, parameters, polling=polling
            ),
        )

    async def get(
        self, resource_group: str, name: str, cancel: asyncio.Event | None = None
    ) -> Any:
        return await self._read(
            "get", (resource_group, name), lambda: self._ops.get(resource_group, name), cancel
        )

    def list(self, resource_group: str) -> ResourcePager[Any]:
        return self._pager((resource_group,), lambda: self._ops.list(resource_group))

    def delete(self, resource_group: str, name: str) -> LongRunningOperation[None]:
        return self._lro(
            "delete",
            (resource_group, name),
            lambda polling: self._ops.begin_delete(resource_group, name, polling=polling),
        )


class SubnetsClient(_ResourceClient):
    kind = "subnet"

    def create_or_update(
        self, resource_group: str, vnet_name: str, name: str, parameters: Any
    ) -> LongRunningOperation[Any]:
        return self._lro(
            "createOrUpdate",
            (resource_group, vnet_name, name),
            lambda polling: self._ops.begin_create_or_update(
                resource_group, vnet_name, name, parameters, polling=polling
            ),
        )

    async def get(
        self,
        resource_group: str,
        vnet_name: str,
        name: str,
        cancel: asyncio.Event | None = None,
    ) -> Any:
        return await self._read(
            "get",
            (resource_group, vnet_name, name),
            lambda: self._ops.get(resource_group, vnet_name, name),
            cancel,
        )

    def list(self, resource_group: str, vnet_name: str) -> ResourcePager[Any]:
        return self._pager(
            (resource_group, vnet_name), lambda: self._ops.list(resource_group, vnet_name)
        )

    def delete(self, resource_group: str, vnet_name: str, name: str) -> LongRunningOperation[None]:
        return self._lro(
            "delete",
            (resource_group, vnet_name, name),
            lambda polling: self._ops.begin_delete(
                resource_group, vnet_name, name, polling=polling
            ),
        )


class SecurityGroupsClient(_ResourceClient):
    kind = "securityGroup"

    def create_or_update(self, resource_group: str, name: str, parameters: Any) -> LongRunningOperation[Any]:
        return self._lro(
            "createOrUpdate",
            (resource_group, name),
            lambda polling: self._ops.begin_create_or_update(
                resource_group, name, parameters, polling=polling
            ),
        )

    async def get(
        self, resource_group: str, name: str, cancel: asyncio.Event | None = None
    ) -> Any:
        return await self._read(
            "get", (resource_group, name), lambda: self._ops.get(resource_group, name), cancel
        )

    def list(self, resource_group: str) -> ResourcePager[Any]:
        return self._pager((resource_group,), lambda: self._ops.list(resource_group))

    def delete(self, resource_group: str, name: str) -> LongRunningOperation[None]:
        return self._lro(
            "delete",
            (resource_group, name),
            lambda polling: self._ops.begin_delete(resource_group, name, polling=polling),
        )


class RoutesClient(_ResourceClient):
    kind = "route"

    def create_or_update(
        self, resource_group: str, route_table_name: str, name: str, parameters: Any
    ) -> LongRunningOperation[Any]:
        return self._lro(
            "createOrUpdate",
            (resource_group, route_table_name, name),
            lambda polling: self._ops.begin_create_or_update(
                resource_group, route_table_name, name, parameters, polling=polling
            ),
        )

    async def get(
        self,
        resource_group: str,
        route_table_name: str,
        name: str,
        cancel: asyncio.Event | None = None,
    ) -> Any:
        return await self._read(
            "get",
            (resource_group, route_table_name, name),
            lambda: self._ops.get(resource_group, route_table_name, name),
            cancel,
        )

    def list(self, resource_group: str, route_table_name: str) -> ResourcePager[Any]:
        return self._pager(
            (resource_group, route_table_name),
            lambda: self._ops.list(resource_group, route_table_name),
        )

    def delete(
        self, resource_group: str, route_table_name: str, name: str
    ) -> LongRunningOperation[None]:
        return self._lro(
            "delete",
            (resource_group, route_table_name, name),
            lambda polling: self._ops.begin_delete(
                resource_group, route_table_name, name, polling=polling
            ),
        )


class RouteTablesClient(_ResourceClient):
    kind = "routeTable"

    def create_or_update(self, resource_group: str, name: str, parameters: Any) -> LongRunningOperation[Any]:
        return self._lro(
            "createOrUpdate",
            (resource_group, name),
            lambda polling: self._ops.begin_create_or_update(
                resource_group, name, parameters, polling=polling
            ),
        )

    async def get(
        self, resource_group: str, name: str, cancel: asyncio.Event | None = None
    ) -> Any:
        return await self._read(
            "get", (resource_group, name), lambda: self._ops.get(resource_group, name), cancel
        )

    def list(self, resource_group: str) -> ResourcePager[Any]:
        return self._pager((resource_group,), lambda: self._ops.list(resource_group))


class VirtualMachinesClient(_ResourceClient):
    kind = "virtualMachine"

    def create_or_update(self, resource_group: str, name: str, parameters: Any) -> LongRunningOperation[Any]:
        return self._lro(
            "createOrUpdate",
            (resource_group, name),
            lambda polling: self._ops.begin_create_or_update(
                resource_group, name, parameters, polling=polling
            ),
        )

    async def get(
        self, resource_group: str, name: str, cancel: asyncio.Event | None = None
    ) -> Any:
        return await self._read(
            "get", (resource_group, name), lambda: self._ops.get(resource_group, name), cancel
        )

    def list(self, resource_group: str) -> ResourcePager[Any]:
        return self._pager((resource_group,), lambda: self._ops.list(resource_group))


class AvailabilitySetsClient(_ResourceClient):
    kind = "availabilitySet"

    async def get(
        self, resource_group: str, name: str, cancel: asyncio.Event | None = None
    ) -> Any:
        return await self._read(
            "get", (resource_group, name), lambda: self._ops.get(resource_group, name), cancel
        )

    def list(self, resource_group: str) -> ResourcePager[Any]:
        return self._pager((resource_group,), lambda: self._ops.list(resource_group))


class VirtualMachineScaleSetsClient(_ResourceClient):
    kind = "virtualMachineScaleSet"

    def create_or_update(self, resource_group: str, name: str, parameters: Any) -> LongRunningOperation[Any]:
        return self._lro(
            "createOrUpdate",
            (resource_group, name),
            lambda polling: self._ops.begin_create_or_update(
                resource_group, name, parameters, polling=polling
            ),
        )

    async def get(
        self, resource_group: str, name: str, cancel: asyncio.Event | None = None
    ) -> Any:
        return await self._read(
            "get", (resource_group, name), lambda: self._ops.get(resource_group, name), cancel
        )

    def list(self, resource_group: str) -> ResourcePager[Any]:
        return self._pager((resource_group,), lambda: self._ops.list(resource_group))

    def update_instances(
        self, resource_group: str, name: str, instance_ids: list[str]
    ) -> LongRunningOperation[Any]:
        """Roll the scale set model out to the given instances."""
        required_ids = VirtualMachineScaleSetVMInstanceRequiredIDs(instance_ids=instance_ids)
        return self._lro(
            "updateInstances",
            (resource_group, name),
            lambda polling: self._ops.begin_update_instances(
                resource_group, name, required_ids, polling=polling
            ),
        )


class VirtualMachineScaleSetVMsClient(_ResourceClient):
    kind = "virtualMachineScaleSetVM"

    async def get(
        self,
        resource_group: str,
        scale_set_name: str,
        instance_id: str,
        cancel: asyncio.Event | None = None,
    ) -> Any:
        return await self._read(
            "get",
            (resource_group, scale_set_name, instance_id),
            lambda: self._ops.get(resource_group, scale_set_name, instance_id),
            cancel,
        )

    async def get_instance_view(
        self,
        resource_group: str,
        scale_set_name: str,
        instance_id: str,
        cancel: asyncio.Event | None = None,
    ) -> Any:
        return await self._read(
            "getInstanceView",
            (resource_group, scale_set_name, instance_id),
            lambda: self._ops.get_instance_view(resource_group, scale_set_name, instance_id),
            cancel,
        )

    def list(self, resource_group: str, scale_set_name: str) -> ResourcePager[Any]:
        return self._pager(
            (resource_group, scale_set_name),
            lambda: self._ops.list(resource_group, scale_set_name),
        )


class StorageAccountsClient(_ResourceClient):
    kind = "storageAccount"

    def create(self, resource_group: str, name: str, parameters: Any) -> LongRunningOperation[Any]:
        return self._lro(
            "create",
            (resource_group, name),
            lambda polling: self._ops.begin_create(
                resource_group, name, parameters, polling=polling
            ),
        )

    async def get(
        self, resource_group: str, name: str, cancel: asyncio.Event | None = None
    ) -> Any:
        return await self._read(
            "get",
            (resource_group, name),
            lambda: self._ops.get_properties(resource_group, name),
            cancel,
        )

    def list(self, resource_group: str) -> ResourcePager[Any]:
        return self._pager(
            (resource_group,), lambda: self._ops.list_by_resource_group(resource_group)
        )

    def delete(self, resource_group: str, name: str) -> LongRunningOperation[None]:
        # Storage account deletion is synchronous; the gate accepts plain results.
        return self._lro(
            "delete",
            (resource_group, name),
            lambda polling: self._ops.delete(resource_group, name),
        )


class DisksClient(_ResourceClient):
    kind = "disk"

    def create_or_update(self, resource_group: str, name: str, parameters: Any) -> LongRunningOperation[Any]:
        return self._lro(
            "createOrUpdate",
            (resource_group, name),
            lambda polling: self._ops.begin_create_or_update(
                resource_group, name, parameters, polling=polling
            ),
        )

    async def get(
        self, resource_group: str, name: str, cancel: asyncio.Event | None = None
    ) -> Any:
        return await self._read(
            "get", (resource_group, name), lambda: self._ops.get(resource_group, name), cancel
        )

    def list(self, resource_group: str) -> ResourcePager[Any]:
        return self._pager(
            (resource_group,), lambda: self._ops.list_by_resource_group(resource_group)
        )

    def delete(self, resource_group: str, name: str) -> LongRunningOperation[None]:
        return self._lro(
            "delete",
            (resource_group, name),
            lambda polling: self._ops.begin_delete(resource_group, name, polling=polling),
        )


@dataclass(frozen=True)
class ResourceClientSet:
    """All narrow clients, bound to one credential and one call gate."""

    interfaces: InterfacesClient
    load_balancers: LoadBalancersClient
    public_ip_addresses: PublicIPAddressesClient
    subnets: SubnetsClient
    security_groups: SecurityGroupsClient
    routes: RoutesClient
    route_tables: RouteTablesClient
    virtual_machines: VirtualMachinesClient
    availability_sets: AvailabilitySetsClient
    scale_sets: VirtualMachineScaleSetsClient
    scale_set_vms: VirtualMachineScaleSetVMsClient
    storage_accounts: StorageAccountsClient
    disks: DisksClient

    @classmethod
    def from_management_clients(
        cls,
        network: Any,
        compute: Any,
        storage: Any,
        gate: ResilientCallGate,
    ) -> ResourceClientSet:
        """Wrap already-built management clients."""
        return cls(
            interfaces=InterfacesClient(network.network_interfaces, gate),
            load_balancers=LoadBalancersClient(network.load_balancers, gate),
            public_ip_addresses=PublicIPAddressesClient(network.public_ip_addresses, gate),
            subnets=SubnetsClient(network.subnets, gate),
            security_groups=SecurityGroupsClient(network.network_security_groups, gate),
            routes=RoutesClient(network.routes, gate),
            route_tables=RouteTablesClient(network.route_tables, gate),
            virtual_machines=VirtualMachinesClient(compute.virtual_machines, gate),
            availability_sets=AvailabilitySetsClient(compute.availability_sets, gate),
            scale_sets=VirtualMachineScaleSetsClient(compute.virtual_machine_scale_sets, gate),
            scale_set_vms=VirtualMachineScaleSetVMsClient(
                compute.virtual_machine_scale_set_vms, gate
            ),
            storage_accounts=StorageAccountsClient(storage.storage_accounts, gate),
            disks=DisksClient(compute.disks, gate),
        )

    @classmethod
    def create(
        cls,
        credential: TokenCredential,
        config: CloudConfig,
        env: CloudEnvironment,
        gate: ResilientCallGate,
        host_version: str = "unknown",
    ) -> ResourceClientSet:
        """Build the management clients for the configured subscription.

        Args:
            credential: Shared token credential.
            config: Cloud configuration.
            env: Target cloud environment.
            gate: Shared call gate.
            host_version: Host orchestrator version for the user agent.
        """
        client_kwargs: dict[str, Any] = {
            "base_url": env.resource_manager_endpoint,
            "credential_scopes": [env.management_scope],
            "user_agent": user_agent(host_version),
            "polling_interval": CLIENT_POLLING_INTERVAL_SECONDS,
        }

        network = NetworkManagementClient(credential, config.subscription_id, **client_kwargs)
        compute = ComputeManagementClient(credential, config.subscription_id, **client_kwargs)
        storage = StorageManagementClient(credential, config.subscription_id, **client_kwargs)

        logger.info(
            "Created Azure management clients",
            extra={
                "subscription_id": config.subscription_id,
                "base_url": env.resource_manager_endpoint,
            },
        )
        return cls.from_management_clients(network, compute, storage, gate)
