"""Top-level cloud provider adapter.

CloudAdapter composes the credential, the call gate, the resource clients,
the compute topology and the disk controllers, and answers the capability
queries of the host orchestrator. It never builds Azure clients after
construction; all remote work goes through the VMSet and the client set.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from azure.core.credentials import TokenCredential

from .clients import ResourceClientSet
from .config import CloudConfig
from .credentials import resolve_credential
from .disks import (
    BlobDiskController,
    DiskControllerCommon,
    ManagedDiskController,
    init_disk_controllers,
)
from .environment import CloudEnvironment
from .ratelimit import rate_limiter_from_config
from .resilience import BackoffPolicy, ResilientCallGate
from .vmset import VMSet, new_vm_set

logger = logging.getLogger(__name__)

# Value used for the --cloud-provider flag of the host orchestrator
CLOUD_PROVIDER_NAME = "azure"


@dataclass(frozen=True)
class Capabilities:
    """Which host orchestrator interfaces the adapter implements."""

    load_balancer: bool
    instances: bool
    zones: bool
    routes: bool
    clusters: bool


class CloudAdapter:
    """Azure cloud provider.

    Use ``CloudAdapter.create`` to build one; construction either fully
    succeeds or raises.
    """

    def __init__(
        self,
        config: CloudConfig,
        env: CloudEnvironment,
        credential: TokenCredential,
        gate: ResilientCallGate,
        clients: ResourceClientSet,
        vm_set: VMSet,
        disk_common: DiskControllerCommon,
        blob_disks: BlobDiskController,
        managed_disks: ManagedDiskController,
    ) -> None:
        self._config = config
        self._env = env
        self._credential = credential
        self._gate = gate
        self._clients = clients
        self._vm_set = vm_set
        self._disk_common = disk_common
        self._blob_disks = blob_disks
        self._managed_disks = managed_disks

    @classmethod
    def create(
        cls,
        config: CloudConfig,
        env: CloudEnvironment,
        *,
        clients: ResourceClientSet | None = None,
        host_version: str = "unknown",
    ) -> CloudAdapter:
        """Build a fully initialized adapter.

        Args:
            config: Cloud configuration.
            env: Target cloud environment.
            clients: Pre-built client set; built from the credential when None.
            host_version: Host orchestrator version for the user agent.

        Raises:
            NoCredentialsAvailable, CertificateLoadError, UnsupportedKeyType:
                If credential resolution fails.
            DiskControllerError: If a disk controller cannot be initialized.
        """
        credential = resolve_credential(config, env)

        gate = ResilientCallGate(
            rate_limiter=rate_limiter_from_config(config),
            backoff=BackoffPolicy.from_config(config),
        )

        if clients is None:
            clients = ResourceClientSet.create(credential, config, env, gate, host_version)

        vm_set = new_vm_set(clients, config)

        disk_common = DiskControllerCommon.from_config(config, env, clients)
        blob_disks, managed_disks = init_disk_controllers(disk_common)

        logger.info(
            "Azure cloud provider initialized",
            extra={
                "cloud": env.name,
                "subscription_id": config.subscription_id,
                "resource_group": config.resource_group,
                "vm_type": vm_set.vm_type.value,
            },
        )
        return cls(
            config=config,
            env=env,
            credential=credential,
            gate=gate,
            clients=clients,
            vm_set=vm_set,
            disk_common=disk_common,
            blob_disks=blob_disks,
            managed_disks=managed_disks,
        )

    @property
    def config(self) -> CloudConfig:
        return self._config

    @property
    def environment(self) -> CloudEnvironment:
        return self._env

    @property
    def credential(self) -> TokenCredential:
        return self._credential

    @property
    def gate(self) -> ResilientCallGate:
        return self._gate

    @property
    def clients(self) -> ResourceClientSet:
        return self._clients

    @property
    def vm_set(self) -> VMSet:
        return self._vm_set

    @property
    def blob_disks(self) -> BlobDiskController:
        return self._blob_disks

    @property
    def managed_disks(self) -> ManagedDiskController:
        return self._managed_disks

    @property
    def provider_name(self) -> str:
        return CLOUD_PROVIDER_NAME

    def load_balancer(self) -> bool:
        return True

    def instances(self) -> bool:
        return True

    def zones(self) -> bool:
        return True

    def routes(self) -> bool:
        return True

    def clusters(self) -> bool:
        return False

    def has_cluster_id(self) -> bool:
        return True

    def capabilities(self) -> Capabilities:
        return Capabilities(
            load_balancer=self.load_balancer(),
            instances=self.instances(),
            zones=self.zones(),
            routes=self.routes(),
            clusters=self.clusters(),
        )

    async def node_addresses(self, node_name: str, cancel: asyncio.Event | None = None) -> list[str]:
        """Internal IP addresses of a node."""
        return [await self._vm_set.get_node_ip(node_name, cancel)]

    async def instance_id(self, node_name: str, cancel: asyncio.Event | None = None) -> str:
        """Provider-specific ID of the machine backing a node."""
        return await self._vm_set.get_instance_id(node_name, cancel)
