"""Shared configuration of the two disk lifecycle controllers.

Blob (unmanaged) disks live in storage accounts; managed disks are first
class compute resources. Both controllers are built from the same
DiskControllerCommon bundle. Attach/detach logic is not implemented here.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from azure.mgmt.compute.models import CreationData, Disk, DiskCreateOption, DiskSku

from .clients import DisksClient, ResourceClientSet, StorageAccountsClient
from .config import CloudConfig
from .environment import CloudEnvironment
from .errors import AdapterError

logger = logging.getLogger(__name__)

DEFAULT_MANAGED_DISK_SKU = "Standard_LRS"


class DiskControllerError(AdapterError):
    """Raised when a disk controller cannot be initialized."""

    pass


@dataclass(frozen=True)
class DiskControllerCommon:
    """Credentials, location and environment shared by both disk controllers."""

    aad_resource_endpoint: str
    client_id: str
    client_secret: str = field(repr=False)
    location: str
    storage_endpoint_suffix: str
    management_endpoint: str
    resource_group: str
    tenant_id: str
    token_endpoint: str
    subscription_id: str
    clients: ResourceClientSet = field(repr=False)

    @classmethod
    def from_config(
        cls, config: CloudConfig, env: CloudEnvironment, clients: ResourceClientSet
    ) -> DiskControllerCommon:
        return cls(
            aad_resource_endpoint=env.service_management_endpoint,
            client_id=config.aad_client_id,
            client_secret=config.aad_client_secret,
            location=config.location,
            storage_endpoint_suffix=env.storage_endpoint_suffix,
            management_endpoint=env.resource_manager_endpoint,
            resource_group=config.resource_group,
            tenant_id=config.tenant_id,
            token_endpoint=env.active_directory_endpoint,
            subscription_id=config.subscription_id,
            clients=clients,
        )


class BlobDiskController:
    """Blob (unmanaged) disks backed by storage accounts."""

    def __init__(self, common: DiskControllerCommon) -> None:
        if not common.storage_endpoint_suffix:
            raise ValueError("storage endpoint suffix is required")
        self._common = common
        self._storage_accounts: StorageAccountsClient = common.clients.storage_accounts

    def storage_account_blob_endpoint(self, account_name: str) -> str:
        """Blob service endpoint of a storage account in this cloud."""
        return f"https://{account_name}.blob.{self._common.storage_endpoint_suffix}"

    async def list_storage_accounts(self, cancel: asyncio.Event | None = None) -> list[str]:
        accounts = await self._storage_accounts.list(self._common.resource_group).collect(cancel)
        return [a.name for a in accounts]


class ManagedDiskController:
    """Managed disks in the cluster resource group."""

    def __init__(self, common: DiskControllerCommon) -> None:
        self._common = common
        self._disks: DisksClient = common.clients.disks

    async def create_managed_disk(
        self,
        name: str,
        size_gb: int,
        sku: str = DEFAULT_MANAGED_DISK_SKU,
        tags: dict[str, str] | None = None,
        cancel: asyncio.Event | None = None,
    ) -> str:
        """Create an empty managed disk and return its resource ID.

        Raises:
            DiskControllerError: If no location is configured for new disks.
        """
        if not self._common.location:
            raise DiskControllerError(f"cannot create managed disk {name}: no location configured")

        disk = Disk(
            location=self._common.location,
            sku=DiskSku(name=sku),
            creation_data=CreationData(create_option=DiskCreateOption.EMPTY),
            disk_size_gb=size_gb,
            tags=tags or {},
        )
        created: Any = await self._disks.create_or_update(
            self._common.resource_group, name, disk
        ).result(cancel)
        logger.info("Created managed disk", extra={"disk": name, "size_gb": size_gb})
        return created.id

    async def delete_managed_disk(self, name: str, cancel: asyncio.Event | None = None) -> None:
        await self._disks.delete(self._common.resource_group, name).result(cancel)
        logger.info("Deleted managed disk", extra={"disk": name})


def init_disk_controllers(
    common: DiskControllerCommon,
) -> tuple[BlobDiskController, ManagedDiskController]:
    """Build both disk controllers.

    Raises:
        DiskControllerError: If the blob controller fails to initialize.
    """
    try:
        blob_controller = BlobDiskController(common)
    except ValueError as e:
        raise DiskControllerError(f"failed to init Blob Disk Controller: {e}") from e

    return blob_controller, ManagedDiskController(common)
