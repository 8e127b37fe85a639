"""Azure cloud environments and their endpoints."""

from __future__ import annotations

from dataclasses import dataclass

from .config import ConfigurationError


@dataclass(frozen=True)
class CloudEnvironment:
    """Endpoints of one Azure cloud.

    Attributes:
        name: Canonical environment name (e.g. AzurePublicCloud).
        active_directory_endpoint: AAD login endpoint.
        resource_manager_endpoint: ARM endpoint used as client base URL.
        service_management_endpoint: Classic management endpoint, used as
            the AAD resource for the disk controllers.
        storage_endpoint_suffix: DNS suffix of storage account endpoints.
    """

    name: str
    active_directory_endpoint: str
    resource_manager_endpoint: str
    service_management_endpoint: str
    storage_endpoint_suffix: str

    @property
    def authority_host(self) -> str:
        """AAD authority host in the form azure-identity expects."""
        return self.active_directory_endpoint.rstrip("/")

    @property
    def management_scope(self) -> str:
        """OAuth scope for tokens against the resource manager."""
        return f"{self.resource_manager_endpoint.rstrip('/')}/.default"


PUBLIC_CLOUD = CloudEnvironment(
    name="AzurePublicCloud",
    active_directory_endpoint="https://login.microsoftonline.com/",
    resource_manager_endpoint="https://management.azure.com/",
    service_management_endpoint="https://management.core.windows.net/",
    storage_endpoint_suffix="core.windows.net",
)

CHINA_CLOUD = CloudEnvironment(
    name="AzureChinaCloud",
    active_directory_endpoint="https://login.chinacloudapi.cn/",
    resource_manager_endpoint="https://management.chinacloudapi.cn/",
    service_management_endpoint="https://management.core.chinacloudapi.cn/",
    storage_endpoint_suffix="core.chinacloudapi.cn",
)

US_GOVERNMENT_CLOUD = CloudEnvironment(
    name="AzureUSGovernmentCloud",
    active_directory_endpoint="https://login.microsoftonline.us/",
    resource_manager_endpoint="https://management.usgovcloudapi.net/",
    service_management_endpoint="https://management.core.usgovcloudapi.net/",
    storage_endpoint_suffix="core.usgovcloudapi.net",
)

GERMAN_CLOUD = CloudEnvironment(
    name="AzureGermanCloud",
    active_directory_endpoint="https://login.microsoftonline.de/",
    resource_manager_endpoint="https://management.microsoftazure.de/",
    service_management_endpoint="https://management.core.cloudapi.de/",
    storage_endpoint_suffix="core.cloudapi.de",
)

ENVIRONMENTS: dict[str, CloudEnvironment] = {
    env.name.upper(): env
    for env in (PUBLIC_CLOUD, CHINA_CLOUD, US_GOVERNMENT_CLOUD, GERMAN_CLOUD)
}


def environment_from_name(name: str | None) -> CloudEnvironment:
    """Look up a cloud environment by name.

    An empty name selects the public cloud. Lookup is case-insensitive.

    Raises:
        ConfigurationError: If the name is not a known environment.
    """
    if not name:
        return PUBLIC_CLOUD

    env = ENVIRONMENTS.get(name.strip().upper())
    if env is None:
        valid = sorted(e.name for e in ENVIRONMENTS.values())
        raise ConfigurationError(f"unknown cloud environment '{name}', must be one of {valid}")
    return env
