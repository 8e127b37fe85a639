"""Cloud provider configuration with validation.

The configuration is read once at startup from the cloud-config file and is
immutable afterwards. Field names follow the camelCase keys of the file;
snake_case names are accepted as well so the model can be built in code.
"""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

if TYPE_CHECKING:
    from .environment import CloudEnvironment

logger = logging.getLogger(__name__)

ADAPTER_VERSION = "0.1.0"


class ConfigurationError(Exception):
    """Raised when configuration loading or validation fails."""

    pass


class VMType(str, Enum):
    """Compute topology of the cluster nodes."""

    STANDARD = "standard"
    VMSS = "vmss"


# Defaults applied when a field is absent or zero
RATE_LIMIT_QPS_DEFAULT = 1.0
RATE_LIMIT_BUCKET_DEFAULT = 5
BACKOFF_RETRIES_DEFAULT = 6
BACKOFF_EXPONENT_DEFAULT = 1.5
BACKOFF_DURATION_SECONDS_DEFAULT = 5
BACKOFF_JITTER_DEFAULT = 1.0
MAXIMUM_LOAD_BALANCER_RULE_COUNT = 148  # Azure LB rule default limit

MAX_CONFIG_FILE_SIZE_BYTES = 1024 * 1024

VM_TYPE_SYNONYMS: dict[str, VMType] = {
    "": VMType.STANDARD,
    "standard": VMType.STANDARD,
    "vmss": VMType.VMSS,
    "scale-set": VMType.VMSS,
    "scaleset": VMType.VMSS,
}


class CloudConfig(BaseModel):
    """Configuration parsed from the cloud-config file.

    Zero values of the resilience tuning fields are replaced by their
    defaults, so a file that enables backoff without tuning it gets the
    documented policy.
    """

    model_config = {"extra": "ignore", "frozen": True, "populate_by_name": True}

    # Identity
    cloud: str = ""
    tenant_id: str = Field("", alias="tenantId")
    subscription_id: str = Field("", alias="subscriptionId")
    resource_group: str = Field("", alias="resourceGroup")
    location: str = ""

    # Network topology
    vnet_name: str = Field("", alias="vnetName")
    vnet_resource_group: str = Field("", alias="vnetResourceGroup")
    subnet_name: str = Field("", alias="subnetName")
    security_group_name: str = Field("", alias="securityGroupName")
    route_table_name: str = Field("", alias="routeTableName")

    # Compute topology
    vm_type: VMType = Field(VMType.STANDARD, alias="vmType")
    # Only nodes of this availability set are added to the load balancer backend.
    # Required when the cluster spans several availability sets.
    primary_availability_set_name: str = Field("", alias="primaryAvailabilitySetName")
    # Same as above for scale sets.
    primary_scale_set_name: str = Field("", alias="primaryScaleSetName")

    # Credentials
    aad_client_id: str = Field("", alias="aadClientId")
    aad_client_secret: str = Field("", alias="aadClientSecret", repr=False)
    aad_client_cert_path: str = Field("", alias="aadClientCertPath")
    aad_client_cert_password: str = Field("", alias="aadClientCertPassword", repr=False)
    use_managed_identity_extension: bool = Field(False, alias="useManagedIdentityExtension")

    # Resilience
    cloud_provider_backoff: bool = Field(False, alias="cloudProviderBackoff")
    cloud_provider_backoff_retries: int = Field(
        BACKOFF_RETRIES_DEFAULT, alias="cloudProviderBackoffRetries"
    )
    cloud_provider_backoff_exponent: float = Field(
        BACKOFF_EXPONENT_DEFAULT, alias="cloudProviderBackoffExponent"
    )
    cloud_provider_backoff_duration: int = Field(
        BACKOFF_DURATION_SECONDS_DEFAULT, alias="cloudProviderBackoffDuration"
    )
    cloud_provider_backoff_jitter: float = Field(
        BACKOFF_JITTER_DEFAULT, alias="cloudProviderBackoffJitter"
    )
    cloud_provider_rate_limit: bool = Field(False, alias="cloudProviderRateLimit")
    cloud_provider_rate_limit_qps: float = Field(
        RATE_LIMIT_QPS_DEFAULT, alias="cloudProviderRateLimitQPS"
    )
    cloud_provider_rate_limit_bucket: int = Field(
        RATE_LIMIT_BUCKET_DEFAULT, alias="cloudProviderRateLimitBucket"
    )

    maximum_load_balancer_rule_count: int = Field(
        MAXIMUM_LOAD_BALANCER_RULE_COUNT, alias="maximumLoadBalancerRuleCount"
    )

    @field_validator(
        "cloud",
        "tenant_id",
        "subscription_id",
        "resource_group",
        "location",
        "vnet_name",
        "vnet_resource_group",
        "subnet_name",
        "security_group_name",
        "route_table_name",
        "primary_availability_set_name",
        "primary_scale_set_name",
        "aad_client_id",
        "aad_client_secret",
        "aad_client_cert_path",
        "aad_client_cert_password",
        mode="before",
    )
    @classmethod
    def empty_string_for_null(cls, v: Any) -> Any:
        # "key:" with no value in YAML yields None
        return "" if v is None else v

    @field_validator("vm_type", mode="before")
    @classmethod
    def normalize_vm_type(cls, v: Any) -> VMType:
        if isinstance(v, VMType):
            return v
        key = str(v or "").strip().lower()
        if key not in VM_TYPE_SYNONYMS:
            raise ValueError(f"vmType must be one of {sorted(VM_TYPE_SYNONYMS)}: {v}")
        return VM_TYPE_SYNONYMS[key]

    @field_validator(
        "cloud_provider_backoff_retries",
        "cloud_provider_backoff_exponent",
        "cloud_provider_backoff_duration",
        "cloud_provider_backoff_jitter",
        "cloud_provider_rate_limit_qps",
        "cloud_provider_rate_limit_bucket",
        "maximum_load_balancer_rule_count",
    )
    @classmethod
    def non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("must not be negative")
        return v

    @field_validator("cloud_provider_backoff_retries")
    @classmethod
    def default_backoff_retries(cls, v: int) -> int:
        return v or BACKOFF_RETRIES_DEFAULT

    @field_validator("cloud_provider_backoff_exponent")
    @classmethod
    def default_backoff_exponent(cls, v: float) -> float:
        return v or BACKOFF_EXPONENT_DEFAULT

    @field_validator("cloud_provider_backoff_duration")
    @classmethod
    def default_backoff_duration(cls, v: int) -> int:
        return v or BACKOFF_DURATION_SECONDS_DEFAULT

    @field_validator("cloud_provider_backoff_jitter")
    @classmethod
    def default_backoff_jitter(cls, v: float) -> float:
        return v or BACKOFF_JITTER_DEFAULT

    @field_validator("cloud_provider_rate_limit_qps")
    @classmethod
    def default_rate_limit_qps(cls, v: float) -> float:
        return v or RATE_LIMIT_QPS_DEFAULT

    @field_validator("cloud_provider_rate_limit_bucket")
    @classmethod
    def default_rate_limit_bucket(cls, v: int) -> int:
        return v or RATE_LIMIT_BUCKET_DEFAULT

    @field_validator("maximum_load_balancer_rule_count")
    @classmethod
    def default_rule_count(cls, v: int) -> int:
        return v or MAXIMUM_LOAD_BALANCER_RULE_COUNT

    @property
    def primary_pool_name(self) -> str:
        """Primary pool name for the configured topology, or empty."""
        if self.vm_type == VMType.VMSS:
            return self.primary_scale_set_name
        return self.primary_availability_set_name


def parse_config(content: str | None, source: str = "<string>") -> tuple[CloudConfig, CloudEnvironment]:
    """Parse cloud-config content into a config and its cloud environment.

    YAML is a superset of JSON, so both formats are accepted. Empty content
    yields the default configuration in the public cloud.

    Args:
        content: File content, or None.
        source: Name used in error messages.

    Returns:
        Tuple of (config, environment).

    Raises:
        ConfigurationError: If the content is malformed or fails validation.
    """
    from .environment import environment_from_name

    raw_data: Any = None
    if content:
        try:
            raw_data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {source}: {e}") from e

    if raw_data is None:
        raw_data = {}
    if not isinstance(raw_data, dict):
        raise ConfigurationError(f"Cloud config must contain a mapping: {source}")

    try:
        config = CloudConfig.model_validate(raw_data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")
        error_list = "\n".join(errors)
        raise ConfigurationError(f"Validation failed for {source}:\n{error_list}") from e

    env = environment_from_name(config.cloud)
    return config, env


def load_config(path: Path | str) -> tuple[CloudConfig, CloudEnvironment]:
    """Load the cloud-config file from disk.

    Raises:
        ConfigurationError: If the file is missing, too large or invalid.
    """
    config_path = Path(path)

    if not config_path.exists():
        raise ConfigurationError(f"Cloud config file not found: {config_path}")

    try:
        file_size = config_path.stat().st_size
    except OSError as e:
        raise ConfigurationError(f"Failed to stat cloud config {config_path}: {e}") from e

    if file_size > MAX_CONFIG_FILE_SIZE_BYTES:
        raise ConfigurationError(
            f"Cloud config exceeds maximum size of {MAX_CONFIG_FILE_SIZE_BYTES} bytes: "
            f"{config_path}"
        )

    try:
        content = config_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Failed to read cloud config {config_path}: {e}") from e

    config, env = parse_config(content, source=str(config_path))
    logger.info(
        "Loaded cloud config from %s",
        config_path,
        extra={"cloud": env.name, "vm_type": config.vm_type.value},
    )
    return config, env
