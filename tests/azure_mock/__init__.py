"""Azure API mocks for adapter tests.

This package provides in-memory fakes of the management SDK so the adapter
can be exercised end to end without Azure connectivity.

Key Features:
- Operation groups storing real SDK model objects
- Real LROPollers over scripted status checks and paged listings with continuation tokens
- Error injection per SDK method and per listing page
- Credential fakes that record how they were built

Usage:
    from azure_mock import MockAzureContext, add_vm

    with MockAzureContext() as ctx:
        add_vm(ctx.state, "rg", "node-1", "10.0.0.4")
        adapter = CloudAdapter.create(config, env)
        ...
        assert ctx.state.call_count("network_interfaces.begin_create_or_update") == 1
"""

from .context import MockAzureContext
from .credential import MockTokenCredential, credential_factory
from .operations import (
    FakeItemPaged,
    FakeOperations,
    FakePollingMethod,
    MockAzureState,
    fake_poller,
    http_error,
)
from .topology import (
    SUBSCRIPTION_ID,
    add_availability_set,
    add_scale_set,
    add_scale_set_vm,
    add_vm,
    arm_id,
    backend_pool_id,
    scale_set_computer_name,
)

__all__ = [
    "FakeItemPaged",
    "FakeOperations",
    "FakePollingMethod",
    "MockAzureContext",
    "MockAzureState",
    "MockTokenCredential",
    "SUBSCRIPTION_ID",
    "add_availability_set",
    "add_scale_set",
    "add_scale_set_vm",
    "add_vm",
    "arm_id",
    "backend_pool_id",
    "credential_factory",
    "fake_poller",
    "http_error",
    "scale_set_computer_name",
]
