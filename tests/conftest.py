"""Pytest configuration and shared fixtures."""

import sys
from collections.abc import Generator
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

# Make src/ and the azure_mock package importable without installing
for path in (Path(__file__).parent.parent / "src", Path(__file__).parent):
    sys.path.insert(0, str(path))


@pytest.fixture
def sleeps() -> Generator[AsyncMock, None, None]:
    """Replace backoff and poll waits with an immediate, recorded no-op.

    The mock returns False (not cancelled); set ``return_value = True`` to
    simulate cancellation during a wait.
    """
    with patch(
        "azureprovider.resilience.wait_cancellable", new=AsyncMock(return_value=False)
    ) as mocked:
        yield mocked
