"""Error taxonomy shared by every layer of the adapter.

Credential and construction errors are fatal: misconfiguration cannot heal
by retrying. Remote errors are split into retryable (TransientError) and
non-retryable (PermanentError, NotFound) so the call gate can decide what to
retry without knowing anything about the resource being touched.
"""

from __future__ import annotations

from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)

# HTTP status codes that the management API uses for throttling and
# transient server-side trouble.
RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({408, 429, 500, 502, 503, 504})


class AdapterError(Exception):
    """Base class for all errors raised by the adapter."""

    pass


class NoCredentialsAvailable(AdapterError):
    """Raised when no credential strategy can be resolved from configuration."""

    pass


class InvalidCredentialConfig(AdapterError):
    """Raised when the selected credential strategy rejects its configuration."""

    pass


class UnsupportedKeyType(AdapterError):
    """Raised when a client certificate bundle carries a non-RSA private key."""

    pass


class CertificateLoadError(AdapterError):
    """Raised when the client certificate file cannot be read or decoded.

    The message always names the certificate path.
    """

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"loading client certificate from {path}: {reason}")
        self.path = path


class RemoteError(AdapterError):
    """Base class for classified remote API failures."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientError(RemoteError):
    """Network failure, throttling or 5xx response. Safe to retry."""

    pass


class PermanentError(RemoteError):
    """4xx response other than throttling. Retrying will not help."""

    pass


class NotFound(RemoteError):
    """The requested resource or node does not exist."""

    pass


class AmbiguousPool(AdapterError):
    """Raised when several backend pools exist and no primary one is configured."""

    def __init__(self, candidates: list[str]) -> None:
        super().__init__(
            f"multiple pools found ({', '.join(sorted(candidates))}) and no primary "
            "pool name is configured"
        )
        self.candidates = candidates


class Cancelled(AdapterError):
    """Raised when the caller cancelled an operation before it completed."""

    pass


class RetriesExhausted(TransientError):
    """Raised when every allowed attempt failed with a transient error.

    It remains a TransientError so callers can retry at a higher level.

    Attributes:
        last_error: The error of the final attempt.
        attempts: Number of attempts performed.
    """

    def __init__(self, operation: str, last_error: Exception, attempts: int) -> None:
        super().__init__(
            f"{operation} failed after {attempts} attempts: {last_error}",
            getattr(last_error, "status_code", None),
        )
        self.operation = operation
        self.last_error = last_error
        self.attempts = attempts


def _status_code(error: Exception) -> int | None:
    status = getattr(error, "status_code", None)
    if status is None:
        response = getattr(error, "response", None)
        status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def classify_error(error: Exception) -> AdapterError:
    """Map an Azure SDK exception onto the adapter taxonomy.

    Errors that are already classified are returned unchanged. The caller is
    expected to raise the result ``from`` the original exception.

    Args:
        error: Exception raised by an SDK call or a poller.

    Returns:
        The classified adapter error.
    """
    if isinstance(error, AdapterError):
        return error

    status = _status_code(error)
    message = str(error) or type(error).__name__

    if isinstance(error, ResourceNotFoundError) or status == 404:
        return NotFound(message, status)
    if isinstance(error, ClientAuthenticationError):
        return PermanentError(message, status)
    if isinstance(error, (ServiceRequestError, ServiceResponseError)):
        return TransientError(message, status)
    if isinstance(error, HttpResponseError):
        if status is None or status in RETRYABLE_STATUS_CODES or status >= 500:
            return TransientError(message, status)
        return PermanentError(message, status)
    if isinstance(error, (AzureError, ConnectionError, TimeoutError)):
        # Includes ServiceRequestTimeoutError and polling failures without a response
        return TransientError(message, status)

    return PermanentError(message, status)
