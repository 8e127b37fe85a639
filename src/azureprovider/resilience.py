"""Resilient call layer: rate limiting plus bounded exponential backoff.

Every remote call made by the adapter goes through ResilientCallGate. The
gate knows nothing about resources; it only sees a zero-argument callable
that invokes the SDK.

Long-running operations are started with a GatedARMPolling method. The SDK
polls on its own thread; each status request that thread sends first takes
a rate limiter token, and the gate's cancellation signal stops the thread
before its next request.

Long-running operations are observed through a single OperationResult that
carries either the value or a typed error, instead of two completion
channels that could both or neither fire.
"""

from __future__ import annotations

import asyncio
import logging
import random
import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from azure.core.polling import PollingMethod
from azure.mgmt.core.polling.arm_polling import ARMPolling

from .config import CloudConfig
from .errors import (
    AdapterError,
    Cancelled,
    RetriesExhausted,
    TransientError,
    classify_error,
)
from .ratelimit import RateLimiter, wait_cancellable

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Interval between status requests of an in-flight long-running operation
DEFAULT_POLL_INTERVAL_SECONDS = 5.0


@dataclass(frozen=True)
class BackoffPolicy:
    """Retry schedule for transient failures.

    Attributes:
        steps: Maximum number of attempts.
        factor: Multiplier applied to the delay after each attempt.
        duration: Delay before the first retry, in seconds.
        jitter: Fraction by which each delay is randomized in both directions.
    """

    steps: int
    factor: float
    duration: float
    jitter: float

    def __post_init__(self) -> None:
        if self.steps < 1:
            raise ValueError(f"steps must be at least 1: {self.steps}")
        if self.duration < 0 or self.factor < 0 or self.jitter < 0:
            raise ValueError("duration, factor and jitter must not be negative")

    @classmethod
    def from_config(cls, config: CloudConfig) -> BackoffPolicy | None:
        """Build the configured policy, or None when backoff is disabled."""
        if not config.cloud_provider_backoff:
            return None

        policy = cls(
            steps=config.cloud_provider_backoff_retries,
            factor=config.cloud_provider_backoff_exponent,
            duration=float(config.cloud_provider_backoff_duration),
            jitter=config.cloud_provider_backoff_jitter,
        )
        logger.info(
            "Azure cloud provider using retry backoff: retries=%d, exponent=%f, "
            "duration=%d, jitter=%f",
            config.cloud_provider_backoff_retries,
            config.cloud_provider_backoff_exponent,
            config.cloud_provider_backoff_duration,
            config.cloud_provider_backoff_jitter,
        )
        return policy

    def delay(self, attempt: int, rand: Callable[[], float] = random.random) -> float:
        """Delay to sleep after the given zero-based attempt failed."""
        base = self.duration * (self.factor**attempt)
        if self.jitter > 0:
            base *= 1.0 + self.jitter * (2.0 * rand() - 1.0)
        return max(0.0, base)


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    """Outcome of a remote operation: a value or a typed error, never both."""

    value: T | None = None
    error: AdapterError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def cancelled(self) -> bool:
        return isinstance(self.error, Cancelled)

    def unwrap(self) -> T:
        """Return the value or raise the error."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


def _is_poller(obj: Any) -> bool:
    return all(callable(getattr(obj, attr, None)) for attr in ("done", "wait", "result"))


async def _as_result(awaitable: Awaitable[Any]) -> OperationResult[Any]:
    try:
        value = await awaitable
    except AdapterError as e:
        return OperationResult(error=e)
    return OperationResult(value=value)


class GatedARMPolling(ARMPolling):
    """ARM polling admitted by the adapter's rate limiter.

    Runs on the SDK poller's thread. Every status and final-resource request
    takes one token first, and setting ``stop`` ends polling with Cancelled
    before the next request is sent.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter,
        stop: threading.Event,
        timeout: float = DEFAULT_POLL_INTERVAL_SECONDS,
        **kwargs: Any,
    ) -> None:
        super().__init__(timeout=timeout, **kwargs)
        self._rate_limiter = rate_limiter
        self._stop = stop

    def admit(self) -> None:
        """Take a token for one remote status request."""
        self._rate_limiter.accept_blocking(self._stop)

    def pause(self, delay: float) -> None:
        """Wait between status requests, ending early when stopped."""
        if self._stop.wait(delay):
            raise Cancelled("polling stopped")

    def request_status(self, status_link: str) -> Any:
        self.admit()
        return super().request_status(status_link)

    def _sleep(self, delay: float) -> None:
        self.pause(delay)


class ResilientCallGate:
    """Wraps remote calls with rate limiting and retries.

    The rate limiter and backoff policy are owned by the adapter and shared
    by reference with every client; the gate itself holds no per-call state
    and is safe for concurrent use.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter,
        backoff: BackoffPolicy | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        self._rate_limiter = rate_limiter
        self._backoff = backoff
        self._poll_interval = poll_interval

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    @property
    def backoff(self) -> BackoffPolicy | None:
        return self._backoff

    @property
    def max_attempts(self) -> int:
        return self._backoff.steps if self._backoff is not None else 1

    def polling_method(self, stop: threading.Event) -> GatedARMPolling:
        """Polling method for one long-running operation started through this gate."""
        return GatedARMPolling(self._rate_limiter, stop, timeout=self._poll_interval)

    async def execute(
        self,
        name: str,
        call: Callable[[], Any],
        cancel: asyncio.Event | None = None,
    ) -> Any:
        """Run a remote call with rate limiting and retries.

        Args:
            name: Operation name used in logs and errors.
            call: Zero-argument callable invoking the SDK. May return a poller.
            cancel: Optional event; setting it stops the call promptly.

        Returns:
            The call result, or the poller's final result.

        Raises:
            Cancelled: If ``cancel`` was set before completion.
            RetriesExhausted: If every attempt failed with a transient error.
            PermanentError: On a non-retryable remote failure.
            NotFound: If the resource does not exist.
        """
        return await self._execute(name, call, cancel, None)

    async def execute_long_running(
        self,
        name: str,
        begin: Callable[[PollingMethod[Any]], Any],
        cancel: asyncio.Event | None = None,
    ) -> Any:
        """Start a long-running operation and wait for its final result.

        ``begin`` receives the polling method to pass to the SDK's ``begin_*``
        call as ``polling=``. Raises like ``execute``.
        """
        stop = threading.Event()
        try:
            return await self._execute(
                name, lambda: begin(self.polling_method(stop)), cancel, stop
            )
        finally:
            # Any poller still running stops before its next request
            stop.set()

    async def run(
        self,
        name: str,
        call: Callable[[], Any],
        cancel: asyncio.Event | None = None,
    ) -> OperationResult[Any]:
        """Like execute, but return an OperationResult instead of raising."""
        return await _as_result(self.execute(name, call, cancel))

    async def run_long_running(
        self,
        name: str,
        begin: Callable[[PollingMethod[Any]], Any],
        cancel: asyncio.Event | None = None,
    ) -> OperationResult[Any]:
        """Like execute_long_running, but return an OperationResult."""
        return await _as_result(self.execute_long_running(name, begin, cancel))

    async def _execute(
        self,
        name: str,
        call: Callable[[], Any],
        cancel: asyncio.Event | None,
        stop: threading.Event | None,
    ) -> Any:
        max_attempts = self.max_attempts
        attempt = 0

        while True:
            if cancel is not None and cancel.is_set():
                raise Cancelled(f"{name} cancelled")

            attempt += 1
            try:
                return await self._attempt(name, call, cancel, stop)
            except TransientError as e:
                if self._backoff is None or attempt >= max_attempts:
                    logger.error(
                        "Remote call failed, giving up",
                        extra={"operation": name, "attempts": attempt, "error": str(e)},
                    )
                    raise RetriesExhausted(name, e, attempt) from e
                last_error = e
                wait_time = self._backoff.delay(attempt - 1)

            logger.warning(
                "Remote call failed, retrying",
                extra={
                    "operation": name,
                    "attempt": attempt,
                    "max_attempts": max_attempts,
                    "wait_seconds": round(wait_time, 3),
                    "error": str(last_error),
                },
            )
            if await wait_cancellable(wait_time, cancel):
                raise Cancelled(f"{name} cancelled during backoff") from last_error

    async def _attempt(
        self,
        name: str,
        call: Callable[[], Any],
        cancel: asyncio.Event | None,
        stop: threading.Event | None,
    ) -> Any:
        await self._rate_limiter.accept(cancel)

        loop = asyncio.get_running_loop()
        try:
            result = await loop.run_in_executor(None, call)
        except AdapterError:
            raise
        except Exception as e:
            raise classify_error(e) from e

        if _is_poller(result):
            return await self._poll(name, result, cancel, stop)
        return result

    async def _poll(
        self,
        name: str,
        poller: Any,
        cancel: asyncio.Event | None,
        stop: threading.Event | None,
    ) -> Any:
        # result() blocks until the SDK's polling thread has finished
        loop = asyncio.get_running_loop()
        finished = loop.run_in_executor(None, poller.result)

        if cancel is not None:
            cancelled = asyncio.ensure_future(cancel.wait())
            try:
                await asyncio.wait({finished, cancelled}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                cancelled.cancel()

            if not finished.done():
                logger.info("Stopped polling cancelled operation", extra={"operation": name})
                if stop is None:
                    raise Cancelled(f"{name} cancelled while polling")
                stop.set()
                await asyncio.wait({finished})
                raise Cancelled(f"{name} cancelled while polling") from finished.exception()

        try:
            return await finished
        except AdapterError:
            raise
        except Exception as e:
            raise classify_error(e) from e


class LongRunningOperation(Generic[T]):
    """A remote mutation whose completion is reported after it is started.

    The operation is started lazily by the first ``wait``; ``begin`` receives
    the polling method to pass to the SDK. Its outcome is a
    single OperationResult; once a value or a non-cancellation error has been
    observed it is kept, so every later ``wait`` sees the same outcome.
    """

    def __init__(
        self,
        gate: ResilientCallGate,
        name: str,
        begin: Callable[[PollingMethod[Any]], Any],
    ) -> None:
        self._gate = gate
        self._name = name
        self._begin = begin
        self._outcome: OperationResult[T] | None = None
        self._lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return self._name

    @property
    def finished(self) -> bool:
        return self._outcome is not None

    async def wait(self, cancel: asyncio.Event | None = None) -> OperationResult[T]:
        """Start (if needed) and wait for the operation, honouring ``cancel``."""
        async with self._lock:
            if self._outcome is not None:
                return self._outcome

            outcome: OperationResult[T] = await self._gate.run_long_running(
                self._name, self._begin, cancel
            )
            if not outcome.cancelled:
                self._outcome = outcome
            return outcome

    async def result(self, cancel: asyncio.Event | None = None) -> T:
        """Wait for the operation and return its value, raising its error."""
        return (await self.wait(cancel)).unwrap()
