"""Process-wide rate limiting of remote calls.

One limiter is created at startup and shared by every client. Admission is
a reservation: the bucket is debited immediately and the caller sleeps until
its token would have been available. Bucket state is guarded by a
threading.Lock so a single limiter can serve callers on any thread or loop.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable

from .config import CloudConfig
from .errors import Cancelled

logger = logging.getLogger(__name__)


async def wait_cancellable(delay: float, cancel: asyncio.Event | None) -> bool:
    """Sleep for ``delay`` seconds unless ``cancel`` is set first.

    Returns:
        True if the wait was interrupted by cancellation.
    """
    if cancel is None:
        if delay > 0:
            await asyncio.sleep(delay)
        return False

    if cancel.is_set():
        return True
    if delay <= 0:
        return False

    try:
        await asyncio.wait_for(cancel.wait(), timeout=delay)
    except TimeoutError:
        return False
    return True


class RateLimiter(ABC):
    """Admission control for outbound calls."""

    @abstractmethod
    def reserve(self) -> float:
        """Take one token and return the seconds until it is usable."""

    @abstractmethod
    def refund(self) -> None:
        """Return a token taken by a reservation that was abandoned."""

    def try_accept(self) -> bool:
        """Take one token only if it is available right now."""
        delay = self.reserve()
        if delay > 0:
            self.refund()
            return False
        return True

    async def accept(self, cancel: asyncio.Event | None = None) -> None:
        """Block until one token is admitted.

        Raises:
            Cancelled: If ``cancel`` is set before admission.
        """
        if cancel is not None and cancel.is_set():
            raise Cancelled("cancelled while waiting for rate limiter")

        delay = self.reserve()
        if await wait_cancellable(delay, cancel):
            self.refund()
            raise Cancelled("cancelled while waiting for rate limiter")

    def accept_blocking(self, stop: threading.Event) -> None:
        """Block the calling thread until one token is admitted.

        Used on threads the SDK owns, where no event loop is running.

        Raises:
            Cancelled: If ``stop`` is set before admission.
        """
        if stop.is_set():
            raise Cancelled("stopped while waiting for rate limiter")

        delay = self.reserve()
        if delay > 0 and stop.wait(delay):
            self.refund()
            raise Cancelled("stopped while waiting for rate limiter")


class AlwaysAdmitRateLimiter(RateLimiter):
    """Limiter used when rate limiting is disabled. Never blocks."""

    def reserve(self) -> float:
        return 0.0

    def refund(self) -> None:
        pass

    def try_accept(self) -> bool:
        return True

    async def accept(self, cancel: asyncio.Event | None = None) -> None:
        return None

    def accept_blocking(self, stop: threading.Event) -> None:
        if stop.is_set():
            raise Cancelled("stopped while waiting for rate limiter")


class TokenBucketRateLimiter(RateLimiter):
    """Token bucket refilled at ``qps`` tokens per second up to ``burst``.

    The bucket starts full.
    """

    def __init__(
        self,
        qps: float,
        burst: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if qps <= 0:
            raise ValueError(f"qps must be positive: {qps}")
        if burst < 1:
            raise ValueError(f"burst must be at least 1: {burst}")

        self._qps = qps
        self._burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()
        self._lock = threading.Lock()

    @property
    def qps(self) -> float:
        return self._qps

    @property
    def burst(self) -> int:
        return self._burst

    def _refill(self, now: float) -> None:
        elapsed = max(0.0, now - self._last)
        self._tokens = min(float(self._burst), self._tokens + elapsed * self._qps)
        self._last = now

    def reserve(self) -> float:
        with self._lock:
            self._refill(self._clock())
            self._tokens -= 1.0
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self._qps

    def refund(self) -> None:
        with self._lock:
            self._tokens = min(float(self._burst), self._tokens + 1.0)


def rate_limiter_from_config(config: CloudConfig) -> RateLimiter:
    """Select the limiter variant configured for this process."""
    if not config.cloud_provider_rate_limit:
        return AlwaysAdmitRateLimiter()

    logger.info(
        "Azure cloud provider using rate limit config: QPS=%g, bucket=%d",
        config.cloud_provider_rate_limit_qps,
        config.cloud_provider_rate_limit_bucket,
    )
    return TokenBucketRateLimiter(
        qps=config.cloud_provider_rate_limit_qps,
        burst=config.cloud_provider_rate_limit_bucket,
    )
