"""Adapter call policy and background device sync.

Every adapter call made by the orchestrator goes through ``call_with_retry``:

1. The call is bounded by ``asyncio.wait_for`` (``RetryPolicy.timeout``)
2. Transport failures and timeouts are retried with exponential backoff
3. When attempts are exhausted a ``DeviceConnectionError`` is raised

``SyncScheduler`` runs one periodic loop per connected device.  The loop
never dies on a failed sync; the job itself records the failure on the
device (status ERROR) and the next tick tries again.

Default sync intervals per device type (seconds):
    Fitbit:      every 5 minutes
    Garmin:      every 5 minutes
    Apple Watch: every 15 minutes (drains the upload buffer)
    Custom:      every minute
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Iterable, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from src.biometrics.base import DeviceType, utc_now
from src.biometrics.errors import DeviceConnectionError

logger = logging.getLogger("wellpulse.biometrics.sync")

T = TypeVar("T")

SYNC_INTERVALS: dict[DeviceType, int] = {
    DeviceType.FITBIT: 300,
    DeviceType.GARMIN: 300,
    DeviceType.APPLE_WATCH: 900,
    DeviceType.CUSTOM: 60,
}

# Failures that surface as DeviceConnectionError.
CONNECTION_FAILURES: tuple[type[BaseException], ...] = (
    httpx.HTTPError,
    asyncio.TimeoutError,
    ConnectionError,
    OSError,
)


def is_transient(exc: BaseException) -> bool:
    """Return True when another attempt may succeed.

    Vendor 4xx responses (bad token, unknown device) are final, except 429.
    """
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return isinstance(exc, CONNECTION_FAILURES)


@dataclass(frozen=True)
class RetryPolicy:
    """Timeout and backoff applied to every adapter call.

    Attributes:
        timeout:     Seconds allowed per attempt.
        attempts:    Total attempts, including the first.
        backoff_min: Smallest wait between attempts (seconds).
        backoff_max: Largest wait between attempts (seconds).
    """

    timeout: float = 10.0
    attempts: int = 3
    backoff_min: float = 0.5
    backoff_max: float = 8.0


@dataclass
class SyncResult:
    """Result of one device sync.

    Attributes:
        user_id:            Owner of the device.
        device_id:          Device that was synced.
        readings_collected: Raw readings returned by the adapter.
        status:             'success' or 'error'.
        error:              Error message if status == 'error'.
        synced_at:          UTC timestamp of completion.
    """

    user_id: str
    device_id: str
    readings_collected: int = 0
    status: str = "success"
    error: str | None = None
    synced_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "device_id": self.device_id,
            "readings_collected": self.readings_collected,
            "status": self.status,
            "error": self.error,
            "synced_at": self.synced_at.isoformat(),
        }


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    operation: str,
    user_id: str | None = None,
    device_id: str | None = None,
) -> T:
    """Await ``fn()`` under the policy's timeout, retrying transient failures.

    Args:
        fn:        Zero-argument coroutine factory; called once per attempt.
        policy:    Timeout and backoff settings.
        operation: Short name used in logs and error messages ('collect', ...).
        user_id:   Attached to the raised error.
        device_id: Attached to the raised error.

    Returns:
        Whatever ``fn()`` returns on the first successful attempt.

    Raises:
        DeviceConnectionError: When every attempt timed out or failed with a
            transport error.  Other exceptions propagate unchanged.
    """
    result: T | None = None
    attempts_made = 0
    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(policy.attempts),
            wait=wait_exponential(
                multiplier=policy.backoff_min, min=policy.backoff_min, max=policy.backoff_max
            ),
            retry=retry_if_exception(is_transient),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            attempts_made = attempt.retry_state.attempt_number
            with attempt:
                result = await asyncio.wait_for(fn(), timeout=policy.timeout)
    except CONNECTION_FAILURES as exc:
        reason = "timed out" if isinstance(exc, asyncio.TimeoutError) else str(exc) or type(exc).__name__
        logger.error(
            "Adapter %s failed after %d attempt(s) for device %s: %s",
            operation, attempts_made, device_id, reason,
        )
        raise DeviceConnectionError(
            f"Device {operation} failed after {attempts_made} attempt(s): {reason}",
            user_id=user_id,
            device_id=device_id,
        ) from exc
    return result  # type: ignore[return-value]


async def gather_limited(
    coros: Iterable[Awaitable[T]], max_concurrent: int = 5
) -> list[T | BaseException]:
    """Run awaitables with bounded concurrency.

    Returns:
        Results in input order; failures are returned as exception objects.
    """
    semaphore = asyncio.Semaphore(max_concurrent)

    async def _run(coro: Awaitable[T]) -> T:
        async with semaphore:
            return await coro

    return await asyncio.gather(*(_run(c) for c in coros), return_exceptions=True)


class SyncScheduler:
    """Periodic per-device sync loops.

    Usage::

        scheduler = SyncScheduler()
        scheduler.schedule("fitbit-ABC", DeviceType.FITBIT,
                           lambda: service.sync_device_data(user_id, "fitbit-ABC"))
        ...
        await scheduler.cancel("fitbit-ABC")
    """

    def __init__(self, interval_override: float | None = None) -> None:
        """Initialize the scheduler.

        Args:
            interval_override: Use this interval (seconds) for every device
                               instead of ``SYNC_INTERVALS``.
        """
        self._interval_override = interval_override
        self._tasks: dict[str, asyncio.Task] = {}

    def interval_for(self, device_type: DeviceType) -> float:
        if self._interval_override is not None:
            return self._interval_override
        return SYNC_INTERVALS.get(device_type, 300)

    def is_scheduled(self, device_id: str) -> bool:
        task = self._tasks.get(device_id)
        return task is not None and not task.done()

    def schedule(
        self,
        device_id: str,
        device_type: DeviceType,
        job: Callable[[], Awaitable[SyncResult]],
    ) -> None:
        """Start the sync loop for a device.  No-op if one is already running."""
        if self.is_scheduled(device_id):
            return
        interval = self.interval_for(device_type)
        self._tasks[device_id] = asyncio.create_task(
            self._loop(device_id, interval, job), name=f"sync-{device_id}"
        )
        logger.debug("Scheduled sync for %s every %ss", device_id, interval)

    async def cancel(self, device_id: str) -> None:
        task = self._tasks.pop(device_id, None)
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def cancel_all(self) -> None:
        for device_id in list(self._tasks):
            await self.cancel(device_id)

    async def _loop(
        self,
        device_id: str,
        interval: float,
        job: Callable[[], Awaitable[SyncResult]],
    ) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                result = await job()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Periodic sync failed for %s: %s", device_id, exc)
                continue
            logger.debug(
                "Periodic sync for %s: %d reading(s)", device_id, result.readings_collected
            )
