"""Tests for adapter retry policy, bounded gather and the periodic sync scheduler."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from src.biometrics.base import DeviceType
from src.biometrics.errors import DeviceConnectionError
from src.biometrics.sync import (
    RetryPolicy,
    SyncResult,
    SyncScheduler,
    call_with_retry,
    gather_limited,
    is_transient,
)

FAST = RetryPolicy(timeout=1, attempts=3, backoff_min=0, backoff_max=0)


def _status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://api.example.test/devices")
    response = httpx.Response(status, request=request)
    return httpx.HTTPStatusError(f"{status} error", request=request, response=response)


class _Flaky:
    """Fails with ``errors`` in order, then returns ``value``."""

    def __init__(self, *errors: BaseException, value: str = "ok") -> None:
        self.errors = list(errors)
        self.value = value
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.value


# ---------------------------------------------------------------------------
# call_with_retry()
# ---------------------------------------------------------------------------


class TestCallWithRetry:
    @pytest.mark.asyncio
    async def test_success_on_first_attempt(self) -> None:
        fn = _Flaky()
        assert await call_with_retry(fn, FAST, operation="collect") == "ok"
        assert fn.calls == 1

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self) -> None:
        fn = _Flaky(httpx.ConnectError("refused"), httpx.ReadTimeout("slow"))
        assert await call_with_retry(fn, FAST, operation="collect") == "ok"
        assert fn.calls == 3

    @pytest.mark.asyncio
    async def test_exhausted_attempts_raise_connection_error(self) -> None:
        fn = _Flaky(*(httpx.ConnectError("refused") for _ in range(5)))
        with pytest.raises(DeviceConnectionError, match="failed after 3 attempt") as exc_info:
            await call_with_retry(
                fn, FAST, operation="collect", user_id="u1", device_id="fitbit-1"
            )
        assert fn.calls == 3
        assert exc_info.value.device_id == "fitbit-1"
        assert exc_info.value.user_id == "u1"
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        calls = 0

        async def hang() -> None:
            nonlocal calls
            calls += 1
            await asyncio.sleep(5)

        policy = RetryPolicy(timeout=0.01, attempts=2, backoff_min=0, backoff_max=0)
        with pytest.raises(DeviceConnectionError, match="timed out"):
            await call_with_retry(hang, policy, operation="connect")
        assert calls == 2

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self) -> None:
        fn = _Flaky(_status_error(401))
        with pytest.raises(DeviceConnectionError, match="after 1 attempt"):
            await call_with_retry(fn, FAST, operation="collect")
        assert fn.calls == 1

    @pytest.mark.asyncio
    async def test_server_error_is_retried(self) -> None:
        fn = _Flaky(_status_error(503), _status_error(429))
        assert await call_with_retry(fn, FAST, operation="collect") == "ok"
        assert fn.calls == 3

    @pytest.mark.asyncio
    async def test_other_errors_propagate_unchanged(self) -> None:
        fn = _Flaky(ValueError("bad payload"))
        with pytest.raises(ValueError, match="bad payload"):
            await call_with_retry(fn, FAST, operation="collect")
        assert fn.calls == 1

    def test_is_transient(self) -> None:
        assert is_transient(_status_error(500))
        assert is_transient(_status_error(429))
        assert not is_transient(_status_error(404))
        assert is_transient(ConnectionResetError())
        assert not is_transient(KeyError("x"))


# ---------------------------------------------------------------------------
# gather_limited()
# ---------------------------------------------------------------------------


class TestGatherLimited:
    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self) -> None:
        running = 0
        peak = 0

        async def work(i: int) -> int:
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return i

        results = await gather_limited((work(i) for i in range(10)), max_concurrent=3)
        assert results == list(range(10))
        assert peak == 3

    @pytest.mark.asyncio
    async def test_failures_are_returned_in_place(self) -> None:
        async def ok() -> str:
            return "ok"

        async def fail() -> str:
            raise RuntimeError("boom")

        results = await gather_limited([ok(), fail(), ok()])
        assert results[0] == "ok"
        assert isinstance(results[1], RuntimeError)
        assert results[2] == "ok"


# ---------------------------------------------------------------------------
# SyncScheduler
# ---------------------------------------------------------------------------


class TestSyncScheduler:
    def test_intervals_per_device_type(self) -> None:
        scheduler = SyncScheduler()
        assert scheduler.interval_for(DeviceType.FITBIT) == 300
        assert scheduler.interval_for(DeviceType.APPLE_WATCH) == 900
        assert scheduler.interval_for(DeviceType.CUSTOM) == 60
        assert SyncScheduler(interval_override=5).interval_for(DeviceType.FITBIT) == 5

    @pytest.mark.asyncio
    async def test_loop_survives_failed_syncs(self) -> None:
        scheduler = SyncScheduler(interval_override=0.01)
        calls = 0

        async def job() -> SyncResult:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("vendor down")
            return SyncResult(user_id="u1", device_id="dev-1", readings_collected=2)

        scheduler.schedule("dev-1", DeviceType.CUSTOM, job)
        assert scheduler.is_scheduled("dev-1")
        await asyncio.sleep(0.1)
        assert calls >= 2
        assert scheduler.is_scheduled("dev-1")

        await scheduler.cancel("dev-1")
        assert not scheduler.is_scheduled("dev-1")

    @pytest.mark.asyncio
    async def test_schedule_is_idempotent(self) -> None:
        scheduler = SyncScheduler(interval_override=60)

        async def job() -> SyncResult:
            return SyncResult(user_id="u1", device_id="dev-1")

        scheduler.schedule("dev-1", DeviceType.CUSTOM, job)
        first = scheduler._tasks["dev-1"]
        scheduler.schedule("dev-1", DeviceType.CUSTOM, job)
        assert scheduler._tasks["dev-1"] is first

        scheduler.schedule("dev-2", DeviceType.CUSTOM, job)
        await scheduler.cancel_all()
        assert not scheduler.is_scheduled("dev-1")
        assert not scheduler.is_scheduled("dev-2")
        # Cancelling an unknown device is a no-op
        await scheduler.cancel("dev-3")
