"""Tests for the biometric orchestrator: devices, collection, live streams, profiles, teams."""

from __future__ import annotations

import asyncio
from typing import AsyncIterator

import httpx
import pytest

from src.biometrics.adapters.base import ConnectionResult, DeviceCredentials
from src.biometrics.base import (
    BiometricReading,
    ConnectionStatus,
    DataType,
    DeviceType,
    TimeRange,
)
from src.biometrics.errors import (
    BiometricServiceError,
    DataValidationError,
    DeviceConnectionError,
    DeviceNotFoundError,
    ProfileNotFoundError,
    StreamError,
)
from src.biometrics.realtime import RealTimeProcessor
from src.biometrics.service import BiometricService, ServiceOptions
from src.biometrics.streaming import EventKind
from src.biometrics.sync import RetryPolicy
from src.biometrics.tests.conftest import (
    NOW,
    TEST_DEVICE_ID,
    TEST_USER_ID,
    FakeAdapter,
    fixed_clock,
    make_reading,
)

OPTIONS = ServiceOptions(
    retry=RetryPolicy(timeout=1, attempts=2, backoff_min=0, backoff_max=0),
    debounce_seconds=0,
    sync_enabled=False,
)


def _service(adapter: FakeAdapter, options: ServiceOptions = OPTIONS, **kwargs) -> BiometricService:
    return BiometricService(
        options, adapters={DeviceType.CUSTOM: adapter}, clock=fixed_clock, **kwargs
    )


async def _connect(
    service: BiometricService, user_id: str = TEST_USER_ID, serial: str | None = None
):
    return await service.connect_device(
        user_id, DeviceType.CUSTOM, DeviceCredentials(device_serial=serial)
    )


async def _share_heart_rate(
    service: BiometricService, user_id: str = TEST_USER_ID, sharing_level: str = "none"
) -> None:
    await service.privacy.update_consent_settings(
        user_id, {"data_types": {"heart_rate": True}, "sharing_level": sharing_level}
    )
    await service.privacy.update_privacy_settings(user_id, {"share_heart_rate": True})


async def _next(events: AsyncIterator, timeout: float = 1.0):
    return await asyncio.wait_for(anext(events), timeout=timeout)


# ---------------------------------------------------------------------------
# Devices
# ---------------------------------------------------------------------------


class TestDevices:
    @pytest.mark.asyncio
    async def test_connect_creates_profile_and_pipeline(self, fake_adapter: FakeAdapter) -> None:
        service = _service(fake_adapter)
        device = await _connect(service)

        assert device.device_id == TEST_DEVICE_ID
        assert device.connection_status == ConnectionStatus.CONNECTED
        assert DataType.HEART_RATE in device.data_types
        assert [d.device_id for d in await service.get_connected_devices(TEST_USER_ID)] == [
            TEST_DEVICE_ID
        ]
        profile = await service.get_biometric_profile(TEST_USER_ID)
        assert profile.connected_device_ids == [TEST_DEVICE_ID]
        assert profile.baseline.resting_heart_rate == 70
        assert service.is_streaming(TEST_USER_ID)
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_second_device_joins_existing_pipeline(
        self, fake_adapter: FakeAdapter
    ) -> None:
        service = _service(fake_adapter)
        await _connect(service)
        await _connect(service, serial="band")
        profile = await service.get_biometric_profile(TEST_USER_ID)
        assert profile.connected_device_ids == [TEST_DEVICE_ID, "fake-band"]
        assert len(service._pipelines) == 1
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_rejected_connection(self, fake_adapter: FakeAdapter) -> None:
        fake_adapter.connect_result = ConnectionResult(
            False, ConnectionStatus.ERROR, error="pairing denied"
        )
        service = _service(fake_adapter)
        with pytest.raises(DeviceConnectionError, match="pairing denied") as exc_info:
            await _connect(service)
        assert exc_info.value.code == "DEVICE_CONNECTION_FAILED"
        assert not service.is_streaming(TEST_USER_ID)

    @pytest.mark.asyncio
    async def test_invalid_credentials_rejected_before_connecting(
        self, fake_adapter: FakeAdapter
    ) -> None:
        service = _service(fake_adapter)
        with pytest.raises(DeviceConnectionError) as exc_info:
            await service.connect_device(
                TEST_USER_ID, DeviceType.FITBIT, DeviceCredentials(access_token="short")
            )
        assert exc_info.value.code == "INVALID_CREDENTIALS"

    @pytest.mark.asyncio
    async def test_unsupported_device_type(self, fake_adapter: FakeAdapter) -> None:
        service = _service(fake_adapter)
        with pytest.raises(BiometricServiceError) as exc_info:
            await service.connect_device(TEST_USER_ID, "polar", DeviceCredentials())
        assert exc_info.value.code == "UNSUPPORTED_DEVICE_TYPE"

    @pytest.mark.asyncio
    async def test_disconnect_last_device_stops_pipeline(
        self, fake_adapter: FakeAdapter
    ) -> None:
        service = _service(fake_adapter)
        await _connect(service)
        await service.disconnect_device(TEST_USER_ID, TEST_DEVICE_ID)

        assert await service.get_connected_devices(TEST_USER_ID) == []
        assert not service.is_streaming(TEST_USER_ID)
        assert not fake_adapter.is_bound(TEST_DEVICE_ID)
        profile = await service.get_biometric_profile(TEST_USER_ID)
        assert profile.connected_device_ids == []

    @pytest.mark.asyncio
    async def test_disconnect_unknown_device(self, fake_adapter: FakeAdapter) -> None:
        service = _service(fake_adapter)
        with pytest.raises(DeviceNotFoundError):
            await service.disconnect_device(TEST_USER_ID, "fake-nope")

    @pytest.mark.asyncio
    async def test_periodic_sync_scheduled_on_connect(self, fake_adapter: FakeAdapter) -> None:
        options = ServiceOptions(retry=OPTIONS.retry, debounce_seconds=0, sync_enabled=True)
        service = _service(fake_adapter, options)
        await _connect(service)
        assert service._scheduler.is_scheduled(TEST_DEVICE_ID)
        await service.disconnect_device(TEST_USER_ID, TEST_DEVICE_ID)
        assert not service._scheduler.is_scheduled(TEST_DEVICE_ID)


# ---------------------------------------------------------------------------
# Collection and sync
# ---------------------------------------------------------------------------


class TestCollection:
    @pytest.mark.asyncio
    async def test_collect_releases_valid_consented_readings(
        self, fake_adapter: FakeAdapter, last_hour: TimeRange
    ) -> None:
        fake_adapter.readings = [
            make_reading("b", bpm=110, minutes_ago=5),
            make_reading("a", bpm=100, minutes_ago=10),
            make_reading("bad", bpm=300, minutes_ago=7),
            make_reading("other", device_id="fake-other", bpm=90),
        ]
        service = _service(fake_adapter)
        await _connect(service)
        await _share_heart_rate(service)

        released = await service.collect_biometric_data(TEST_USER_ID, last_hour)
        assert [r.id for r in released] == ["a", "b"]

        stress = await service.calculate_stress_level(TEST_USER_ID)
        assert stress.current_level == pytest.approx(50)
        quality = await service.assess_data_quality(TEST_USER_ID)
        assert quality.overall_quality > 0.9
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_validation_can_run_before_privacy(
        self, fake_adapter: FakeAdapter, last_hour: TimeRange
    ) -> None:
        fake_adapter.readings = [make_reading("a", bpm=72), make_reading("bad", bpm=300)]
        options = ServiceOptions(
            retry=OPTIONS.retry, debounce_seconds=0, sync_enabled=False,
            privacy_before_validation=False,
        )
        service = _service(fake_adapter, options)
        await _connect(service)
        await _share_heart_rate(service)

        released = await service.collect_biometric_data(TEST_USER_ID, last_hour)
        assert [r.id for r in released] == ["a"]
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_collect_without_consent_releases_nothing(
        self, fake_adapter: FakeAdapter, last_hour: TimeRange
    ) -> None:
        fake_adapter.readings = [make_reading("a", bpm=72)]
        service = _service(fake_adapter)
        await _connect(service)
        assert await service.collect_biometric_data(TEST_USER_ID, last_hour) == []
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_collect_without_devices(self, fake_adapter: FakeAdapter, last_hour: TimeRange) -> None:
        service = _service(fake_adapter)
        assert await service.collect_biometric_data(TEST_USER_ID, last_hour) == []

    @pytest.mark.asyncio
    async def test_failing_device_is_marked_error(
        self, fake_adapter: FakeAdapter, last_hour: TimeRange
    ) -> None:
        service = _service(fake_adapter)
        await _connect(service)
        fake_adapter.collect_error = httpx.ConnectError("vendor unreachable")

        with pytest.raises(DeviceConnectionError, match="failed after 2 attempt"):
            await service.collect_biometric_data(TEST_USER_ID, last_hour)
        assert fake_adapter.collect_calls == 2
        (device,) = await service.get_connected_devices(TEST_USER_ID)
        assert device.connection_status == ConnectionStatus.ERROR

        fake_adapter.collect_error = None
        await service.sync_device_data(TEST_USER_ID, TEST_DEVICE_ID)
        (device,) = await service.get_connected_devices(TEST_USER_ID)
        assert device.connection_status == ConnectionStatus.CONNECTED
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_sync_device_data(self, fake_adapter: FakeAdapter) -> None:
        fake_adapter.readings = [make_reading("a"), make_reading("old", minutes_ago=120)]
        service = _service(fake_adapter)
        await _connect(service)

        result = await service.sync_device_data(TEST_USER_ID, TEST_DEVICE_ID)
        assert result.status == "success"
        # Default window is the 60 minute lookback
        assert result.readings_collected == 1
        (device,) = await service.get_connected_devices(TEST_USER_ID)
        assert device.last_sync == NOW
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_sync_records_refreshed_battery(self, fake_adapter: FakeAdapter) -> None:
        service = _service(fake_adapter)
        await _connect(service)
        fake_adapter.refresh_result = ConnectionResult(
            True, ConnectionStatus.CONNECTED, device_id=TEST_DEVICE_ID, battery_level=41
        )

        await service.sync_device_data(TEST_USER_ID, TEST_DEVICE_ID)
        (device,) = await service.get_connected_devices(TEST_USER_ID)
        assert device.battery_level == 41
        assert device.connection_status == ConnectionStatus.CONNECTED
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_rejected_refresh_fails_sync(self, fake_adapter: FakeAdapter) -> None:
        fake_adapter.readings = [make_reading("a")]
        service = _service(fake_adapter)
        await _connect(service)
        fake_adapter.refresh_result = ConnectionResult(
            False, ConnectionStatus.DISCONNECTED, device_id=TEST_DEVICE_ID,
            error="Device is no longer paired",
        )

        with pytest.raises(DeviceConnectionError, match="no longer paired") as exc_info:
            await service.sync_device_data(TEST_USER_ID, TEST_DEVICE_ID)
        assert exc_info.value.code == "DEVICE_REFRESH_FAILED"
        assert exc_info.value.device_id == TEST_DEVICE_ID
        assert fake_adapter.collect_calls == 0
        (device,) = await service.get_connected_devices(TEST_USER_ID)
        assert device.connection_status == ConnectionStatus.ERROR
        assert device.last_sync is None
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_sync_unknown_device(self, fake_adapter: FakeAdapter) -> None:
        service = _service(fake_adapter)
        with pytest.raises(DeviceNotFoundError):
            await service.sync_device_data(TEST_USER_ID, "fake-nope")


# ---------------------------------------------------------------------------
# Live stream
# ---------------------------------------------------------------------------


class _ExplodingProcessor(RealTimeProcessor):
    """Fails on every reading it receives."""

    async def process_stream(self, user_id, source, baseline_provider, release=None):
        async for reading in source:
            raise RuntimeError(f"cannot process {reading.id}")
        yield  # pragma: no cover


class TestLiveStream:
    @pytest.mark.asyncio
    async def test_stream_requires_connected_device(self, fake_adapter: FakeAdapter) -> None:
        service = _service(fake_adapter)
        with pytest.raises(StreamError) as exc_info:
            service.stream_biometric_data(TEST_USER_ID)
        assert exc_info.value.code == "STREAM_NOT_ACTIVE"

    @pytest.mark.asyncio
    async def test_ingested_reading_reaches_subscriber(self, fake_adapter: FakeAdapter) -> None:
        service = _service(fake_adapter)
        await _connect(service)
        await _share_heart_rate(service)

        events = service.stream_biometric_data(TEST_USER_ID)
        assert (await _next(events)).kind == EventKind.CONNECTED

        await service.ingest_reading(TEST_USER_ID, make_reading("spike", bpm=205))
        event = await _next(events)
        assert event.kind == EventKind.DATA
        assert event.reading.id == "spike"
        assert event.processed.anomaly.anomaly_type == "heart_rate_spike"

        alerts = service.get_active_alerts(TEST_USER_ID)
        assert len(alerts) == 1
        service.acknowledge_alert(TEST_USER_ID, alerts[0].id)
        assert service.clear_acknowledged_alerts(TEST_USER_ID) == 1

        await events.aclose()
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_burst_is_released_once(self, fake_adapter: FakeAdapter) -> None:
        options = ServiceOptions(retry=OPTIONS.retry, debounce_seconds=0.05, sync_enabled=False)
        service = _service(fake_adapter, options)
        await _connect(service)
        await _share_heart_rate(service)
        events = service.stream_biometric_data(TEST_USER_ID)
        await _next(events)

        for i, minutes_ago in enumerate((3, 2, 1), start=1):
            await service.ingest_reading(
                TEST_USER_ID, make_reading(f"b{i}", minutes_ago=minutes_ago)
            )
        event = await _next(events)
        assert event.kind == EventKind.DATA
        assert event.reading.id == "b3"

        audit = await service.privacy.get_audit_log(TEST_USER_ID)
        released = [e.details for e in audit if e.action == "filtered_access"]
        assert released == ["b3"]

        await events.aclose()
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_unconsented_reading_is_not_streamed(self, fake_adapter: FakeAdapter) -> None:
        service = _service(fake_adapter)
        await _connect(service)
        events = service.stream_biometric_data(TEST_USER_ID)
        await _next(events)

        await service.ingest_reading(TEST_USER_ID, make_reading("private", bpm=72))
        with pytest.raises(asyncio.TimeoutError):
            await _next(events, timeout=0.1)
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_ingest_validation(self, fake_adapter: FakeAdapter) -> None:
        service = _service(fake_adapter)
        with pytest.raises(DeviceNotFoundError):
            await service.ingest_reading(TEST_USER_ID, make_reading())

        await _connect(service)
        with pytest.raises(DataValidationError):
            await service.ingest_reading(TEST_USER_ID, make_reading(user_id="someone-else"))
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_ends_subscriber_streams(self, fake_adapter: FakeAdapter) -> None:
        service = _service(fake_adapter)
        await _connect(service)
        events = service.stream_biometric_data(TEST_USER_ID)
        await _next(events)

        await service.shutdown()
        with pytest.raises(StopAsyncIteration):
            await _next(events)

    @pytest.mark.asyncio
    async def test_repeated_failures_end_stream_with_fatal_event(
        self, fake_adapter: FakeAdapter
    ) -> None:
        options = ServiceOptions(
            retry=OPTIONS.retry, debounce_seconds=0, sync_enabled=False, stream_max_retries=1
        )
        service = _service(
            fake_adapter, options,
            processor=_ExplodingProcessor(debounce_seconds=0, clock=fixed_clock),
        )
        await _connect(service)
        await _share_heart_rate(service)
        events = service.stream_biometric_data(TEST_USER_ID)
        await _next(events)

        await service.ingest_reading(TEST_USER_ID, make_reading("r1", minutes_ago=2))
        first = await _next(events)
        assert (first.kind, first.fatal) == (EventKind.ERROR, False)

        await service.ingest_reading(TEST_USER_ID, make_reading("r2", minutes_ago=1))
        second = await _next(events)
        assert (second.kind, second.fatal) == (EventKind.ERROR, True)
        assert "cannot process r2" in second.message

        with pytest.raises(StopAsyncIteration):
            await _next(events)
        assert not service.is_streaming(TEST_USER_ID)
        await service.shutdown()


# ---------------------------------------------------------------------------
# Profile, metrics and alerts
# ---------------------------------------------------------------------------


class TestProfile:
    @pytest.mark.asyncio
    async def test_missing_profile(self, fake_adapter: FakeAdapter) -> None:
        service = _service(fake_adapter)
        with pytest.raises(ProfileNotFoundError):
            await service.get_biometric_profile(TEST_USER_ID)
        with pytest.raises(ProfileNotFoundError):
            await service.detect_fatigue(TEST_USER_ID)
        with pytest.raises(ProfileNotFoundError):
            await service.update_biometric_profile(TEST_USER_ID, {"resting_heart_rate": 60})

    @pytest.mark.asyncio
    async def test_update_merges_nested_sections(self, fake_adapter: FakeAdapter) -> None:
        service = _service(fake_adapter)
        await _connect(service)
        profile = await service.update_biometric_profile(
            TEST_USER_ID,
            {"resting_heart_rate": 55, "fatigue_indicators": {"hrv_threshold": 40}},
        )
        assert profile.baseline.resting_heart_rate == 55
        assert profile.baseline.fatigue_indicators.hrv_threshold == 40
        assert profile.baseline.fatigue_indicators.sleep_quality_threshold == 70
        assert profile.baseline.max_heart_rate == 190
        await service.shutdown()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "updates",
        [
            {"favourite_colour": "blue"},
            {"resting_heart_rate": 200},
            {"fatigue_indicators": {"unknown_threshold": 1}},
        ],
    )
    async def test_invalid_updates(self, fake_adapter: FakeAdapter, updates: dict) -> None:
        service = _service(fake_adapter)
        await _connect(service)
        with pytest.raises(DataValidationError) as exc_info:
            await service.update_biometric_profile(TEST_USER_ID, updates)
        assert exc_info.value.code == "INVALID_PROFILE"
        assert (await service.get_biometric_profile(TEST_USER_ID)).baseline.resting_heart_rate == 70
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_metrics_without_recent_data(self, fake_adapter: FakeAdapter) -> None:
        service = _service(fake_adapter)
        await _connect(service)
        wellness = await service.assess_wellness_score(TEST_USER_ID)
        assert wellness.overall_score == pytest.approx(92.5)
        hrv = await service.analyze_heart_rate_variability(TEST_USER_ID)
        assert hrv.recovery_status == "unknown"
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_acknowledge_unknown_alert(self, fake_adapter: FakeAdapter) -> None:
        service = _service(fake_adapter)
        with pytest.raises(BiometricServiceError) as exc_info:
            service.acknowledge_alert(TEST_USER_ID, "alert-missing")
        assert exc_info.value.code == "ALERT_NOT_FOUND"


# ---------------------------------------------------------------------------
# Team reporting
# ---------------------------------------------------------------------------


class TestTeamAggregation:
    async def _team(
        self, fake_adapter: FakeAdapter, sharing: dict[str, str]
    ) -> BiometricService:
        service = _service(fake_adapter)
        readings: list[BiometricReading] = []
        for i, (user_id, level) in enumerate(sharing.items()):
            await _connect(service, user_id=user_id, serial=user_id)
            await _share_heart_rate(service, user_id, sharing_level=level)
            readings.append(
                make_reading(
                    f"{user_id}-r", user_id=user_id, device_id=f"fake-{user_id}",
                    bpm=70 + 10 * i, minutes_ago=10,
                )
            )
        fake_adapter.readings = readings
        return service

    @pytest.mark.asyncio
    async def test_three_opted_in_members_are_aggregated(
        self, fake_adapter: FakeAdapter, last_hour: TimeRange
    ) -> None:
        service = await self._team(fake_adapter, {"u1": "team", "u2": "team", "u3": "organization"})
        rows = await service.aggregate_team_data("team-1", ["u1", "u2", "u3"], last_hour)
        assert len(rows) == 1
        assert rows[0].participant_count == 3
        assert rows[0].aggregated_metrics["heart_rate"] == pytest.approx(80)
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_members_without_team_sharing_are_excluded(
        self, fake_adapter: FakeAdapter, last_hour: TimeRange
    ) -> None:
        service = await self._team(fake_adapter, {"u1": "team", "u2": "team", "u3": "none"})
        assert await service.aggregate_team_data("team-1", ["u1", "u2", "u3"], last_hour) == []
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_members_who_disallow_aggregation_are_excluded(
        self, fake_adapter: FakeAdapter, last_hour: TimeRange
    ) -> None:
        service = await self._team(fake_adapter, {"u1": "team", "u2": "team", "u3": "team"})
        await service.privacy.update_privacy_settings("u3", {"allow_team_aggregation": False})
        assert await service.aggregate_team_data("team-1", ["u1", "u2", "u3"], last_hour) == []
        await service.shutdown()
