"""Shared fixtures, builders and mock vendor responses for biometric pipeline tests.

Everything runs against a fixed clock (``NOW``) so timestamp checks,
retention cut-offs and interpolation gaps are deterministic.  Vendor
payloads are inline dicts shaped like the real Fitbit / Garmin / HealthKit
responses.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from src.biometrics.adapters.base import (
    ConnectionResult,
    DeviceAdapter,
    DeviceCredentials,
    _Session,
)
from src.biometrics.base import (
    ActivityReading,
    BiometricReading,
    ConnectionStatus,
    DataQuality,
    DataType,
    DeviceType,
    HeartRateReading,
    SleepReading,
    StressReading,
    TimeRange,
)
from src.biometrics.config_loader import PipelineConfig, load_pipeline_config
from src.biometrics.privacy import PrivacyFilter
from src.biometrics.realtime import RealTimeProcessor
from src.biometrics.validation import ValidationEngine

# Fixed "current time" for every test
NOW = datetime(2026, 2, 23, 12, 0, tzinfo=timezone.utc)
TEST_USER_ID = "user-123"
TEST_DEVICE_ID = "fake-watch"


def fixed_clock() -> datetime:
    return NOW


def make_reading(
    reading_id: str = "r-1",
    *,
    user_id: str = TEST_USER_ID,
    device_id: str = TEST_DEVICE_ID,
    timestamp: datetime | None = None,
    minutes_ago: float = 5,
    bpm: float | None = 72.0,
    variability: float | None = None,
    stress: float | None = None,
    intensity: float | None = None,
    steps: int | None = None,
    sleep_minutes: float | None = None,
    sleep_quality: float | None = None,
) -> BiometricReading:
    """Build a reading ``minutes_ago`` before NOW (or at ``timestamp``)."""
    return BiometricReading(
        id=reading_id,
        user_id=user_id,
        device_id=device_id,
        timestamp=timestamp or NOW - timedelta(minutes=minutes_ago),
        quality=DataQuality(),
        heart_rate=(
            HeartRateReading(bpm=bpm, confidence=0.95, variability=variability)
            if bpm is not None
            else None
        ),
        stress=StressReading(level=stress, confidence=0.9) if stress is not None else None,
        activity=(
            ActivityReading(intensity=intensity, steps=steps) if intensity is not None else None
        ),
        sleep=(
            SleepReading(duration=sleep_minutes, quality=sleep_quality or 0.0)
            if sleep_minutes is not None
            else None
        ),
    )


# ---------------------------------------------------------------------------
# Fake adapter
# ---------------------------------------------------------------------------


class FakeAdapter(DeviceAdapter):
    """In-memory adapter serving pre-loaded readings, registered as CUSTOM.

    Device ids are ``fake-<serial>``.  Set ``collect_error`` to make every
    collect raise, or ``connect_result`` / ``refresh_result`` to override
    the connect and refresh outcomes.
    """

    DEVICE_TYPE = DeviceType.CUSTOM
    DISPLAY_NAME = "Fake Device"
    CAPABILITIES = (
        DataType.HEART_RATE,
        DataType.STRESS_LEVEL,
        DataType.ACTIVITY_LEVEL,
        DataType.SLEEP_QUALITY,
    )

    def __init__(self, readings: list[BiometricReading] | None = None) -> None:
        super().__init__()
        self.readings = list(readings or [])
        self.collect_error: Exception | None = None
        self.connect_result: ConnectionResult | None = None
        self.refresh_result: ConnectionResult | None = None
        self.collect_calls = 0

    async def connect(self, user_id: str, credentials: DeviceCredentials) -> ConnectionResult:
        if self.connect_result is not None:
            return self.connect_result
        device_id = f"fake-{credentials.device_serial or 'watch'}"
        self._sessions[device_id] = _Session(user_id=user_id, credentials=credentials)
        return ConnectionResult(True, ConnectionStatus.CONNECTED, device_id=device_id)

    async def refresh(self, device_id: str) -> ConnectionResult:
        if self.refresh_result is not None:
            return self.refresh_result
        return ConnectionResult(self.is_bound(device_id), ConnectionStatus.CONNECTED, device_id)

    async def collect(
        self, device_id: str, data_types: list[DataType], time_range: TimeRange
    ) -> list[BiometricReading]:
        self.collect_calls += 1
        if self.collect_error is not None:
            raise self.collect_error
        return [
            r.copy()
            for r in self.readings
            if r.device_id == device_id and time_range.contains(r.timestamp)
        ]


# ---------------------------------------------------------------------------
# Component fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def pipeline_config() -> PipelineConfig:
    """Load the bundled pipeline config."""
    return load_pipeline_config()


@pytest.fixture
def validation_engine(pipeline_config: PipelineConfig) -> ValidationEngine:
    return ValidationEngine(pipeline_config.validation, clock=fixed_clock)


@pytest.fixture
def privacy_filter(pipeline_config: PipelineConfig) -> PrivacyFilter:
    return PrivacyFilter(config=pipeline_config.privacy, clock=fixed_clock)


@pytest.fixture
def processor(pipeline_config: PipelineConfig) -> RealTimeProcessor:
    return RealTimeProcessor(pipeline_config.realtime, debounce_seconds=0, clock=fixed_clock)


@pytest.fixture
def fake_adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def last_hour() -> TimeRange:
    return TimeRange(start=NOW - timedelta(hours=1), end=NOW)


# ---------------------------------------------------------------------------
# Mock vendor responses
# ---------------------------------------------------------------------------


@pytest.fixture
def fitbit_devices_raw() -> list:
    return [
        {
            "id": "2837461",
            "deviceVersion": "Charge 6",
            "batteryLevel": "82",
            "type": "TRACKER",
            "lastSyncTime": "2026-02-23T11:52:10.000",
        }
    ]


@pytest.fixture
def fitbit_heart_raw() -> dict:
    return {
        "activities-heart": [{"dateTime": "2026-02-23", "value": {"restingHeartRate": 58}}],
        "activities-heart-intraday": {
            "dataset": [
                {"time": "08:00:00", "value": 64},
                {"time": "08:01:00", "value": 66},
                {"time": "bogus", "value": 70},
            ],
            "datasetInterval": 1,
            "datasetType": "minute",
        },
    }


@pytest.fixture
def fitbit_steps_raw() -> dict:
    return {
        "activities-steps": [{"dateTime": "2026-02-23", "value": "5120"}],
        "activities-steps-intraday": {
            "dataset": [{"time": "08:00:00", "value": 80}],
            "datasetInterval": 1,
            "datasetType": "minute",
        },
    }


@pytest.fixture
def fitbit_sleep_raw() -> dict:
    return {
        "sleep": [
            {
                "logId": 44012345,
                "startTime": "2026-02-23T00:30:00.000",
                "minutesAsleep": 420,
                "efficiency": 92,
                "isMainSleep": True,
                "levels": {
                    "summary": {
                        "deep": {"minutes": 80},
                        "light": {"minutes": 230},
                        "rem": {"minutes": 95},
                        "wake": {"minutes": 15},
                    }
                },
            }
        ]
    }


@pytest.fixture
def garmin_dailies_raw() -> list:
    # 1771833600 = 2026-02-23T08:00:00Z
    return [
        {
            "summaryId": "x-1771833600",
            "calendarDate": "2026-02-23",
            "startTimeInSeconds": 1771833600,
            "durationInSeconds": 86400,
            "steps": 4000,
            "distanceInMeters": 3200.0,
            "activeKilocalories": 300,
            "moderateIntensityDurationInSeconds": 1200,
            "vigorousIntensityDurationInSeconds": 600,
            "timeOffsetHeartRateSamples": {"0": 62, "15": 64, "bad": 99},
        }
    ]


@pytest.fixture
def garmin_stress_raw() -> list:
    return [
        {
            "summaryId": "s-1771833600",
            "startTimeInSeconds": 1771833600,
            "timeOffsetStressLevelValues": {"0": 35, "180": -1, "360": 48},
        }
    ]


@pytest.fixture
def garmin_sleeps_raw() -> list:
    return [
        {
            "summaryId": "sl-1771801200",
            "calendarDate": "2026-02-23",
            "startTimeInSeconds": 1771801200,
            "durationInSeconds": 27000,
            "deepSleepDurationInSeconds": 5400,
            "remSleepInSeconds": 6000,
            "overallSleepScore": {"value": 82, "qualifierKey": "GOOD"},
        }
    ]


@pytest.fixture
def healthkit_upload() -> dict:
    return {
        "samples": [
            {"type": "HKQuantityTypeIdentifierHeartRate", "value": 72,
             "startDate": "2026-02-23T11:00:00Z"},
            {"type": "HKQuantityTypeIdentifierHeartRateVariabilitySDNN", "value": 48,
             "startDate": "2026-02-23T11:00:00Z"},
            {"type": "HKQuantityTypeIdentifierStepCount", "value": 80,
             "startDate": "2026-02-23T11:00:00Z"},
            {"type": "WPStressLevel", "value": 35, "startDate": "2026-02-23T11:05:00Z"},
            {"type": "HKCategoryTypeIdentifierMindfulSession", "value": 1,
             "startDate": "2026-02-23T11:10:00Z"},
            {"type": "HKQuantityTypeIdentifierHeartRate", "value": None,
             "startDate": "2026-02-23T11:15:00Z"},
        ]
    }
