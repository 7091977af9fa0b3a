"""Apple Watch adapter (HealthKit push).

Apple does not provide a server-side HealthKit API - the companion iOS app
uploads samples, which are buffered here until the next collect.  The
upload format mirrors a HealthKit export::

    {"samples": [
        {"type": "HKQuantityTypeIdentifierHeartRate", "value": 72,
         "startDate": "2026-02-23T08:00:00Z"},
        ...
    ]}

There is no OAuth flow; the access token is the app's upload token.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime

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
    StressReading,
    TimeRange,
    parse_timestamp,
)

logger = logging.getLogger("wellpulse.biometrics.adapters.apple_watch")

_HK_HEART_RATE = "HKQuantityTypeIdentifierHeartRate"
_HK_HRV = "HKQuantityTypeIdentifierHeartRateVariabilitySDNN"
_HK_STEP_COUNT = "HKQuantityTypeIdentifierStepCount"
_HK_ACTIVE_ENERGY = "HKQuantityTypeIdentifierActiveEnergyBurned"
_HK_EXERCISE_TIME = "HKQuantityTypeIdentifierAppleExerciseTime"
# Written by the companion app from its own stress model.
_WP_STRESS = "WPStressLevel"

# Buffered readings kept per device before the oldest are dropped.
_MAX_BUFFER = 10_000


class AppleWatchAdapter(DeviceAdapter):
    """Apple Watch via HealthKit uploads from the companion app."""

    DEVICE_TYPE = DeviceType.APPLE_WATCH
    DISPLAY_NAME = "Apple Watch"
    CAPABILITIES = (DataType.HEART_RATE, DataType.ACTIVITY_LEVEL, DataType.STRESS_LEVEL)

    def __init__(self) -> None:
        super().__init__()
        self._buffers: dict[str, list[BiometricReading]] = {}

    def validate_credentials(self, credentials: DeviceCredentials) -> list[str]:
        if not self._token_ok(credentials.access_token):
            return ["Apple Watch requires a valid upload token"]
        return []

    async def connect(self, user_id: str, credentials: DeviceCredentials) -> ConnectionResult:
        problems = self.validate_credentials(credentials)
        if problems:
            return ConnectionResult(False, ConnectionStatus.ERROR, error="; ".join(problems))
        device_id = f"apple_watch-{credentials.device_serial or uuid.uuid4().hex[:12]}"
        self._sessions[device_id] = _Session(user_id=user_id, credentials=credentials)
        self._buffers.setdefault(device_id, [])
        logger.info("Apple Watch: registered %s for user %s", device_id, user_id)
        return ConnectionResult(True, ConnectionStatus.CONNECTED, device_id=device_id)

    async def refresh(self, device_id: str) -> ConnectionResult:
        if not self.is_bound(device_id):
            return ConnectionResult(False, ConnectionStatus.DISCONNECTED, device_id=device_id)
        return ConnectionResult(True, ConnectionStatus.CONNECTED, device_id=device_id)

    async def disconnect(self, device_id: str) -> None:
        await super().disconnect(device_id)
        self._buffers.pop(device_id, None)

    async def collect(
        self, device_id: str, data_types: list[DataType], time_range: TimeRange
    ) -> list[BiometricReading]:
        self._session(device_id)
        buffered = self._buffers.get(device_id, [])
        wanted = set(data_types)
        out: list[BiometricReading] = []
        for reading in buffered:
            if not time_range.contains(reading.timestamp):
                continue
            copy = reading.copy()
            if DataType.HEART_RATE not in wanted:
                copy.heart_rate = None
            if DataType.STRESS_LEVEL not in wanted:
                copy.stress = None
            if DataType.ACTIVITY_LEVEL not in wanted:
                copy.activity = None
            if copy.has_measurements():
                out.append(copy)
        out.sort(key=lambda r: r.timestamp)
        return out

    # ------------------------------------------------------------------
    # Upload path
    # ------------------------------------------------------------------

    def ingest_export(self, device_id: str, payload: dict) -> list[BiometricReading]:
        """Parse an uploaded HealthKit sample batch into the device buffer.

        Returns:
            The readings that were added, sorted by timestamp.

        Raises:
            KeyError: If the device is not connected.
        """
        session = self._session(device_id)
        by_time: dict[datetime, BiometricReading] = {}

        for sample in payload.get("samples", []):
            ts = parse_timestamp(sample.get("startDate"))
            value = self._safe_float(sample.get("value"))
            kind = sample.get("type")
            if ts is None or value is None:
                continue
            reading = self._reading_at(
                by_time, session.user_id, device_id, ts,
                DataQuality(accuracy=0.9, completeness=1.0, reliability=0.95),
            )
            if kind == _HK_HEART_RATE:
                hrv = reading.heart_rate.variability if reading.heart_rate else None
                reading.heart_rate = HeartRateReading(bpm=value, confidence=0.95, variability=hrv)
            elif kind == _HK_HRV:
                if reading.heart_rate is not None:
                    reading.heart_rate.variability = value
            elif kind == _WP_STRESS:
                reading.stress = StressReading(level=value, confidence=0.7)
            elif kind in (_HK_STEP_COUNT, _HK_ACTIVE_ENERGY, _HK_EXERCISE_TIME):
                activity = reading.activity or ActivityReading(intensity=0.0)
                if kind == _HK_STEP_COUNT:
                    activity.steps = int(value)
                    activity.intensity = min(1.0, value / 160)
                elif kind == _HK_ACTIVE_ENERGY:
                    activity.calories = value
                else:
                    activity.active_minutes = int(value)
                reading.activity = activity
            else:
                logger.debug("Apple Watch: ignoring sample type %s", kind)

        added = sorted(
            (r for r in by_time.values() if r.has_measurements()), key=lambda r: r.timestamp
        )
        buffer = self._buffers.setdefault(device_id, [])
        buffer.extend(added)
        if len(buffer) > _MAX_BUFFER:
            del buffer[: len(buffer) - _MAX_BUFFER]
        logger.info("Apple Watch: buffered %d readings for %s", len(added), device_id)
        return added
