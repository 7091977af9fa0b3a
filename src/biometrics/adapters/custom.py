"""Custom / development device adapter.

Produces a deterministic simulated heart-rate trace so the pipeline can be
exercised end to end without vendor accounts.  The trace is seeded by the
device id, so repeated collects over the same range return the same values.
"""

from __future__ import annotations

import logging
import math
import random
import uuid
from datetime import timedelta

from src.biometrics.adapters.base import (
    ConnectionResult,
    DeviceAdapter,
    DeviceCredentials,
    _Session,
)
from src.biometrics.base import (
    BiometricReading,
    ConnectionStatus,
    DataQuality,
    DataType,
    DeviceType,
    HeartRateReading,
    TimeRange,
)

logger = logging.getLogger("wellpulse.biometrics.adapters.custom")

_MAX_SAMPLES = 1440


class CustomDeviceAdapter(DeviceAdapter):
    """Simulated heart-rate sensor.

    Args:
        sample_interval: Spacing between simulated samples.
        resting_bpm:     Centre of the simulated trace.
    """

    DEVICE_TYPE = DeviceType.CUSTOM
    DISPLAY_NAME = "Custom Device"
    CAPABILITIES = (DataType.HEART_RATE,)

    def __init__(
        self,
        sample_interval: timedelta = timedelta(minutes=1),
        resting_bpm: float = 68.0,
    ) -> None:
        super().__init__()
        self._interval = sample_interval
        self._resting = resting_bpm

    async def connect(self, user_id: str, credentials: DeviceCredentials) -> ConnectionResult:
        device_id = f"custom-{credentials.device_serial or uuid.uuid4().hex[:12]}"
        self._sessions[device_id] = _Session(user_id=user_id, credentials=credentials)
        logger.info("Custom: connected %s for user %s", device_id, user_id)
        return ConnectionResult(
            True, ConnectionStatus.CONNECTED, device_id=device_id, model="simulator"
        )

    async def refresh(self, device_id: str) -> ConnectionResult:
        status = ConnectionStatus.CONNECTED if self.is_bound(device_id) else ConnectionStatus.DISCONNECTED
        return ConnectionResult(status == ConnectionStatus.CONNECTED, status, device_id=device_id)

    async def collect(
        self, device_id: str, data_types: list[DataType], time_range: TimeRange
    ) -> list[BiometricReading]:
        session = self._session(device_id)
        if DataType.HEART_RATE not in data_types:
            return []

        readings: list[BiometricReading] = []
        ts = time_range.start
        while ts <= time_range.end and len(readings) < _MAX_SAMPLES:
            # Seed per sample so overlapping ranges agree on shared instants.
            rng = random.Random(f"{device_id}:{int(ts.timestamp())}")
            minute_of_day = ts.hour * 60 + ts.minute
            circadian = 6 * math.sin(2 * math.pi * minute_of_day / 1440)
            readings.append(
                BiometricReading(
                    id=f"{device_id}-{int(ts.timestamp())}",
                    user_id=session.user_id,
                    device_id=device_id,
                    timestamp=ts,
                    quality=DataQuality(accuracy=0.8, completeness=1.0, reliability=0.8),
                    heart_rate=HeartRateReading(
                        bpm=round(self._resting + circadian + rng.gauss(0, 3), 1),
                        confidence=0.8,
                        variability=round(max(0.0, rng.gauss(45, 8)), 1),
                    ),
                )
            )
            ts += self._interval
        return readings
