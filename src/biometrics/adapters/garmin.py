"""Garmin Health API adapter.

Requires a Garmin Health API consumer key plus a per-user access token
issued by the OAuth gateway.  Both are passed in ``DeviceCredentials``.

API base: https://apis.garmin.com/wellness-api/rest

Endpoints used:
    /user/id        - Garmin user id for the token
    /dailies        - Daily summaries with 15-second heart-rate samples
    /stressDetails  - 3-minute stress level samples
    /sleeps         - Sleep sessions with stage durations and score

Summary endpoints take an upload window of at most 24 hours, so longer
time ranges are fetched in daily chunks.
"""

from __future__ import annotations

import logging
from datetime import datetime

import httpx

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

logger = logging.getLogger("wellpulse.biometrics.adapters.garmin")

_GARMIN_API_BASE = "https://apis.garmin.com/wellness-api/rest"
_MAX_WINDOW_SECONDS = 86400

# Active minutes per summary treated as maximal intensity.
_ACTIVE_MINUTES_MAX = 60


class GarminAdapter(DeviceAdapter):
    """Garmin wearables via the Garmin Health API."""

    DEVICE_TYPE = DeviceType.GARMIN
    DISPLAY_NAME = "Garmin Connect"
    CAPABILITIES = (
        DataType.HEART_RATE,
        DataType.ACTIVITY_LEVEL,
        DataType.SLEEP_QUALITY,
        DataType.STRESS_LEVEL,
        DataType.BODY_TEMPERATURE,
    )

    def __init__(
        self,
        api_base: str = _GARMIN_API_BASE,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the Garmin adapter.

        Args:
            api_base:    API root, overridable for sandboxes.
            http_client: Optional pre-configured httpx client (useful for testing).
        """
        super().__init__()
        self._api_base = api_base.rstrip("/")
        self._http_client = http_client

    def validate_credentials(self, credentials: DeviceCredentials) -> list[str]:
        problems = []
        if not credentials.api_key:
            problems.append("Garmin requires an API key")
        if not credentials.access_token:
            problems.append("Garmin requires an access token")
        return problems

    # ------------------------------------------------------------------
    # DeviceAdapter interface
    # ------------------------------------------------------------------

    async def connect(self, user_id: str, credentials: DeviceCredentials) -> ConnectionResult:
        problems = self.validate_credentials(credentials)
        if problems:
            return ConnectionResult(False, ConnectionStatus.ERROR, error="; ".join(problems))

        raw = await self._get("/user/id", {}, credentials)
        garmin_user = raw.get("userId") if isinstance(raw, dict) else None
        if not garmin_user:
            return ConnectionResult(
                False, ConnectionStatus.ERROR, error="Garmin did not return a user id"
            )

        device_id = f"garmin-{garmin_user}"
        self._sessions[device_id] = _Session(user_id=user_id, credentials=credentials)
        logger.info("Garmin: connected %s for user %s", device_id, user_id)
        return ConnectionResult(True, ConnectionStatus.CONNECTED, device_id=device_id)

    async def refresh(self, device_id: str) -> ConnectionResult:
        session = self._session(device_id)
        raw = await self._get("/user/id", {}, session.credentials)
        if isinstance(raw, dict) and f"garmin-{raw.get('userId')}" == device_id:
            return ConnectionResult(True, ConnectionStatus.CONNECTED, device_id=device_id)
        return ConnectionResult(
            False, ConnectionStatus.DISCONNECTED, device_id=device_id,
            error="Garmin token no longer maps to this device",
        )

    async def collect(
        self, device_id: str, data_types: list[DataType], time_range: TimeRange
    ) -> list[BiometricReading]:
        session = self._session(device_id)
        by_time: dict[datetime, BiometricReading] = {}
        sleeps: list[BiometricReading] = []

        start = int(time_range.start.timestamp())
        end = int(time_range.end.timestamp())
        for window_start in range(start, end, _MAX_WINDOW_SECONDS):
            params = {
                "uploadStartTimeInSeconds": window_start,
                "uploadEndTimeInSeconds": min(window_start + _MAX_WINDOW_SECONDS, end),
            }
            if DataType.HEART_RATE in data_types or DataType.ACTIVITY_LEVEL in data_types:
                dailies = await self._get("/dailies", params, session.credentials)
                self.normalize_dailies(
                    dailies, session.user_id, device_id, by_time, data_types
                )
            if DataType.STRESS_LEVEL in data_types:
                stress = await self._get("/stressDetails", params, session.credentials)
                self.normalize_stress(stress, session.user_id, device_id, by_time)
            if DataType.SLEEP_QUALITY in data_types:
                raw_sleeps = await self._get("/sleeps", params, session.credentials)
                sleeps.extend(self.normalize_sleeps(raw_sleeps, session.user_id, device_id))

        readings = [
            r for r in [*by_time.values(), *sleeps] if time_range.contains(r.timestamp)
        ]
        readings.sort(key=lambda r: r.timestamp)
        logger.debug("Garmin: collected %d readings for %s", len(readings), device_id)
        return readings

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    def normalize_dailies(
        self,
        raw: list | dict,
        user_id: str,
        device_id: str,
        by_time: dict[datetime, BiometricReading],
        data_types: list[DataType],
    ) -> None:
        """Merge heart-rate samples and daily activity into ``by_time``."""
        summaries = raw if isinstance(raw, list) else raw.get("dailies", [])
        for summary in summaries:
            start = self._safe_int(summary.get("startTimeInSeconds"))
            if start is None:
                continue

            if DataType.HEART_RATE in data_types:
                samples = summary.get("timeOffsetHeartRateSamples") or {}
                for offset, bpm in samples.items():
                    offset_s = self._safe_int(offset)
                    value = self._safe_float(bpm)
                    if offset_s is None or value is None:
                        continue
                    reading = self._reading_at(
                        by_time, user_id, device_id, self._from_epoch(start + offset_s)
                    )
                    reading.heart_rate = HeartRateReading(bpm=value, confidence=0.9)

            if DataType.ACTIVITY_LEVEL in data_types:
                moderate = self._safe_int(summary.get("moderateIntensityDurationInSeconds")) or 0
                vigorous = self._safe_int(summary.get("vigorousIntensityDurationInSeconds")) or 0
                active_minutes = (moderate + vigorous) // 60
                distance_m = self._safe_float(summary.get("distanceInMeters"))
                reading = self._reading_at(by_time, user_id, device_id, self._from_epoch(start))
                reading.activity = ActivityReading(
                    intensity=min(1.0, active_minutes / _ACTIVE_MINUTES_MAX),
                    steps=self._safe_int(summary.get("steps")),
                    calories=self._safe_float(summary.get("activeKilocalories")),
                    distance=distance_m / 1000 if distance_m is not None else None,
                    active_minutes=active_minutes,
                )

    def normalize_stress(
        self,
        raw: list | dict,
        user_id: str,
        device_id: str,
        by_time: dict[datetime, BiometricReading],
    ) -> None:
        """Merge stress samples into ``by_time``.  Negative values mean 'not measured'."""
        details = raw if isinstance(raw, list) else raw.get("stressDetails", [])
        for detail in details:
            start = self._safe_int(detail.get("startTimeInSeconds"))
            if start is None:
                continue
            for offset, level in (detail.get("timeOffsetStressLevelValues") or {}).items():
                offset_s = self._safe_int(offset)
                value = self._safe_float(level)
                if offset_s is None or value is None or value < 0:
                    continue
                reading = self._reading_at(
                    by_time, user_id, device_id, self._from_epoch(start + offset_s)
                )
                reading.stress = StressReading(level=value, confidence=0.8)

    def normalize_sleeps(
        self, raw: list | dict, user_id: str, device_id: str
    ) -> list[BiometricReading]:
        sessions = raw if isinstance(raw, list) else raw.get("sleeps", [])
        readings = []
        for sleep in sessions:
            start = self._safe_int(sleep.get("startTimeInSeconds"))
            duration_s = self._safe_int(sleep.get("durationInSeconds"))
            if start is None or duration_s is None:
                continue
            deep = self._safe_int(sleep.get("deepSleepDurationInSeconds"))
            rem = self._safe_int(sleep.get("remSleepInSeconds"))
            score = self._safe_float((sleep.get("overallSleepScore") or {}).get("value"))
            readings.append(
                BiometricReading(
                    id=f"{device_id}-sleep-{sleep.get('summaryId', start)}",
                    user_id=user_id,
                    device_id=device_id,
                    timestamp=self._from_epoch(start),
                    quality=DataQuality(accuracy=0.85, completeness=1.0, reliability=0.85),
                    sleep=SleepReading(
                        duration=duration_s / 60,
                        quality=score if score is not None else 0.0,
                        deep_sleep_minutes=deep / 60 if deep is not None else None,
                        rem_sleep_minutes=rem / 60 if rem is not None else None,
                    ),
                )
            )
        return readings

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _build_headers(credentials: DeviceCredentials) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {credentials.access_token}",
            "X-Garmin-Consumer-Key": credentials.api_key or "",
            "Accept": "application/json",
        }

    async def _get(
        self, path: str, params: dict, credentials: DeviceCredentials
    ) -> dict | list:
        """Make an authenticated GET request to the Garmin Health API.

        Raises:
            httpx.HTTPStatusError: On non-2xx responses.
        """
        url = f"{self._api_base}{path}"
        headers = self._build_headers(credentials)

        try:
            if self._http_client:
                response = await self._http_client.get(url, params=params, headers=headers)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.get(url, params=params, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "Garmin API error: %s %s → %d",
                exc.request.method, exc.request.url, exc.response.status_code,
            )
            raise
        return response.json()
