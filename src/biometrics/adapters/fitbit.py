"""Fitbit Web API adapter.

Authentication is OAuth2; token acquisition and refresh happen outside this
service, which receives the resulting access/refresh token pair.

API base: https://api.fitbit.com

Endpoints used:
    /1/user/-/devices.json                                - Paired trackers
    /1/user/-/activities/heart/date/{d}/1d/1min.json      - Intraday heart rate
    /1/user/-/activities/steps/date/{d}/1d/1min.json      - Intraday steps
    /1.2/user/-/sleep/date/{d}.json                       - Sleep sessions

Fitbit reports wall-clock times without an offset; they are treated as UTC.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone

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
    TimeRange,
)

logger = logging.getLogger("wellpulse.biometrics.adapters.fitbit")

_FITBIT_API_BASE = "https://api.fitbit.com"

# Steps per minute treated as maximal intensity.
_STEPS_PER_MINUTE_MAX = 160


class FitbitAdapter(DeviceAdapter):
    """Fitbit trackers and smartwatches via the Fitbit Web API."""

    DEVICE_TYPE = DeviceType.FITBIT
    DISPLAY_NAME = "Fitbit"
    CAPABILITIES = (
        DataType.HEART_RATE,
        DataType.ACTIVITY_LEVEL,
        DataType.SLEEP_QUALITY,
        DataType.STRESS_LEVEL,
    )

    def __init__(
        self,
        api_base: str = _FITBIT_API_BASE,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the Fitbit adapter.

        Args:
            api_base:    API root, overridable for sandboxes.
            http_client: Optional pre-configured httpx client (for testing).
        """
        super().__init__()
        self._api_base = api_base.rstrip("/")
        self._http_client = http_client

    def validate_credentials(self, credentials: DeviceCredentials) -> list[str]:
        problems = []
        if not self._token_ok(credentials.access_token):
            problems.append("Fitbit requires a valid access token")
        if not self._token_ok(credentials.refresh_token):
            problems.append("Fitbit requires a valid refresh token")
        return problems

    # ------------------------------------------------------------------
    # DeviceAdapter interface
    # ------------------------------------------------------------------

    async def connect(self, user_id: str, credentials: DeviceCredentials) -> ConnectionResult:
        problems = self.validate_credentials(credentials)
        if problems:
            return ConnectionResult(False, ConnectionStatus.ERROR, error="; ".join(problems))

        devices = await self._get("/1/user/-/devices.json", credentials.access_token)
        if not devices:
            return ConnectionResult(
                False, ConnectionStatus.ERROR, error="No Fitbit device paired with this account"
            )

        tracker = devices[0]
        device_id = f"fitbit-{tracker.get('id')}"
        self._sessions[device_id] = _Session(user_id=user_id, credentials=credentials)
        logger.info("Fitbit: connected %s for user %s", device_id, user_id)
        return ConnectionResult(
            success=True,
            status=ConnectionStatus.CONNECTED,
            device_id=device_id,
            model=tracker.get("deviceVersion"),
            battery_level=self._safe_int(tracker.get("batteryLevel")),
        )

    async def refresh(self, device_id: str) -> ConnectionResult:
        session = self._session(device_id)
        devices = await self._get("/1/user/-/devices.json", session.credentials.access_token)
        tracker_id = device_id.removeprefix("fitbit-")
        for tracker in devices or []:
            if str(tracker.get("id")) == tracker_id:
                return ConnectionResult(
                    True,
                    ConnectionStatus.CONNECTED,
                    device_id=device_id,
                    model=tracker.get("deviceVersion"),
                    battery_level=self._safe_int(tracker.get("batteryLevel")),
                )
        return ConnectionResult(
            False, ConnectionStatus.DISCONNECTED, device_id=device_id,
            error="Device is no longer paired",
        )

    async def collect(
        self, device_id: str, data_types: list[DataType], time_range: TimeRange
    ) -> list[BiometricReading]:
        session = self._session(device_id)
        token = session.credentials.access_token
        by_time: dict[datetime, BiometricReading] = {}
        sleeps: list[BiometricReading] = []

        day = time_range.start.date()
        while day <= time_range.end.date():
            if DataType.HEART_RATE in data_types:
                raw = await self._get(
                    f"/1/user/-/activities/heart/date/{day.isoformat()}/1d/1min.json", token
                )
                for ts, value in self._intraday(raw, "activities-heart-intraday", day):
                    reading = self._reading_at(by_time, session.user_id, device_id, ts)
                    reading.heart_rate = HeartRateReading(bpm=float(value), confidence=0.9)

            if DataType.ACTIVITY_LEVEL in data_types:
                raw = await self._get(
                    f"/1/user/-/activities/steps/date/{day.isoformat()}/1d/1min.json", token
                )
                for ts, value in self._intraday(raw, "activities-steps-intraday", day):
                    steps = int(value)
                    reading = self._reading_at(by_time, session.user_id, device_id, ts)
                    reading.activity = ActivityReading(
                        intensity=min(1.0, steps / _STEPS_PER_MINUTE_MAX),
                        steps=steps,
                        active_minutes=1 if steps > 0 else 0,
                    )

            if DataType.SLEEP_QUALITY in data_types:
                raw = await self._get(f"/1.2/user/-/sleep/date/{day.isoformat()}.json", token)
                sleeps.extend(self.normalize_sleep(raw, session.user_id, device_id))

            day += timedelta(days=1)

        readings = [
            r for r in [*by_time.values(), *sleeps] if time_range.contains(r.timestamp)
        ]
        readings.sort(key=lambda r: r.timestamp)
        logger.debug("Fitbit: collected %d readings for %s", len(readings), device_id)
        return readings

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    @staticmethod
    def _intraday(raw: dict, key: str, day: date) -> list[tuple[datetime, float]]:
        dataset = (raw or {}).get(key, {}).get("dataset", [])
        samples = []
        for point in dataset:
            try:
                t = datetime.strptime(point["time"], "%H:%M:%S").time()
            except (KeyError, ValueError):
                continue
            if point.get("value") is None:
                continue
            samples.append(
                (datetime.combine(day, t, tzinfo=timezone.utc), float(point["value"]))
            )
        return samples

    def normalize_sleep(self, raw: dict, user_id: str, device_id: str) -> list[BiometricReading]:
        """Convert a Fitbit sleep-log response into sleep readings.

        Fitbit has no sleep score in the public API; efficiency doubles as
        the quality score.
        """
        readings = []
        for log in (raw or {}).get("sleep", []):
            start = log.get("startTime")
            if not start:
                continue
            try:
                ts = datetime.fromisoformat(start).replace(tzinfo=timezone.utc)
            except ValueError:
                logger.warning("Fitbit: unparseable sleep startTime %r", start)
                continue
            summary = log.get("levels", {}).get("summary", {})
            efficiency = self._safe_float(log.get("efficiency"))
            readings.append(
                BiometricReading(
                    id=f"{device_id}-sleep-{log.get('logId', int(ts.timestamp()))}",
                    user_id=user_id,
                    device_id=device_id,
                    timestamp=ts,
                    quality=DataQuality(accuracy=0.85, completeness=1.0, reliability=0.85),
                    sleep=SleepReading(
                        duration=float(log.get("minutesAsleep", 0)),
                        quality=efficiency if efficiency is not None else 0.0,
                        deep_sleep_minutes=self._safe_float(summary.get("deep", {}).get("minutes")),
                        rem_sleep_minutes=self._safe_float(summary.get("rem", {}).get("minutes")),
                        efficiency=efficiency,
                    ),
                )
            )
        return readings

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _build_headers(access_token: str | None) -> dict[str, str]:
        return {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}

    async def _get(self, path: str, access_token: str | None) -> dict | list:
        """Make an authenticated GET request to the Fitbit API.

        Raises:
            httpx.HTTPStatusError: On non-2xx responses.
        """
        url = f"{self._api_base}{path}"
        headers = self._build_headers(access_token)

        if self._http_client:
            response = await self._http_client.get(url, headers=headers)
        else:
            async with httpx.AsyncClient() as client:
                response = await client.get(url, headers=headers)

        response.raise_for_status()
        return response.json()
