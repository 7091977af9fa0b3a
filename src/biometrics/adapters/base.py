"""Device adapter contract.

Every vendor integration subclasses ``DeviceAdapter`` and returns canonical
``BiometricReading`` objects.  The orchestrator treats all vendors
uniformly through this contract and never calls vendor APIs directly.

Adapters do not enforce timeouts or retries themselves; the orchestrator
wraps every call (see ``src.biometrics.sync``).
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone

from src.biometrics.base import (
    BiometricReading,
    ConnectionStatus,
    DataQuality,
    DataType,
    DeviceType,
    TimeRange,
)

logger = logging.getLogger("wellpulse.biometrics.adapters")

# Tokens shorter than this are rejected before any network call.
MIN_TOKEN_LENGTH = 10


@dataclass
class DeviceCredentials:
    """Credentials supplied when connecting a device.

    Attributes:
        access_token:  Vendor OAuth access token.
        refresh_token: Vendor OAuth refresh token.
        api_key:       Vendor API key (Garmin).
        device_serial: Serial number for custom / self-hosted devices.
        extra:         Any additional vendor-specific fields.
    """

    access_token: str | None = None
    refresh_token: str | None = None
    api_key: str | None = None
    device_serial: str | None = None
    extra: dict = field(default_factory=dict)


@dataclass
class ConnectionResult:
    success: bool
    status: ConnectionStatus
    device_id: str | None = None
    error: str | None = None
    model: str | None = None
    firmware_version: str | None = None
    battery_level: int | None = None


@dataclass
class _Session:
    user_id: str
    credentials: DeviceCredentials


class DeviceAdapter(ABC):
    """Abstract base for all device adapters.

    One adapter instance serves every device of its type; per-device state
    lives in ``self._sessions`` keyed by device id.

    Class attributes:
        DEVICE_TYPE:  Registry key.
        DISPLAY_NAME: Human-readable vendor name.
        CAPABILITIES: Data types this device family can produce.
    """

    DEVICE_TYPE: DeviceType
    DISPLAY_NAME: str
    CAPABILITIES: tuple[DataType, ...] = ()

    def __init__(self) -> None:
        self._sessions: dict[str, _Session] = {}

    def get_capabilities(self) -> list[DataType]:
        return list(self.CAPABILITIES)

    def validate_credentials(self, credentials: DeviceCredentials) -> list[str]:
        """Return a list of problems with ``credentials``; empty means valid."""
        return []

    @abstractmethod
    async def connect(self, user_id: str, credentials: DeviceCredentials) -> ConnectionResult:
        """Bind a device for ``user_id``.

        Returns:
            ConnectionResult; ``success=False`` with ``error`` on rejection.
        """

    @abstractmethod
    async def collect(
        self, device_id: str, data_types: list[DataType], time_range: TimeRange
    ) -> list[BiometricReading]:
        """Fetch readings for ``device_id`` within ``time_range``.

        Returns:
            Readings sorted by timestamp, restricted to ``data_types``.
        """

    @abstractmethod
    async def refresh(self, device_id: str) -> ConnectionResult:
        """Re-check the device's connection status."""

    async def disconnect(self, device_id: str) -> None:
        self._sessions.pop(device_id, None)

    def is_bound(self, device_id: str) -> bool:
        return device_id in self._sessions

    def _session(self, device_id: str) -> _Session:
        try:
            return self._sessions[device_id]
        except KeyError:
            raise KeyError(f"{self.DISPLAY_NAME} device {device_id} is not connected") from None

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _token_ok(token: str | None) -> bool:
        return bool(token) and len(token) > MIN_TOKEN_LENGTH

    @staticmethod
    def _safe_int(value: object) -> int | None:
        """Convert to int, returning None on failure."""
        if value is None:
            return None
        try:
            return int(value)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _safe_float(value: object) -> float | None:
        """Convert to float, returning None on failure."""
        if value is None:
            return None
        try:
            return float(value)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _from_epoch(seconds: float) -> datetime:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)

    @staticmethod
    def _reading_at(
        by_time: dict[datetime, BiometricReading],
        user_id: str,
        device_id: str,
        ts: datetime,
        quality: DataQuality | None = None,
    ) -> BiometricReading:
        """Return the reading for ``ts``, creating it so samples at one instant merge."""
        if ts not in by_time:
            by_time[ts] = BiometricReading(
                id=f"{device_id}-{int(ts.timestamp())}",
                user_id=user_id,
                device_id=device_id,
                timestamp=ts,
                quality=quality or DataQuality(accuracy=0.9, completeness=1.0, reliability=0.9),
            )
        return by_time[ts]
