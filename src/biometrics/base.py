"""Canonical data models for the Wellpulse biometric pipeline.

Every device adapter returns ``BiometricReading`` objects.  These types are
the single source of truth consumed by the validation engine, privacy
filter, real-time processor, and API layer.

All timestamps are timezone-aware UTC datetimes.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

logger = logging.getLogger("wellpulse.biometrics")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 string (or pass through a datetime) as aware UTC.

    Naive values are assumed to be UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            logger.debug("Could not parse timestamp: %r", value)
            return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class DataType(str, Enum):
    HEART_RATE = "heart_rate"
    STRESS_LEVEL = "stress_level"
    ACTIVITY_LEVEL = "activity_level"
    SLEEP_QUALITY = "sleep_quality"
    BLOOD_PRESSURE = "blood_pressure"
    BODY_TEMPERATURE = "body_temperature"


class DeviceType(str, Enum):
    APPLE_WATCH = "apple_watch"
    FITBIT = "fitbit"
    GARMIN = "garmin"
    CUSTOM = "custom"


class ConnectionStatus(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class SharingLevel(str, Enum):
    NONE = "none"
    TEAM = "team"
    ORGANIZATION = "organization"


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    AlertSeverity.LOW: 0,
    AlertSeverity.MEDIUM: 1,
    AlertSeverity.HIGH: 2,
    AlertSeverity.CRITICAL: 3,
}


class AlertType(str, Enum):
    HEART_RATE_ANOMALY = "heart_rate_anomaly"
    STRESS_SPIKE = "stress_spike"
    FATIGUE_DETECTED = "fatigue_detected"
    INACTIVITY_WARNING = "inactivity_warning"


# ---------------------------------------------------------------------------
# Sub-readings
# ---------------------------------------------------------------------------


@dataclass
class HeartRateReading:
    """Heart rate sample.

    Attributes:
        bpm:         Beats per minute.
        confidence:  Sensor confidence, 0–1.
        variability: Heart-rate variability (ms), 0–100 after validation.
    """

    bpm: float
    confidence: float = 1.0
    variability: float | None = None


@dataclass
class StressReading:
    """Stress sample on a 0–100 scale.

    Attributes:
        level:      Stress level, 0–100 after validation.
        confidence: Sensor confidence, 0–1.
        indicators: Device-reported contributing signals (e.g. skin conductance).
    """

    level: float
    confidence: float = 1.0
    indicators: dict[str, float] = field(default_factory=dict)


@dataclass
class ActivityReading:
    """Activity sample.

    Attributes:
        intensity:      Normalized intensity, 0–1.
        steps:          Step count.
        calories:       Calorie burn (kcal).
        distance:       Distance in kilometres.
        active_minutes: Minutes of moderate+ activity.
    """

    intensity: float
    steps: int | None = None
    calories: float | None = None
    distance: float | None = None
    active_minutes: int | None = None


@dataclass
class SleepReading:
    """Sleep session summary.

    Attributes:
        duration:          Total sleep in minutes.
        quality:           Sleep quality score, 0–100.
        deep_sleep_minutes: Deep / slow-wave sleep duration.
        rem_sleep_minutes:  REM stage duration.
        efficiency:        Sleep efficiency percent, 0–100.
    """

    duration: float
    quality: float
    deep_sleep_minutes: float | None = None
    rem_sleep_minutes: float | None = None
    efficiency: float | None = None


@dataclass
class DataQuality:
    accuracy: float = 1.0
    completeness: float = 1.0
    reliability: float = 1.0
    outlier_detected: bool = False


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------


@dataclass
class BiometricReading:
    """One biometric sample from one device.

    At least one of ``heart_rate``, ``stress``, ``activity`` or ``sleep``
    must be present for the reading to be meaningful.

    Attributes:
        id:         Reading identifier, unique per device.
        user_id:    Owning user.
        device_id:  Device that produced the reading.
        timestamp:  UTC timestamp of the measurement.
        quality:    Data quality scores attached by the device or pipeline.
        heart_rate: Optional heart rate sub-reading.
        stress:     Optional stress sub-reading.
        activity:   Optional activity sub-reading.
        sleep:      Optional sleep sub-reading.
    """

    id: str
    user_id: str
    device_id: str
    timestamp: datetime | None
    quality: DataQuality | None = field(default_factory=DataQuality)
    heart_rate: HeartRateReading | None = None
    stress: StressReading | None = None
    activity: ActivityReading | None = None
    sleep: SleepReading | None = None

    def present_data_types(self) -> list[DataType]:
        """Return the data types carried by this reading, in canonical order."""
        present = []
        if self.heart_rate is not None:
            present.append(DataType.HEART_RATE)
        if self.stress is not None:
            present.append(DataType.STRESS_LEVEL)
        if self.activity is not None:
            present.append(DataType.ACTIVITY_LEVEL)
        if self.sleep is not None:
            present.append(DataType.SLEEP_QUALITY)
        return present

    def has_measurements(self) -> bool:
        return bool(self.present_data_types())

    def copy(self) -> BiometricReading:
        """Deep copy, so corrections never mutate the caller's reading."""
        return BiometricReading.from_dict(self.to_dict())

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict (ISO-8601 timestamp)."""
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat() if self.timestamp else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BiometricReading:
        """Build a reading from a dict produced by ``to_dict`` or an API body.

        Unknown keys inside sub-readings are ignored.
        """

        def _sub(key: str, sub_cls: type) -> Any:
            raw = data.get(key)
            if raw is None:
                return None
            allowed = sub_cls.__dataclass_fields__.keys()
            return sub_cls(**{k: v for k, v in raw.items() if k in allowed})

        quality_raw = data.get("quality")
        return cls(
            id=data.get("id") or "",
            user_id=data.get("user_id") or "",
            device_id=data.get("device_id") or "",
            timestamp=parse_timestamp(data.get("timestamp")),
            quality=_sub("quality", DataQuality) if quality_raw is not None else None,
            heart_rate=_sub("heart_rate", HeartRateReading),
            stress=_sub("stress", StressReading),
            activity=_sub("activity", ActivityReading),
            sleep=_sub("sleep", SleepReading),
        )


@dataclass
class TimeRange:
    start: datetime
    end: datetime

    def contains(self, ts: datetime) -> bool:
        return self.start <= ts <= self.end


# ---------------------------------------------------------------------------
# Profile / baseline
# ---------------------------------------------------------------------------


@dataclass
class FatigueIndicators:
    hrv_threshold: float = 30.0
    activity_level_threshold: float = 0.3
    sleep_quality_threshold: float = 70.0


@dataclass
class SleepPattern:
    avg_duration: float = 480.0  # minutes
    avg_bedtime: str = "23:00"
    avg_wake_time: str = "07:00"
    quality_threshold: float = 75.0


@dataclass
class ActivityBaseline:
    daily_steps: int = 10000
    active_minutes_goal: int = 30
    intensity_preference: float = 0.6


@dataclass
class BaselineMetrics:
    """A user's personal reference values for anomaly detection.

    Attributes:
        resting_heart_rate: Resting heart rate (bpm).
        max_heart_rate:     Maximum heart rate (bpm).
        stress_threshold:   Stress level considered elevated for this user.
        fatigue_indicators: Thresholds used by fatigue heuristics.
        sleep_pattern:      Typical sleep duration, schedule and quality.
        activity_level:     Daily step / active-minute goals and preferred intensity.
    """

    resting_heart_rate: float = 70.0
    max_heart_rate: float = 190.0
    stress_threshold: float = 60.0
    fatigue_indicators: FatigueIndicators = field(default_factory=FatigueIndicators)
    sleep_pattern: SleepPattern = field(default_factory=SleepPattern)
    activity_level: ActivityBaseline = field(default_factory=ActivityBaseline)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BaselineMetrics:
        return cls(
            resting_heart_rate=float(data.get("resting_heart_rate", 70.0)),
            max_heart_rate=float(data.get("max_heart_rate", 190.0)),
            stress_threshold=float(data.get("stress_threshold", 60.0)),
            fatigue_indicators=FatigueIndicators(**data.get("fatigue_indicators", {})),
            sleep_pattern=SleepPattern(**data.get("sleep_pattern", {})),
            activity_level=ActivityBaseline(**data.get("activity_level", {})),
        )


@dataclass
class BiometricProfile:
    user_id: str
    baseline: BaselineMetrics = field(default_factory=BaselineMetrics)
    connected_device_ids: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "baseline": self.baseline.to_dict(),
            "connected_device_ids": list(self.connected_device_ids),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class ConnectedDevice:
    """A device bound to a user.

    Attributes:
        device_id:         Identifier returned by the adapter on connect.
        user_id:           Owning user.
        device_type:       Vendor family, selects the adapter.
        connection_status: Current status; ERROR after a failed sync.
        data_types:        Data types the device can produce.
        last_sync:         UTC timestamp of the last successful sync.
        battery_level:     Last reported battery percentage, if known.
        firmware_version:  Firmware string, if known.
        model:             Model name, if known.
    """

    device_id: str
    user_id: str
    device_type: DeviceType
    connection_status: ConnectionStatus
    data_types: list[DataType] = field(default_factory=list)
    last_sync: datetime | None = None
    battery_level: int | None = None
    firmware_version: str | None = None
    model: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["device_type"] = self.device_type.value
        data["connection_status"] = self.connection_status.value
        data["data_types"] = [dt.value for dt in self.data_types]
        data["last_sync"] = self.last_sync.isoformat() if self.last_sync else None
        return data


# ---------------------------------------------------------------------------
# Consent / privacy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConsentSettings:
    """Per-user consent.  Frozen: updates replace the whole value.

    Attributes:
        data_types:         Consent flag per data type.
        sharing_level:      Who may see the user's data.
        retention_period:   Days readings may be released after capture (1–2555).
        allow_research:     Opt-in for research use.
        emergency_override: Opt-in to release extreme readings without consent.
    """

    data_types: dict[DataType, bool]
    sharing_level: SharingLevel = SharingLevel.NONE
    retention_period: int = 30
    allow_research: bool = False
    emergency_override: bool = False

    @classmethod
    def default(cls) -> ConsentSettings:
        return cls(data_types={dt: False for dt in DataType})

    def allows(self, data_type: DataType) -> bool:
        return bool(self.data_types.get(data_type, False))

    def to_dict(self) -> dict[str, Any]:
        return {
            "data_types": {dt.value: allowed for dt, allowed in self.data_types.items()},
            "sharing_level": self.sharing_level.value,
            "retention_period": self.retention_period,
            "allow_research": self.allow_research,
            "emergency_override": self.emergency_override,
        }


@dataclass(frozen=True)
class PrivacySettings:
    """Per-field sharing preferences applied on top of consent."""

    share_heart_rate: bool = False
    share_stress_level: bool = False
    share_activity_data: bool = True
    share_sleep_data: bool = False
    allow_team_aggregation: bool = True
    anonymize_in_reports: bool = True

    def shares(self, data_type: DataType) -> bool:
        return {
            DataType.HEART_RATE: self.share_heart_rate,
            DataType.STRESS_LEVEL: self.share_stress_level,
            DataType.ACTIVITY_LEVEL: self.share_activity_data,
            DataType.SLEEP_QUALITY: self.share_sleep_data,
        }.get(data_type, False)


@dataclass(frozen=True)
class AuditEntry:
    user_id: str
    action: str
    data_type: str
    timestamp: datetime
    approved: bool
    details: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


@dataclass
class ConfidenceInterval:
    lower: float
    upper: float


@dataclass
class AnonymizedBiometricData:
    """One k-anonymous hourly aggregate for a team.

    Attributes:
        team_id:             Team the aggregate belongs to.
        timestamp:           Start of the one-hour bucket.
        aggregated_metrics:  Mean per metric, present values only.
        participant_count:   Distinct users in the bucket, never below the k floor.
        confidence_interval: Sample-size based interval.
    """

    team_id: str
    timestamp: datetime
    aggregated_metrics: dict[str, float]
    participant_count: int
    confidence_interval: ConfidenceInterval

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


# ---------------------------------------------------------------------------
# Real-time outputs
# ---------------------------------------------------------------------------


@dataclass
class WellnessAlert:
    id: str
    user_id: str
    type: AlertType
    severity: AlertSeverity
    message: str
    timestamp: datetime
    data: dict[str, Any] = field(default_factory=dict)
    acknowledged: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data,
            "acknowledged": self.acknowledged,
        }


@dataclass
class AnomalyResult:
    is_anomaly: bool
    anomaly_type: str | None = None
    severity: AlertSeverity = AlertSeverity.LOW
    description: str = ""
    confidence: float = 0.0
    recommended_action: str | None = None


@dataclass
class ProcessedBiometricData:
    """Output of the real-time processor for one reading.

    Attributes:
        original:         The reading as received.
        smoothed:         Smoothed metric values keyed by metric name.
        derived_metrics:  Heart-rate zone, reserve, stress index, wellness score...
        anomaly:          Primary anomaly check result.
        alerts:           Alerts raised for this reading.
        processing_time_ms: Wall time spent processing.
        algorithms:       Names of the algorithms applied.
        confidence:       Processing confidence, 0.1–1.
    """

    original: BiometricReading
    smoothed: dict[str, float] = field(default_factory=dict)
    derived_metrics: dict[str, float] = field(default_factory=dict)
    anomaly: AnomalyResult | None = None
    alerts: list[WellnessAlert] = field(default_factory=list)
    processing_time_ms: float = 0.0
    algorithms: list[str] = field(default_factory=list)
    confidence: float = 1.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "original": self.original.to_dict(),
            "smoothed": dict(self.smoothed),
            "derived_metrics": dict(self.derived_metrics),
            "anomaly": asdict(self.anomaly) if self.anomaly else None,
            "alerts": [a.to_dict() for a in self.alerts],
            "processing_metadata": {
                "processing_time_ms": self.processing_time_ms,
                "algorithms": list(self.algorithms),
                "confidence": self.confidence,
            },
        }
