"""Pydantic request models for the biometric API.

Range checks on measurements are deliberately absent here: out-of-range
readings are accepted and handed to the validation engine, which rejects,
warns or clamps them per pipeline_config.yaml.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import Field, model_validator

from src.biometrics.adapters.base import DeviceCredentials
from src.biometrics.base import (
    ActivityReading,
    BiometricReading,
    DataQuality,
    DeviceType,
    HeartRateReading,
    SleepReading,
    StressReading,
    TimeRange,
    parse_timestamp,
)
from src.models.base import WellpulseBase


# ---------- Devices ----------

class DeviceConnectRequest(WellpulseBase):
    device_type: DeviceType
    access_token: str | None = None
    refresh_token: str | None = None
    api_key: str | None = None
    device_serial: str | None = None
    extra: dict[str, Any] = Field(default_factory=dict)

    def to_credentials(self) -> DeviceCredentials:
        return DeviceCredentials(
            access_token=self.access_token,
            refresh_token=self.refresh_token,
            api_key=self.api_key,
            device_serial=self.device_serial,
            extra=dict(self.extra),
        )


class TimeRangeRequest(WellpulseBase):
    start_time: datetime
    end_time: datetime

    @model_validator(mode="after")
    def _ordered(self) -> TimeRangeRequest:
        if parse_timestamp(self.end_time) < parse_timestamp(self.start_time):
            raise ValueError("end_time must not be before start_time")
        return self

    def to_time_range(self) -> TimeRange:
        return TimeRange(start=parse_timestamp(self.start_time), end=parse_timestamp(self.end_time))


class DeviceSyncRequest(WellpulseBase):
    start_time: datetime | None = None
    end_time: datetime | None = None

    def to_time_range(self) -> TimeRange | None:
        if self.start_time is None or self.end_time is None:
            return None
        return TimeRange(start=parse_timestamp(self.start_time), end=parse_timestamp(self.end_time))


# ---------- Readings ----------

class HeartRateIn(WellpulseBase):
    bpm: float
    confidence: float = 1.0
    variability: float | None = None


class StressIn(WellpulseBase):
    level: float
    confidence: float = 1.0
    indicators: dict[str, float] = Field(default_factory=dict)


class ActivityIn(WellpulseBase):
    intensity: float
    steps: int | None = None
    calories: float | None = None
    distance: float | None = None
    active_minutes: int | None = None


class SleepIn(WellpulseBase):
    duration: float
    quality: float
    deep_sleep_minutes: float | None = None
    rem_sleep_minutes: float | None = None
    efficiency: float | None = None


class DataQualityIn(WellpulseBase):
    accuracy: float = 1.0
    completeness: float = 1.0
    reliability: float = 1.0
    outlier_detected: bool = False


class ReadingIn(WellpulseBase):
    """A device-submitted reading (push path)."""

    id: str = Field(min_length=1)
    device_id: str = Field(min_length=1)
    timestamp: datetime
    quality: DataQualityIn = Field(default_factory=DataQualityIn)
    heart_rate: HeartRateIn | None = None
    stress: StressIn | None = None
    activity: ActivityIn | None = None
    sleep: SleepIn | None = None

    def to_reading(self, user_id: str) -> BiometricReading:
        return BiometricReading(
            id=self.id,
            user_id=user_id,
            device_id=self.device_id,
            timestamp=parse_timestamp(self.timestamp),
            quality=DataQuality(**self.quality.model_dump()),
            heart_rate=HeartRateReading(**self.heart_rate.model_dump()) if self.heart_rate else None,
            stress=StressReading(**self.stress.model_dump()) if self.stress else None,
            activity=ActivityReading(**self.activity.model_dump()) if self.activity else None,
            sleep=SleepReading(**self.sleep.model_dump()) if self.sleep else None,
        )


class HealthKitUpload(WellpulseBase):
    samples: list[dict[str, Any]] = Field(default_factory=list)


# ---------- Profile / consent ----------

class ProfileUpdate(WellpulseBase):
    resting_heart_rate: float | None = Field(default=None, gt=0)
    max_heart_rate: float | None = Field(default=None, gt=0)
    stress_threshold: float | None = Field(default=None, ge=0, le=100)
    fatigue_indicators: dict[str, float] | None = None
    sleep_pattern: dict[str, Any] | None = None
    activity_level: dict[str, float] | None = None


class ConsentUpdate(WellpulseBase):
    # Sharing level and data type names are checked by PrivacyFilter, which
    # answers with INVALID_SHARING_LEVEL / INVALID_DATA_TYPE.
    data_types: dict[str, bool] | None = None
    sharing_level: str | None = None
    retention_period: int | None = None
    allow_research: bool | None = None
    emergency_override: bool | None = None


class PrivacySettingsUpdate(WellpulseBase):
    share_heart_rate: bool | None = None
    share_stress_level: bool | None = None
    share_activity_data: bool | None = None
    share_sleep_data: bool | None = None
    allow_team_aggregation: bool | None = None
    anonymize_in_reports: bool | None = None


# ---------- Teams ----------

class TeamAggregateRequest(TimeRangeRequest):
    user_ids: list[str] = Field(min_length=1)


class ComplianceReportRequest(WellpulseBase):
    user_ids: list[str] | None = None
