"""Per-user real-time processing: smoothing, derived metrics, anomalies, alerts.

Each user's stream moves ``Idle → Streaming → Idle``.  While streaming,
every reading goes through:

    validity filter → exponential smoothing → derived metrics
    → anomaly detection (heart rate → stress → activity) → alert generation

Smoothing is a single-pole filter per user and metric::

    s_t = α·x_t + (1 − α)·s_{t−1}      (α = realtime.smoothing_factor)

seeded by the first observed value.  Anomalies are checked on the raw
values so a smoothed spike is never missed; derived metrics use the
smoothed values.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterable, AsyncIterator, Awaitable, Callable

from src.biometrics.base import (
    AlertSeverity,
    AlertType,
    AnomalyResult,
    BaselineMetrics,
    BiometricReading,
    ProcessedBiometricData,
    WellnessAlert,
    utc_now,
)
from src.biometrics.config_loader import RealtimeConfig, get_pipeline_config

logger = logging.getLogger("wellpulse.biometrics.realtime")

BaselineProvider = Callable[[], Awaitable[BaselineMetrics]]
ReleaseHook = Callable[[BiometricReading], Awaitable[BiometricReading | None]]

# Relative change between consecutive smoothed values treated as a trend.
_TREND_TOLERANCE = 0.05

_ANOMALY_ALERT_TYPES = {
    "heart_rate_spike": AlertType.HEART_RATE_ANOMALY,
    "heart_rate_drop": AlertType.HEART_RATE_ANOMALY,
    "elevated_heart_rate": AlertType.HEART_RATE_ANOMALY,
    "low_heart_rate": AlertType.HEART_RATE_ANOMALY,
    "extreme_stress": AlertType.STRESS_SPIKE,
    "stress_spike": AlertType.STRESS_SPIKE,
    "extreme_activity": AlertType.FATIGUE_DETECTED,
}


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def wellness_score(
    heart_rate: float | None,
    stress: float | None,
    intensity: float | None,
    baseline: BaselineMetrics,
) -> float:
    """Instantaneous 0–100 wellness score; 50 when no metric is present."""
    if heart_rate is None and stress is None and intensity is None:
        return 50.0
    score = 100.0
    if heart_rate is not None and baseline.resting_heart_rate > 0:
        deviation = abs(heart_rate - baseline.resting_heart_rate) / baseline.resting_heart_rate
        score -= deviation * 20
    if stress is not None:
        score -= (stress / 100) * 30
    if intensity is not None:
        score += intensity * 10
    return _clamp(score, 0.0, 100.0)


def fatigue_score(heart_rate: float, stress: float) -> float:
    """Fatigue heuristic on a 0–100 scale."""
    heart_component = max(0.0, (heart_rate - 60) / 120 * 50)
    return min(100.0, heart_component + stress * 0.5)


@dataclass
class RealTimeMetrics:
    instantaneous: dict[str, float] = field(default_factory=dict)
    trends: dict[str, str] = field(default_factory=dict)
    alerts: list[WellnessAlert] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "instantaneous": dict(self.instantaneous),
            "trends": dict(self.trends),
            "alerts": [a.to_dict() for a in self.alerts],
        }


class RealTimeProcessor:
    """Stateful per-user stream transform.

    State kept per user: last smoothed value per metric, timestamp of the
    last processed reading, and the alert list.  Users never share state.

    Args:
        config:           Real-time settings from pipeline_config.yaml.
        debounce_seconds: Coalescing window for ``process_stream``.
        clock:            Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        config: RealtimeConfig | None = None,
        debounce_seconds: float = 1.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._config = config or get_pipeline_config().realtime
        self._debounce = debounce_seconds
        self._clock = clock
        self._smoothed: dict[str, dict[str, float]] = {}
        self._last_processed: dict[str, datetime] = {}
        self._alerts: dict[str, list[WellnessAlert]] = {}

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    @staticmethod
    def is_processable(reading: BiometricReading) -> bool:
        return bool(
            reading.id
            and reading.user_id
            and reading.device_id
            and reading.timestamp
            and reading.has_measurements()
        )

    async def process_stream(
        self,
        user_id: str,
        source: AsyncIterable[BiometricReading],
        baseline_provider: BaselineProvider,
        release: ReleaseHook | None = None,
    ) -> AsyncIterator[ProcessedBiometricData]:
        """Debounce, order and process a live reading source.

        After a reading arrives the processor waits ``debounce_seconds``;
        readings arriving inside that window replace it, and only the most
        recent is processed.  Unprocessable readings are dropped silently,
        as are readings older than the last processed one.

        ``release`` runs on the coalesced reading just before processing, so a
        burst costs one call.  A reading it answers with None is skipped.

        Exceptions raised by ``source`` propagate after any pending reading
        has been processed.  Per-reading processing errors never do.
        """
        latest: BiometricReading | None = None
        exhausted = False
        arrived = asyncio.Event()

        async def _pump() -> None:
            nonlocal latest, exhausted
            try:
                async for reading in source:
                    if not self.is_processable(reading):
                        logger.debug("Dropped unprocessable reading %r", reading.id)
                        continue
                    latest = reading
                    arrived.set()
            finally:
                exhausted = True
                arrived.set()

        pump = asyncio.create_task(_pump())
        logger.info("Stream started for user %s", user_id)
        try:
            while True:
                await arrived.wait()
                if self._debounce > 0 and not exhausted:
                    await asyncio.sleep(self._debounce)
                arrived.clear()
                reading, latest = latest, None

                if reading is not None and self._accept_in_order(user_id, reading):
                    if release is not None:
                        reading = await release(reading)
                    if reading is not None:
                        baseline = await baseline_provider()
                        yield self.process_reading(user_id, reading, baseline)

                if exhausted and latest is None:
                    break
            await pump
        finally:
            if not pump.done():
                pump.cancel()
            logger.info("Stream stopped for user %s", user_id)

    def _accept_in_order(self, user_id: str, reading: BiometricReading) -> bool:
        last = self._last_processed.get(user_id)
        if last is not None and reading.timestamp < last:
            logger.debug(
                "Dropped out-of-order reading %s for user %s (%s < %s)",
                reading.id, user_id, reading.timestamp, last,
            )
            return False
        return True

    def reset(self, user_id: str) -> None:
        """Return the user to Idle: forget smoothing and ordering state."""
        self._smoothed.pop(user_id, None)
        self._last_processed.pop(user_id, None)

    # ------------------------------------------------------------------
    # Single reading
    # ------------------------------------------------------------------

    def process_reading(
        self, user_id: str, reading: BiometricReading, baseline: BaselineMetrics
    ) -> ProcessedBiometricData:
        """Run one reading through the full real-time pipeline.

        Any exception degrades to a passthrough record with confidence 0.1
        and the ``error_fallback`` algorithm tag.
        """
        started = time.perf_counter()
        try:
            smoothed = self._smooth(user_id, reading)
            derived = self.derive_metrics(smoothed, baseline)
            anomaly = self.detect_anomalies(reading, baseline)
            alerts = self.trigger_wellness_alerts(user_id, reading, anomaly)
            algorithms = ["exponential_smoothing", "derived_metrics", "anomaly_detection"]
            if alerts:
                algorithms.append("alert_generation")
            if reading.timestamp is not None:
                self._last_processed[user_id] = reading.timestamp
            return ProcessedBiometricData(
                original=reading,
                smoothed=smoothed,
                derived_metrics=derived,
                anomaly=anomaly,
                alerts=alerts,
                processing_time_ms=(time.perf_counter() - started) * 1000,
                algorithms=algorithms,
                confidence=self._processing_confidence(reading, anomaly),
            )
        except Exception:
            logger.exception("Real-time processing failed for reading %s", reading.id)
            return ProcessedBiometricData(
                original=reading,
                processing_time_ms=(time.perf_counter() - started) * 1000,
                algorithms=["error_fallback"],
                confidence=0.1,
            )

    @staticmethod
    def _raw_metrics(reading: BiometricReading) -> dict[str, float]:
        values: dict[str, float] = {}
        if reading.heart_rate is not None:
            values["heart_rate"] = float(reading.heart_rate.bpm)
        if reading.stress is not None:
            values["stress_level"] = float(reading.stress.level)
        if reading.activity is not None:
            values["activity_intensity"] = float(reading.activity.intensity)
        return values

    def _smooth(self, user_id: str, reading: BiometricReading) -> dict[str, float]:
        alpha = self._config.smoothing_factor
        state = self._smoothed.setdefault(user_id, {})
        smoothed: dict[str, float] = {}
        for metric, value in self._raw_metrics(reading).items():
            previous = state.get(metric)
            current = value if previous is None else alpha * value + (1 - alpha) * previous
            state[metric] = current
            smoothed[metric] = current
        return smoothed

    def derive_metrics(
        self, values: dict[str, float], baseline: BaselineMetrics
    ) -> dict[str, float]:
        """Heart-rate zone and reserve, stress index, activity efficiency, wellness, fatigue."""
        hr = values.get("heart_rate")
        stress = values.get("stress_level")
        intensity = values.get("activity_intensity")
        derived: dict[str, float] = {}

        if hr is not None:
            pct_of_max = hr / baseline.max_heart_rate * 100 if baseline.max_heart_rate else 0.0
            derived["heart_rate_zone"] = 1 + sum(
                1 for bound in self._config.heart_rate_zone_bounds if pct_of_max >= bound
            )
            span = baseline.max_heart_rate - baseline.resting_heart_rate
            derived["heart_rate_reserve"] = (
                (hr - baseline.resting_heart_rate) / span * 100 if span > 0 else 0.0
            )
        if stress is not None:
            derived["stress_index"] = stress / 100
            derived["stress_deviation"] = stress - baseline.stress_threshold
        if intensity is not None:
            preferred = baseline.activity_level.intensity_preference
            derived["activity_efficiency"] = 1 - abs(intensity - preferred)
        if hr is not None and stress is not None:
            derived["fatigue_score"] = fatigue_score(hr, stress)

        derived["wellness_score"] = wellness_score(hr, stress, intensity, baseline)
        return derived

    def detect_anomalies(
        self, reading: BiometricReading, baseline: BaselineMetrics
    ) -> AnomalyResult:
        """Check heart rate, then stress, then activity; the first anomaly wins."""
        a = self._config.anomaly

        if reading.heart_rate is not None:
            bpm = reading.heart_rate.bpm
            if bpm > a.get("heart_rate_critical_high", 200):
                return AnomalyResult(
                    True, "heart_rate_spike", AlertSeverity.CRITICAL,
                    f"Heart rate {bpm:g} bpm is dangerously high", 0.95,
                    "Stop activity and seek medical attention if symptoms persist",
                )
            if bpm < a.get("heart_rate_critical_low", 30):
                return AnomalyResult(
                    True, "heart_rate_drop", AlertSeverity.CRITICAL,
                    f"Heart rate {bpm:g} bpm is dangerously low", 0.95,
                    "Seek medical attention",
                )
            if bpm > baseline.max_heart_rate * a.get("heart_rate_high_fraction_of_max", 0.9):
                return AnomalyResult(
                    True, "elevated_heart_rate", AlertSeverity.HIGH,
                    f"Heart rate {bpm:g} bpm is near your maximum", 0.85,
                    "Reduce intensity and recover",
                )
            if bpm < baseline.resting_heart_rate * a.get("heart_rate_low_fraction_of_resting", 0.7):
                return AnomalyResult(
                    True, "low_heart_rate", AlertSeverity.MEDIUM,
                    f"Heart rate {bpm:g} bpm is well below your resting rate", 0.8,
                    "Check the device fit and how you feel",
                )

        if reading.stress is not None:
            level = reading.stress.level
            if level > a.get("stress_critical", 95):
                return AnomalyResult(
                    True, "extreme_stress", AlertSeverity.CRITICAL,
                    f"Stress level {level:g} is extremely high", 0.9,
                    "Pause and take a few minutes of slow breathing",
                )
            if level > baseline.stress_threshold + a.get("stress_baseline_margin", 20):
                return AnomalyResult(
                    True, "stress_spike", AlertSeverity.HIGH,
                    f"Stress level {level:g} is well above your baseline", 0.8,
                    "Consider a short break",
                )

        if reading.activity is not None:
            intensity = reading.activity.intensity
            if intensity > a.get("intensity_high", 0.95):
                return AnomalyResult(
                    True, "extreme_activity", AlertSeverity.MEDIUM,
                    f"Activity intensity {intensity:g} is near maximal", 0.75,
                    "Make sure to recover after this effort",
                )

        return AnomalyResult(False, None, AlertSeverity.LOW, "No anomaly detected", 0.9)

    def trigger_wellness_alerts(
        self, user_id: str, reading: BiometricReading, anomaly: AnomalyResult
    ) -> list[WellnessAlert]:
        """Raise alerts for the reading and add them to the user's alert list.

        The primary anomaly produces an alert when its severity is above
        low.  The fatigue and inactivity heuristics run regardless.
        """
        now = self._clock()
        alerts: list[WellnessAlert] = []

        if anomaly.is_anomaly and anomaly.severity.rank > AlertSeverity.LOW.rank:
            data: dict[str, Any] = {
                "anomaly_type": anomaly.anomaly_type,
                "recommended_action": anomaly.recommended_action,
            }
            data.update(self._raw_metrics(reading))
            alerts.append(
                self._alert(
                    user_id,
                    _ANOMALY_ALERT_TYPES.get(anomaly.anomaly_type, AlertType.FATIGUE_DETECTED),
                    anomaly.severity,
                    anomaly.description,
                    now,
                    data,
                )
            )

        if reading.heart_rate is not None and reading.stress is not None:
            score = fatigue_score(reading.heart_rate.bpm, reading.stress.level)
            if score > self._config.fatigue_alert_threshold:
                alerts.append(
                    self._alert(
                        user_id, AlertType.FATIGUE_DETECTED, AlertSeverity.MEDIUM,
                        "Fatigue indicators suggest you may need rest", now,
                        {"fatigue_score": score},
                    )
                )

        if (
            reading.activity is not None
            and reading.activity.intensity < self._config.inactivity_intensity
        ):
            alerts.append(
                self._alert(
                    user_id, AlertType.INACTIVITY_WARNING, AlertSeverity.LOW,
                    "Consider taking a movement break", now,
                    {"activity_intensity": reading.activity.intensity},
                )
            )

        if alerts:
            self._alerts.setdefault(user_id, []).extend(alerts)
            logger.info(
                "Raised %d alert(s) for user %s: %s",
                len(alerts), user_id, ", ".join(a.type.value for a in alerts),
            )
        return alerts

    def calculate_real_time_metrics(self, reading: BiometricReading) -> RealTimeMetrics:
        """Instantaneous values, trends against the smoothed state, and immediate alerts.

        Does not update smoothing state or the stored alert list.
        """
        values = self._raw_metrics(reading)
        previous = self._smoothed.get(reading.user_id, {})
        trends: dict[str, str] = {}
        for metric, value in values.items():
            before = previous.get(metric)
            if before is None or before == 0 or abs(value - before) / abs(before) <= _TREND_TOLERANCE:
                trends[metric] = "stable"
            else:
                trends[metric] = "increasing" if value > before else "decreasing"

        immediate = self._config.immediate
        now = self._clock()
        alerts: list[WellnessAlert] = []
        if reading.heart_rate is not None and (
            reading.heart_rate.bpm > immediate.get("heart_rate_above", 180)
            or reading.heart_rate.bpm < immediate.get("heart_rate_below", 40)
        ):
            alerts.append(
                self._alert(
                    reading.user_id, AlertType.HEART_RATE_ANOMALY, AlertSeverity.CRITICAL,
                    f"Heart rate {reading.heart_rate.bpm:g} bpm is outside the safe range", now,
                    {"heart_rate": reading.heart_rate.bpm},
                )
            )
        if reading.stress is not None and reading.stress.level > immediate.get("stress_above", 90):
            alerts.append(
                self._alert(
                    reading.user_id, AlertType.STRESS_SPIKE, AlertSeverity.HIGH,
                    f"Stress level {reading.stress.level:g} is critically high", now,
                    {"stress_level": reading.stress.level},
                )
            )
        return RealTimeMetrics(instantaneous=values, trends=trends, alerts=alerts)

    def _processing_confidence(self, reading: BiometricReading, anomaly: AnomalyResult) -> float:
        accuracy = reading.quality.accuracy if reading.quality else 1.0
        confidence = 0.8 * accuracy
        if anomaly.is_anomaly:
            confidence *= 0.9
        confidence += 0.05 * len(reading.present_data_types())
        return _clamp(confidence, 0.1, 1.0)

    @staticmethod
    def _alert(
        user_id: str,
        alert_type: AlertType,
        severity: AlertSeverity,
        message: str,
        timestamp: datetime,
        data: dict[str, Any],
    ) -> WellnessAlert:
        return WellnessAlert(
            id=f"alert-{uuid.uuid4().hex[:12]}",
            user_id=user_id,
            type=alert_type,
            severity=severity,
            message=message,
            timestamp=timestamp,
            data=data,
        )

    # ------------------------------------------------------------------
    # Alert store
    # ------------------------------------------------------------------

    def get_active_alerts(self, user_id: str) -> list[WellnessAlert]:
        return [a for a in self._alerts.get(user_id, []) if not a.acknowledged]

    def acknowledge_alert(self, user_id: str, alert_id: str) -> bool:
        """Mark an alert acknowledged. Returns False if the alert is unknown."""
        for alert in self._alerts.get(user_id, []):
            if alert.id == alert_id:
                alert.acknowledged = True
                return True
        return False

    def clear_acknowledged_alerts(self, user_id: str) -> int:
        """Drop acknowledged alerts and return how many were removed."""
        alerts = self._alerts.get(user_id, [])
        kept = [a for a in alerts if not a.acknowledged]
        self._alerts[user_id] = kept
        return len(alerts) - len(kept)
