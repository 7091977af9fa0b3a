"""Read-only health metric views over a user's recent readings.

All functions are pure: they take the readings released by the pipeline
(normally the last hour) plus the user's baseline and return a summary.
None of them mutate state.

Stress is heart-rate based::

    stress = clamp((avg_hr − resting_hr) / resting_hr · 100, 0, 100)

Fatigue, wellness and HRV build on it.  HRV prefers device-reported
variability (RMSSD, ms) and falls back to beat-to-beat intervals derived
from successive heart-rate samples (``60000 / bpm``).
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Sequence

from src.biometrics.base import BaselineMetrics, BiometricReading, utc_now

# Trend window and dead band for the stress trend.
_TREND_WINDOW = 5
_TREND_BPM = 5.0

_DEFAULT_RECOVERY = 70.0
_PNN50_MS = 50.0


def _clamp(value: float, lo: float = 0.0, hi: float = 100.0) -> float:
    return max(lo, min(hi, value))


def _mean(values: Sequence[float]) -> float | None:
    return sum(values) / len(values) if values else None


def _heart_rates(readings: Sequence[BiometricReading]) -> list[float]:
    ordered = sorted(
        (r for r in readings if r.heart_rate is not None and r.timestamp is not None),
        key=lambda r: r.timestamp,
    )
    return [r.heart_rate.bpm for r in ordered]


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass
class StressMetrics:
    current_level: float
    trend: str
    contributing_factors: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    confidence: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class FatigueAssessment:
    """Fatigue estimate.

    Attributes:
        fatigue_level:   0–100.
        indicators:      Observed inputs (HRV ms, activity %, sleep quality); None when unseen.
        recommendations: Suggestions for the user.
        severity:        'low', 'medium' or 'high'.
    """

    fatigue_level: float
    indicators: dict[str, float | None]
    recommendations: list[str]
    severity: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class WellnessScore:
    overall_score: float
    components: dict[str, float]
    trend: str
    last_updated: datetime

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["last_updated"] = self.last_updated.isoformat()
        return data


@dataclass
class HRVAnalysis:
    """Heart-rate variability summary.

    Attributes:
        rmssd:           Root mean square of successive differences (ms).
        pnn50:           Percent of successive differences above 50 ms.
        stress_index:    0–100, higher means less variability.
        recovery_status: 'good', 'fair', 'poor' or 'unknown'.
        sample_count:    Samples the analysis is based on.
        source:          'device' (reported HRV) or 'derived' (from heart rate).
    """

    rmssd: float
    pnn50: float
    stress_index: float
    recovery_status: str
    recommendations: list[str] = field(default_factory=list)
    sample_count: int = 0
    source: str = "derived"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Calculations
# ---------------------------------------------------------------------------


def calculate_stress_level(
    readings: Sequence[BiometricReading], baseline: BaselineMetrics
) -> StressMetrics:
    """Stress from average heart rate relative to the resting baseline."""
    rates = _heart_rates(readings)
    if not rates:
        return StressMetrics(
            current_level=0.0,
            trend="stable",
            contributing_factors=["No recent heart rate data"],
            recommendations=["Connect a heart rate monitor for better stress tracking"],
            confidence=0.0,
        )

    resting = baseline.resting_heart_rate
    avg = sum(rates) / len(rates)
    level = _clamp((avg - resting) / resting * 100) if resting > 0 else 0.0

    trend = "stable"
    recent, older = rates[-_TREND_WINDOW:], rates[:-_TREND_WINDOW]
    if older:
        recent_avg, older_avg = _mean(recent), _mean(older)
        if recent_avg > older_avg + _TREND_BPM:
            trend = "increasing"
        elif recent_avg < older_avg - _TREND_BPM:
            trend = "decreasing"

    factors: list[str] = []
    recommendations: list[str] = []
    if level > 70:
        factors.append("Elevated heart rate")
        recommendations.extend(["Take a short break", "Practice deep breathing"])
    reported = [r.stress.level for r in readings if r.stress is not None]
    if reported and _mean(reported) > baseline.stress_threshold:
        factors.append("Device-reported stress above your threshold")

    return StressMetrics(
        current_level=level,
        trend=trend,
        contributing_factors=factors,
        recommendations=recommendations,
        confidence=0.8,
    )


def detect_fatigue(
    readings: Sequence[BiometricReading], baseline: BaselineMetrics
) -> FatigueAssessment:
    """Fatigue from stress, nudged by HRV, activity and sleep against the baseline."""
    stress = calculate_stress_level(readings, baseline)
    thresholds = baseline.fatigue_indicators

    hrv = _mean([r.heart_rate.variability for r in readings
                 if r.heart_rate is not None and r.heart_rate.variability is not None])
    activity = _mean([r.activity.intensity for r in readings if r.activity is not None])
    sleeps = sorted(
        (r for r in readings if r.sleep is not None and r.timestamp is not None),
        key=lambda r: r.timestamp,
    )
    sleep_quality = sleeps[-1].sleep.quality if sleeps else None

    level = stress.current_level * 0.8
    recommendations: list[str] = []
    if hrv is not None and hrv < thresholds.hrv_threshold:
        level += 10
        recommendations.append("Low heart rate variability: prioritize recovery today")
    if activity is not None and activity < thresholds.activity_level_threshold:
        recommendations.append("Light movement can help counter sluggishness")
    if sleep_quality is not None and sleep_quality < thresholds.sleep_quality_threshold:
        level += 10
        recommendations.append("Aim for an earlier bedtime tonight")
    level = _clamp(level)
    if not recommendations:
        recommendations = ["Consider taking a longer break", "Ensure adequate hydration"]

    return FatigueAssessment(
        fatigue_level=level,
        indicators={
            "heart_rate_variability": hrv,
            "activity_level": activity * 100 if activity is not None else None,
            "sleep_quality": sleep_quality,
        },
        recommendations=recommendations,
        severity="high" if level > 70 else "medium" if level > 40 else "low",
    )


def assess_wellness_score(
    readings: Sequence[BiometricReading],
    baseline: BaselineMetrics,
    now: datetime | None = None,
) -> WellnessScore:
    """Average of physical, mental, stress and recovery components (each 0–100)."""
    stress = calculate_stress_level(readings, baseline)
    fatigue = detect_fatigue(readings, baseline)

    physical = max(0.0, 100 - fatigue.fatigue_level)
    mental = max(0.0, 100 - stress.current_level)
    stress_score = max(0.0, 100 - stress.current_level)
    recovery = fatigue.indicators.get("sleep_quality")
    if recovery is None:
        recovery = _DEFAULT_RECOVERY

    components = {
        "physical": physical,
        "mental": mental,
        "stress": stress_score,
        "recovery": recovery,
    }
    trend = {"increasing": "declining", "decreasing": "improving"}.get(stress.trend, "stable")
    return WellnessScore(
        overall_score=sum(components.values()) / len(components),
        components=components,
        trend=trend,
        last_updated=now or utc_now(),
    )


def analyze_heart_rate_variability(
    readings: Sequence[BiometricReading], baseline: BaselineMetrics
) -> HRVAnalysis:
    reported = [
        r.heart_rate.variability
        for r in readings
        if r.heart_rate is not None and r.heart_rate.variability is not None
    ]
    intervals = [60000 / bpm for bpm in _heart_rates(readings) if bpm > 0]
    diffs = [b - a for a, b in zip(intervals, intervals[1:])]

    if reported:
        rmssd = sum(reported) / len(reported)
        samples, source = len(reported), "device"
    elif diffs:
        rmssd = math.sqrt(sum(d * d for d in diffs) / len(diffs))
        samples, source = len(intervals), "derived"
    else:
        return HRVAnalysis(
            rmssd=0.0,
            pnn50=0.0,
            stress_index=0.0,
            recovery_status="unknown",
            recommendations=["Wear your device continuously for an HRV estimate"],
        )

    pnn50 = sum(1 for d in diffs if abs(d) > _PNN50_MS) / len(diffs) * 100 if diffs else 0.0
    threshold = baseline.fatigue_indicators.hrv_threshold
    if rmssd >= threshold * 1.5:
        status = "good"
        recommendations = ["Maintain current activity level"]
    elif rmssd >= threshold:
        status = "fair"
        recommendations = ["Ensure adequate sleep", "Keep intense sessions short"]
    else:
        status = "poor"
        recommendations = ["Prioritize rest", "Consider meditation or relaxation techniques"]

    return HRVAnalysis(
        rmssd=rmssd,
        pnn50=pnn50,
        stress_index=_clamp(100 - rmssd),
        recovery_status=status,
        recommendations=recommendations,
        sample_count=samples,
        source=source,
    )
