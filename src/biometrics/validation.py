"""Statistical validation and cleaning of biometric readings.

The engine is stateless: every operation is a pure function of its inputs,
the injected clock, and the ``validation`` section of pipeline_config.yaml.

Field bounds are table-driven (see ``FieldRule``).  Each rule either rejects
the reading (``error``), lets it through with a warning (``warn``), or
clamps the value into range in ``corrected_reading`` (``clamp``).  Overall
confidence is the product of the multipliers of every rule that fired.

Usage::

    engine = ValidationEngine()
    result = engine.validate(reading)
    if result.is_valid:
        clean = result.corrected_reading or reading
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterable

from src.biometrics.base import (
    ActivityReading,
    BiometricReading,
    DataQuality,
    HeartRateReading,
    StressReading,
    utc_now,
)
from src.biometrics.config_loader import ValidationConfig, get_pipeline_config
from src.biometrics.errors import DataValidationError

logger = logging.getLogger("wellpulse.biometrics.validation")

_SECTIONS = ("heart_rate", "stress", "activity", "sleep")

# Fields counted by the completeness score, per sub-reading.
_EXPECTED_FIELDS: dict[str, tuple[str, ...]] = {
    "heart_rate": ("bpm", "confidence", "variability"),
    "stress": ("level", "confidence"),
    "activity": ("intensity", "steps", "calories", "distance", "active_minutes"),
    "sleep": ("duration", "quality", "deep_sleep_minutes", "rem_sleep_minutes", "efficiency"),
}
_IDENTITY_FIELDS = ("id", "user_id", "device_id", "timestamp")


def _fmt(value: float) -> str:
    return f"{value:g}"


def _clamp(value: float, lo: float = 0.0, hi: float = 1.0) -> float:
    return max(lo, min(hi, value))


def _lerp(a: float, b: float, ratio: float) -> float:
    return a + (b - a) * ratio


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass
class ValidationResult:
    """Outcome of validating a single reading.

    Attributes:
        is_valid:          True iff ``errors`` is empty.
        errors:            Hard failures; the reading must not be used.
        warnings:          Soft findings, including clamped corrections.
        confidence:        Product of fired rule multipliers, clamped to [0, 1].
        corrected_reading: Copy with clamped values, set only when a correction was made.
    """

    is_valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    confidence: float = 1.0
    corrected_reading: BiometricReading | None = None


@dataclass
class OutlierDetectionResult:
    outliers: list[BiometricReading]
    method: str
    threshold: float
    confidence: float


@dataclass
class DataQualityAssessment:
    """Quality scores for a set of readings, each in [0, 1]."""

    accuracy: float
    completeness: float
    consistency: float
    timeliness: float
    overall_quality: float
    issues: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class ValidationEngine:
    """Validate, score and repair biometric readings.

    Args:
        config: Validation settings. Defaults to the global pipeline config.
        clock:  Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        config: ValidationConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._config = config or get_pipeline_config().validation
        self._clock = clock

    # ------------------------------------------------------------------
    # Single reading
    # ------------------------------------------------------------------

    def validate(self, reading: BiometricReading) -> ValidationResult:
        """Validate one reading against structure, timestamp, field and cross-field rules.

        Args:
            reading: The reading to check. Never mutated.

        Returns:
            ValidationResult. Corrections surface via ``corrected_reading``
            even when the reading is valid.
        """
        cfg = self._config
        errors: list[str] = []
        warnings: list[str] = []
        confidence = 1.0
        corrected: BiometricReading | None = None

        structural = self._structure_errors(reading)
        if structural:
            errors.extend(structural)
            confidence *= cfg.structure_multiplier

        ts_errors, ts_warnings = self._timestamp_findings(reading.timestamp)
        if ts_errors or ts_warnings:
            errors.extend(ts_errors)
            warnings.extend(ts_warnings)
            confidence *= cfg.timestamp_multiplier

        # ── Table-driven field rules ──
        for section in _SECTIONS:
            if getattr(reading, section) is None:
                continue
            rejected: set[str] = set()
            for rule in cfg.rules:
                if rule.section != section or rule.field in rejected:
                    continue
                value = getattr(getattr(reading, section), rule.attribute, None)
                if value is None or rule.contains(value):
                    continue

                confidence *= rule.multiplier
                bounds = f"{_fmt(rule.min)}-{_fmt(rule.max)}"
                if rule.policy == "error":
                    errors.append(f"{rule.label} {_fmt(value)} outside valid range {bounds}")
                    rejected.add(rule.field)
                elif rule.policy == "warn":
                    warnings.append(f"{rule.label}: {_fmt(value)} (expected {bounds})")
                else:
                    fixed = _clamp(value, rule.min, rule.max)
                    if corrected is None:
                        corrected = reading.copy()
                    setattr(getattr(corrected, section), rule.attribute, fixed)
                    warnings.append(
                        f"{rule.label} {_fmt(value)} corrected to {_fmt(fixed)}"
                    )

        # ── Sensor confidence floors ──
        for section in ("heart_rate", "stress"):
            sub = getattr(reading, section)
            floor = cfg.confidence_floors.get(section)
            if sub is None or floor is None:
                continue
            if sub.confidence < floor:
                warnings.append(
                    f"Low {section.replace('_', ' ')} sensor confidence: {_fmt(sub.confidence)}"
                )
                confidence *= _clamp(sub.confidence)

        # ── Sleep stages ──
        if reading.sleep is not None:
            stages = (reading.sleep.deep_sleep_minutes or 0) + (
                reading.sleep.rem_sleep_minutes or 0
            )
            if stages > reading.sleep.duration:
                warnings.append(
                    f"Deep + REM sleep ({_fmt(stages)} min) exceeds total duration "
                    f"({_fmt(reading.sleep.duration)} min)"
                )
                confidence *= cfg.sleep_stage_multiplier

        # ── Cross-field consistency (warnings only) ──
        consistency = self.consistency_warnings(corrected or reading)
        if consistency:
            warnings.extend(consistency)
            confidence *= cfg.consistency_multiplier

        result = ValidationResult(
            is_valid=not errors,
            errors=errors,
            warnings=warnings,
            confidence=_clamp(confidence),
            corrected_reading=corrected,
        )
        if errors:
            logger.debug("Reading %s rejected: %s", reading.id, "; ".join(errors[:3]))
        return result

    def consistency_warnings(self, reading: BiometricReading) -> list[str]:
        """Check heart rate against stress and activity intensity.

        Returns:
            One warning per inconsistent pair; empty when consistent or
            when the reading has no heart rate.
        """
        if reading.heart_rate is None:
            return []
        bpm = reading.heart_rate.bpm
        found: list[str] = []

        if reading.stress is not None:
            lo, hi = self._config.stress_heart_rate.bounds(reading.stress.level)
            if not (lo <= bpm <= hi):
                found.append(
                    f"Heart rate {_fmt(bpm)} inconsistent with stress level "
                    f"{_fmt(reading.stress.level)} (expected {lo:.0f}-{hi:.0f})"
                )
        if reading.activity is not None:
            lo, hi = self._config.intensity_heart_rate.bounds(reading.activity.intensity)
            if not (lo <= bpm <= hi):
                found.append(
                    f"Heart rate {_fmt(bpm)} inconsistent with activity intensity "
                    f"{_fmt(reading.activity.intensity)} (expected {lo:.0f}-{hi:.0f})"
                )
        return found

    def _structure_errors(self, reading: BiometricReading) -> list[str]:
        missing = [name for name in ("id", "user_id", "device_id") if not getattr(reading, name)]
        if reading.timestamp is None:
            missing.append("timestamp")
        if reading.quality is None:
            missing.append("quality")
        return [f"Missing required field: {name}" for name in missing]

    def _timestamp_findings(self, ts: datetime | None) -> tuple[list[str], list[str]]:
        if ts is None:
            return [], []
        now = self._clock()
        if ts > now:
            return [f"Timestamp {ts.isoformat()} is in the future"], []
        if now - ts > timedelta(days=self._config.max_age_days):
            return [], [
                f"Timestamp {ts.isoformat()} is older than {self._config.max_age_days} days"
            ]
        return [], []

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def filter_valid(self, readings: Iterable[BiometricReading]) -> list[BiometricReading]:
        """Return the valid readings, with corrections applied.

        Invalid readings are dropped and logged; they never abort the batch.

        Raises:
            DataValidationError: If the batch contains something that is not a reading.
        """
        batch = _as_batch(readings)
        kept: list[BiometricReading] = []
        for reading in batch:
            result = self.validate(reading)
            if result.is_valid:
                kept.append(result.corrected_reading or reading)
            else:
                logger.info(
                    "Dropped invalid reading %s for user %s: %s",
                    reading.id,
                    reading.user_id,
                    "; ".join(result.errors[:3]),
                )
        return kept

    def detect_outliers(self, readings: Iterable[BiometricReading]) -> OutlierDetectionResult:
        """Flag outliers with the interquartile-range rule.

        Heart rate, stress level and activity intensity are checked
        independently; each metric needs at least ``outlier_min_readings``
        values.  A reading outside the bounds on any metric is an outlier.

        Returns:
            OutlierDetectionResult with outliers de-duplicated by reading id,
            in input order.
        """
        cfg = self._config
        batch = _as_batch(readings)
        if len(batch) < cfg.outlier_min_readings:
            return OutlierDetectionResult(
                outliers=[],
                method="insufficient_data",
                threshold=cfg.iqr_multiplier,
                confidence=0.0,
            )

        extractors: dict[str, Callable[[BiometricReading], float | None]] = {
            "heart_rate": lambda r: r.heart_rate.bpm if r.heart_rate else None,
            "stress": lambda r: r.stress.level if r.stress else None,
            "intensity": lambda r: r.activity.intensity if r.activity else None,
        }

        flagged: set[str] = set()
        for metric, extract in extractors.items():
            samples = [(r, v) for r in batch if (v := extract(r)) is not None]
            if len(samples) < cfg.outlier_min_readings:
                continue
            lower, upper = iqr_bounds([v for _, v in samples], cfg.iqr_multiplier)
            for reading, value in samples:
                if value < lower or value > upper:
                    logger.debug(
                        "Outlier on %s: reading %s value %s outside [%.2f, %.2f]",
                        metric, reading.id, value, lower, upper,
                    )
                    flagged.add(reading.id)

        outliers: list[BiometricReading] = []
        seen: set[str] = set()
        for reading in batch:
            if reading.id in flagged and reading.id not in seen:
                outliers.append(reading)
                seen.add(reading.id)

        return OutlierDetectionResult(
            outliers=outliers,
            method="interquartile_range",
            threshold=cfg.iqr_multiplier,
            confidence=cfg.outlier_confidence,
        )

    def assess_data_quality(self, readings: Iterable[BiometricReading]) -> DataQualityAssessment:
        """Score a reading set on accuracy, completeness, consistency and timeliness.

        Returns:
            DataQualityAssessment; all zeros with issue "No data available"
            for empty input.
        """
        batch = _as_batch(readings)
        if not batch:
            return DataQualityAssessment(0.0, 0.0, 0.0, 0.0, 0.0, ["No data available"])

        n = len(batch)
        accuracy = sum(1 for r in batch if self.validate(r).is_valid) / n
        completeness = self._completeness(batch)
        consistency = sum(1 for r in batch if not self.consistency_warnings(r)) / n

        cutoff = self._clock() - timedelta(hours=self._config.timeliness_hours)
        timeliness = sum(1 for r in batch if r.timestamp and r.timestamp >= cutoff) / n

        overall = (accuracy + completeness + consistency + timeliness) / 4

        thresholds = self._config.issue_thresholds
        issues: list[str] = []
        if accuracy < thresholds.get("accuracy", 0.8):
            issues.append("Low data accuracy")
        if completeness < thresholds.get("completeness", 0.7):
            issues.append("Incomplete data")
        if consistency < thresholds.get("consistency", 0.8):
            issues.append("Inconsistent readings")
        if timeliness < thresholds.get("timeliness", 0.9):
            issues.append("Outdated readings")

        return DataQualityAssessment(
            accuracy=accuracy,
            completeness=completeness,
            consistency=consistency,
            timeliness=timeliness,
            overall_quality=overall,
            issues=issues,
        )

    @staticmethod
    def _completeness(batch: list[BiometricReading]) -> float:
        expected = 0
        populated = 0
        for reading in batch:
            expected += len(_IDENTITY_FIELDS)
            populated += sum(1 for name in _IDENTITY_FIELDS if getattr(reading, name))
            for section, names in _EXPECTED_FIELDS.items():
                sub = getattr(reading, section)
                if sub is None:
                    continue
                expected += len(names)
                populated += sum(1 for name in names if getattr(sub, name) is not None)
        return populated / expected if expected else 0.0

    def interpolate_missing_data(
        self, readings: Iterable[BiometricReading]
    ) -> list[BiometricReading]:
        """Fill gaps longer than the configured maximum with synthetic readings.

        Readings are sorted by timestamp.  For a gap of length ``g`` the
        number of synthetic readings is ``ceil(g / max_gap) − 1``, evenly
        spaced, with each numeric field linearly interpolated between the
        two neighbours.  Sleep sessions are never interpolated.

        Raises:
            DataValidationError: If a reading has no timestamp.
        """
        batch = _as_batch(readings)
        if len(batch) < 2:
            return list(batch)
        if any(r.timestamp is None for r in batch):
            raise DataValidationError("Cannot interpolate readings without timestamps")

        cfg = self._config
        max_gap = timedelta(minutes=cfg.interpolation_max_gap_minutes)
        ordered = sorted(batch, key=lambda r: r.timestamp)
        result: list[BiometricReading] = [ordered[0]]

        for prev, nxt in zip(ordered, ordered[1:]):
            gap = nxt.timestamp - prev.timestamp
            if gap > max_gap:
                count = math.ceil(gap / max_gap) - 1
                for i in range(1, count + 1):
                    synthetic = self._synthesize(prev, nxt, i, i / (count + 1))
                    if synthetic is not None:
                        result.append(synthetic)
            result.append(nxt)

        added = len(result) - len(ordered)
        if added:
            logger.info("Interpolated %d synthetic readings across %d inputs", added, len(ordered))
        return result

    def _synthesize(
        self, prev: BiometricReading, nxt: BiometricReading, index: int, ratio: float
    ) -> BiometricReading | None:
        cfg = self._config
        reading = BiometricReading(
            id=f"{prev.id}-interpolated-{index}",
            user_id=prev.user_id,
            device_id=prev.device_id,
            timestamp=prev.timestamp + (nxt.timestamp - prev.timestamp) * ratio,
            quality=DataQuality(
                accuracy=cfg.interpolation_accuracy,
                completeness=cfg.interpolation_completeness,
                reliability=cfg.interpolation_reliability,
                outlier_detected=False,
            ),
        )

        if prev.heart_rate and nxt.heart_rate:
            variability = None
            if prev.heart_rate.variability is not None and nxt.heart_rate.variability is not None:
                variability = _lerp(prev.heart_rate.variability, nxt.heart_rate.variability, ratio)
            reading.heart_rate = HeartRateReading(
                bpm=_lerp(prev.heart_rate.bpm, nxt.heart_rate.bpm, ratio),
                confidence=cfg.interpolation_confidence,
                variability=variability,
            )

        if prev.stress and nxt.stress:
            reading.stress = StressReading(
                level=_lerp(prev.stress.level, nxt.stress.level, ratio),
                confidence=cfg.interpolation_confidence,
            )

        if prev.activity and nxt.activity:
            a, b = prev.activity, nxt.activity

            def _opt(x: float | None, y: float | None) -> float | None:
                return _lerp(x, y, ratio) if x is not None and y is not None else None

            steps = _opt(a.steps, b.steps)
            active = _opt(a.active_minutes, b.active_minutes)
            reading.activity = ActivityReading(
                intensity=_lerp(a.intensity, b.intensity, ratio),
                steps=round(steps) if steps is not None else None,
                calories=_opt(a.calories, b.calories),
                distance=_opt(a.distance, b.distance),
                active_minutes=round(active) if active is not None else None,
            )

        return reading if reading.has_measurements() else None


def iqr_bounds(values: list[float], multiplier: float = 1.5) -> tuple[float, float]:
    """Return (Q1 − k·IQR, Q3 + k·IQR) using index quartiles on sorted values."""
    ordered = sorted(values)
    n = len(ordered)
    q1 = ordered[math.floor(n * 0.25)]
    q3 = ordered[math.floor(n * 0.75)]
    iqr = q3 - q1
    return q1 - multiplier * iqr, q3 + multiplier * iqr


def _as_batch(readings: Iterable[BiometricReading]) -> list[BiometricReading]:
    if readings is None:
        raise DataValidationError("Reading batch is missing")
    batch = list(readings)
    for item in batch:
        if not isinstance(item, BiometricReading):
            raise DataValidationError(
                f"Reading batch contains {type(item).__name__}, expected BiometricReading"
            )
    return batch
