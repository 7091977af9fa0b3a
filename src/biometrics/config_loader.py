"""Load, validate, and hot-reload the Wellpulse pipeline configuration.

The config lives in ``pipeline_config.yaml`` alongside this module.  At
startup it is loaded once and cached.  Call ``reload_pipeline_config()`` to
re-read from disk after an admin update, no restart required.

Usage::

    from src.biometrics.config_loader import get_pipeline_config

    config = get_pipeline_config()
    rules = config.validation.rules_for("heart_rate.bpm")
    floor = config.privacy.k_anonymity_floor            # 3
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger("wellpulse.biometrics.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "pipeline_config.yaml"

RULE_POLICIES = ("error", "warn", "clamp")

# Aggregates below this participant count are never released.
MIN_K_ANONYMITY = 3


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class FieldRule:
    """One row of the validation rule table.

    Attributes:
        field:      Dotted path, '<sub-reading>.<attribute>' (e.g. 'stress.level').
        min:        Inclusive lower bound.
        max:        Inclusive upper bound.
        policy:     'error', 'warn' or 'clamp'.
        multiplier: Confidence multiplier applied when the rule fires.
        label:      Human-readable name used in messages.
    """

    field: str
    min: float
    max: float
    policy: str
    multiplier: float
    label: str

    @property
    def section(self) -> str:
        return self.field.split(".", 1)[0]

    @property
    def attribute(self) -> str:
        return self.field.split(".", 1)[1]

    def contains(self, value: float) -> bool:
        return self.min <= value <= self.max


@dataclass
class ConsistencyBand:
    """Expected heart-rate band as a linear function of another metric.

    The band is ``[low_base + low_slope·x − tolerance, high_base + high_slope·x + tolerance]``.
    """

    low_base: float
    low_slope: float
    high_base: float
    high_slope: float
    tolerance: float

    def bounds(self, x: float) -> tuple[float, float]:
        return (
            self.low_base + self.low_slope * x - self.tolerance,
            self.high_base + self.high_slope * x + self.tolerance,
        )


@dataclass
class ValidationConfig:
    rules: list[FieldRule]
    max_age_days: int = 7
    structure_multiplier: float = 0.5
    timestamp_multiplier: float = 0.9
    confidence_floors: dict[str, float] = field(default_factory=dict)
    sleep_stage_multiplier: float = 0.7
    consistency_multiplier: float = 0.95
    stress_heart_rate: ConsistencyBand = field(
        default_factory=lambda: ConsistencyBand(60, 0.3, 80, 0.8, 20)
    )
    intensity_heart_rate: ConsistencyBand = field(
        default_factory=lambda: ConsistencyBand(60, 40, 80, 80, 15)
    )
    iqr_multiplier: float = 1.5
    outlier_min_readings: int = 3
    outlier_confidence: float = 0.8
    interpolation_max_gap_minutes: int = 15
    interpolation_accuracy: float = 0.7
    interpolation_completeness: float = 0.8
    interpolation_reliability: float = 0.6
    interpolation_confidence: float = 0.6
    timeliness_hours: int = 24
    issue_thresholds: dict[str, float] = field(default_factory=dict)

    def rules_for(self, field_path: str) -> list[FieldRule]:
        return [r for r in self.rules if r.field == field_path]


@dataclass
class PrivacyConfig:
    k_anonymity_floor: int = MIN_K_ANONYMITY
    bucket_minutes: int = 60
    z_score: float = 1.96
    emergency_heart_rate_above: float = 180
    emergency_heart_rate_below: float = 40
    emergency_stress_above: float = 90
    rounding: dict[str, float] = field(default_factory=dict)

    def bucket(self, key: str) -> float:
        return self.rounding.get(key, 1.0)


@dataclass
class RealtimeConfig:
    smoothing_factor: float = 0.8
    heart_rate_zone_bounds: list[float] = field(
        default_factory=lambda: [50, 60, 70, 80, 90]
    )
    anomaly: dict[str, float] = field(default_factory=dict)
    fatigue_alert_threshold: float = 70
    inactivity_intensity: float = 0.1
    immediate: dict[str, float] = field(default_factory=dict)


@dataclass
class PipelineConfig:
    """Complete, validated pipeline configuration.

    This is the single in-memory representation of pipeline_config.yaml.
    The validation engine, privacy filter and real-time processor all read
    from this object.
    """

    version: str
    validation: ValidationConfig
    privacy: PrivacyConfig
    realtime: RealtimeConfig
    _raw: dict = field(default_factory=dict, repr=False)


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when pipeline_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    import yaml  # pyyaml

    if not path.exists():
        raise FileNotFoundError(f"Pipeline config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _number(value: Any, where: str, errors: list[str], default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        errors.append(f"{where} must be a number, got {value!r}")
        return default


def _build_rules(rules_raw: Any, errors: list[str]) -> list[FieldRule]:
    rules: list[FieldRule] = []
    if not isinstance(rules_raw, list) or not rules_raw:
        errors.append("'validation.rules' must be a non-empty list")
        return rules

    for i, raw in enumerate(rules_raw):
        where = f"validation.rules[{i}]"
        if not isinstance(raw, dict):
            errors.append(f"{where} must be a mapping")
            continue
        path = raw.get("field", "")
        if "." not in str(path):
            errors.append(f"{where}.field must look like 'section.attribute', got {path!r}")
            continue
        policy = raw.get("policy")
        if policy not in RULE_POLICIES:
            errors.append(f"{where}.policy must be one of {RULE_POLICIES}, got {policy!r}")
            continue
        lo = _number(raw.get("min"), f"{where}.min", errors)
        hi = _number(raw.get("max"), f"{where}.max", errors)
        if lo > hi:
            errors.append(f"{where} has min {lo} greater than max {hi}")
        multiplier = _number(raw.get("multiplier", 1.0), f"{where}.multiplier", errors, 1.0)
        if not (0.0 <= multiplier <= 1.0):
            errors.append(f"{where}.multiplier = {multiplier} is out of range [0.0, 1.0]")
        rules.append(
            FieldRule(
                field=str(path),
                min=lo,
                max=hi,
                policy=policy,
                multiplier=multiplier,
                label=raw.get("label", str(path)),
            )
        )
    return rules


def _build_band(raw: dict, fallback: ConsistencyBand) -> ConsistencyBand:
    if not raw:
        return fallback
    return ConsistencyBand(
        low_base=float(raw.get("low_base", fallback.low_base)),
        low_slope=float(raw.get("low_slope", fallback.low_slope)),
        high_base=float(raw.get("high_base", fallback.high_base)),
        high_slope=float(raw.get("high_slope", fallback.high_slope)),
        tolerance=float(raw.get("tolerance", fallback.tolerance)),
    )


def _validate_and_build(raw: dict) -> PipelineConfig:
    """Validate the raw YAML dict and construct a PipelineConfig.

    Performs structural validation and applies defaults for optional fields.

    Raises:
        ConfigValidationError: If required fields are missing or invalid.
    """
    errors: list[str] = []
    version = str(raw.get("version", "1.0"))

    # ── Validation ──
    v_raw = raw.get("validation") or {}
    if not v_raw:
        errors.append("'validation' section is missing or empty")
    rules = _build_rules(v_raw.get("rules"), errors)

    floors: dict[str, float] = {}
    for key, val in (v_raw.get("confidence_floors") or {}).items():
        floors[key] = _number(val, f"validation.confidence_floors.{key}", errors)

    cons_raw = v_raw.get("consistency") or {}
    out_raw = v_raw.get("outliers") or {}
    int_raw = v_raw.get("interpolation") or {}
    q_raw = v_raw.get("quality") or {}

    defaults = ValidationConfig(rules=[])
    validation = ValidationConfig(
        rules=rules,
        max_age_days=int(v_raw.get("max_age_days", 7)),
        structure_multiplier=float(v_raw.get("structure_multiplier", 0.5)),
        timestamp_multiplier=float(v_raw.get("timestamp_multiplier", 0.9)),
        confidence_floors=floors,
        sleep_stage_multiplier=float(v_raw.get("sleep_stage_multiplier", 0.7)),
        consistency_multiplier=float(cons_raw.get("multiplier", 0.95)),
        stress_heart_rate=_build_band(
            cons_raw.get("stress_heart_rate") or {}, defaults.stress_heart_rate
        ),
        intensity_heart_rate=_build_band(
            cons_raw.get("intensity_heart_rate") or {}, defaults.intensity_heart_rate
        ),
        iqr_multiplier=float(out_raw.get("iqr_multiplier", 1.5)),
        outlier_min_readings=int(out_raw.get("min_readings", 3)),
        outlier_confidence=float(out_raw.get("confidence", 0.8)),
        interpolation_max_gap_minutes=int(int_raw.get("max_gap_minutes", 15)),
        interpolation_accuracy=float(int_raw.get("accuracy", 0.7)),
        interpolation_completeness=float(int_raw.get("completeness", 0.8)),
        interpolation_reliability=float(int_raw.get("reliability", 0.6)),
        interpolation_confidence=float(int_raw.get("confidence", 0.6)),
        timeliness_hours=int(q_raw.get("timeliness_hours", 24)),
        issue_thresholds={
            "accuracy": float(q_raw.get("accuracy_issue_below", 0.8)),
            "completeness": float(q_raw.get("completeness_issue_below", 0.7)),
            "consistency": float(q_raw.get("consistency_issue_below", 0.8)),
            "timeliness": float(q_raw.get("timeliness_issue_below", 0.9)),
        },
    )
    if validation.outlier_min_readings < 3:
        errors.append("validation.outliers.min_readings must be at least 3")
    if validation.interpolation_max_gap_minutes <= 0:
        errors.append("validation.interpolation.max_gap_minutes must be positive")

    # ── Privacy ──
    p_raw = raw.get("privacy") or {}
    em_raw = p_raw.get("emergency") or {}
    rounding: dict[str, float] = {}
    for key, val in (p_raw.get("rounding") or {}).items():
        step = _number(val, f"privacy.rounding.{key}", errors, 1.0)
        if step <= 0:
            errors.append(f"privacy.rounding.{key} must be positive, got {step}")
        rounding[key] = step

    privacy = PrivacyConfig(
        k_anonymity_floor=int(p_raw.get("k_anonymity_floor", MIN_K_ANONYMITY)),
        bucket_minutes=int(p_raw.get("bucket_minutes", 60)),
        z_score=float(p_raw.get("z_score", 1.96)),
        emergency_heart_rate_above=float(em_raw.get("heart_rate_above", 180)),
        emergency_heart_rate_below=float(em_raw.get("heart_rate_below", 40)),
        emergency_stress_above=float(em_raw.get("stress_above", 90)),
        rounding=rounding,
    )
    if privacy.k_anonymity_floor < MIN_K_ANONYMITY:
        errors.append(
            f"privacy.k_anonymity_floor = {privacy.k_anonymity_floor} "
            f"is below the minimum of {MIN_K_ANONYMITY}"
        )
    if privacy.bucket_minutes <= 0:
        errors.append("privacy.bucket_minutes must be positive")

    # ── Real-time ──
    rt_raw = raw.get("realtime") or {}
    zone_bounds = [float(b) for b in rt_raw.get("heart_rate_zone_bounds", [50, 60, 70, 80, 90])]
    if zone_bounds != sorted(zone_bounds):
        errors.append("realtime.heart_rate_zone_bounds must be ascending")
    realtime = RealtimeConfig(
        smoothing_factor=float(rt_raw.get("smoothing_factor", 0.8)),
        heart_rate_zone_bounds=zone_bounds,
        anomaly={k: float(v) for k, v in (rt_raw.get("anomaly") or {}).items()},
        fatigue_alert_threshold=float(rt_raw.get("fatigue_alert_threshold", 70)),
        inactivity_intensity=float(rt_raw.get("inactivity_intensity", 0.1)),
        immediate={k: float(v) for k, v in (rt_raw.get("immediate") or {}).items()},
    )
    if not (0.0 < realtime.smoothing_factor <= 1.0):
        errors.append(
            f"realtime.smoothing_factor = {realtime.smoothing_factor} is out of range (0.0, 1.0]"
        )

    if errors:
        raise ConfigValidationError(
            f"pipeline_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return PipelineConfig(
        version=version,
        validation=validation,
        privacy=privacy,
        realtime=realtime,
        _raw=raw,
    )


def load_pipeline_config(path: Path | None = None) -> PipelineConfig:
    """Load and validate the pipeline config from disk.

    Args:
        path: Override path to YAML. Uses the bundled pipeline_config.yaml by default.

    Returns:
        Validated PipelineConfig instance.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded pipeline config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: PipelineConfig | None = None
_config_lock = threading.Lock()


def get_pipeline_config() -> PipelineConfig:
    """Return the global PipelineConfig singleton, loading it on first call.

    Thread-safe.  Use ``reload_pipeline_config()`` to refresh after YAML changes.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_pipeline_config()
    return _config


def reload_pipeline_config(path: Path | None = None) -> PipelineConfig:
    """Reload the pipeline config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_pipeline_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded pipeline config: %s → %s", old_version, new_config.version)
    return new_config
