"""Wellpulse Biometric Pipeline.

This package turns raw wearable readings into validated, privacy-compliant,
real-time wellness signals.

Subpackages:
    adapters/  - Device adapters (Apple Watch, Fitbit, Garmin, custom simulator)

Core modules:
    base          - Canonical data models
    errors        - Typed error hierarchy with stable codes
    config_loader - Load/validate/hot-reload pipeline_config.yaml
    validation    - Range rules, outliers, quality scoring, gap interpolation
    privacy       - Consent, field anonymization, k-anonymous team reports, audit
    realtime      - Smoothing, derived metrics, anomaly detection, alerts
    streaming     - Per-user channel fan-out to live subscribers
    metrics       - Stress, fatigue, wellness and HRV views
    sync          - Adapter timeout/retry policy and periodic device sync
    service       - The orchestrator tying it all together
"""

from src.biometrics.base import (
    BiometricProfile,
    BiometricReading,
    ConsentSettings,
    DataType,
    DeviceType,
    TimeRange,
)
from src.biometrics.config_loader import PipelineConfig, get_pipeline_config
from src.biometrics.errors import BiometricServiceError

__all__ = [
    "BiometricReading",
    "BiometricProfile",
    "ConsentSettings",
    "DataType",
    "DeviceType",
    "TimeRange",
    "BiometricServiceError",
    "PipelineConfig",
    "get_pipeline_config",
]
