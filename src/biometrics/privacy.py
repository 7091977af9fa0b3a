"""Consent enforcement, field-level anonymization and k-anonymous team reporting.

The filter is consulted before any reading leaves the trust boundary:

1. Readings older than the user's retention period are never released.
2. A reading carrying any data type the user has not consented to is
   dropped whole and a ``privacy_violation`` is audited per type, unless
   the emergency override applies (extreme values + explicit opt-in).
3. Consented readings then pass the per-field sharing preferences: fields
   the user does not share are anonymized (team / organization sharing)
   or removed (sharing level ``none``).
4. A reading with no surviving fields is dropped.

Team aggregates are bucketed hourly and any bucket representing fewer
than ``k_anonymity_floor`` distinct users is discarded.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable

from src.biometrics.base import (
    AnonymizedBiometricData,
    AuditEntry,
    BiometricReading,
    ConfidenceInterval,
    ConsentSettings,
    DataType,
    PrivacySettings,
    SharingLevel,
    utc_now,
)
from src.biometrics.config_loader import PrivacyConfig, get_pipeline_config
from src.biometrics.errors import PrivacyViolationError
from src.biometrics.store import (
    AuditLog,
    InMemoryAuditLog,
    InMemoryKeyValueStore,
    KeyValueStore,
)

logger = logging.getLogger("wellpulse.biometrics.privacy")

MIN_RETENTION_DAYS = 1
MAX_RETENTION_DAYS = 2555

# Audit actions
CONSENT_CHECK = "consent_check"
CONSENT_UPDATE = "consent_update"
PRIVACY_SETTINGS_UPDATE = "privacy_settings_update"
PRIVACY_VIOLATION = "privacy_violation"
EMERGENCY_OVERRIDE = "emergency_override"
FILTERED_ACCESS = "filtered_access"
RETENTION_EXPIRED = "retention_expired"


def _round_to(value: float, step: float) -> float:
    """Round half-up to the nearest multiple of ``step``."""
    return math.floor(value / step + 0.5) * step


@dataclass
class ComplianceReport:
    team_id: str
    total_users: int
    consented_users: int
    data_types_consented: dict[str, int]
    privacy_violations: int
    last_audit_date: datetime | None
    generated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "team_id": self.team_id,
            "total_users": self.total_users,
            "consented_users": self.consented_users,
            "data_types_consented": dict(self.data_types_consented),
            "privacy_violations": self.privacy_violations,
            "last_audit_date": self.last_audit_date.isoformat() if self.last_audit_date else None,
            "generated_at": self.generated_at.isoformat(),
        }


class PrivacyFilter:
    """Consent store, anonymizer and audit trail.

    Args:
        consent_store: Per-user ConsentSettings. In-memory by default.
        privacy_store: Per-user PrivacySettings. In-memory by default.
        audit_log:     Audit trail. In-memory by default.
        config:        Privacy settings from pipeline_config.yaml.
        clock:         Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        consent_store: KeyValueStore[ConsentSettings] | None = None,
        privacy_store: KeyValueStore[PrivacySettings] | None = None,
        audit_log: AuditLog | None = None,
        config: PrivacyConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._consent = consent_store or InMemoryKeyValueStore("consent")
        self._privacy = privacy_store or InMemoryKeyValueStore("privacy")
        self._audit = audit_log or InMemoryAuditLog()
        self._config = config or get_pipeline_config().privacy
        self._clock = clock

    # ------------------------------------------------------------------
    # Consent surface
    # ------------------------------------------------------------------

    async def get_consent_settings(self, user_id: str) -> ConsentSettings:
        """Return the user's consent, creating the all-false default on first access."""
        return await self._consent.get_or_create(user_id, ConsentSettings.default)

    async def get_privacy_settings(self, user_id: str) -> PrivacySettings:
        return await self._privacy.get_or_create(user_id, PrivacySettings)

    async def check_consent_status(self, user_id: str, data_type: DataType | str) -> bool:
        """Return whether the user consented to ``data_type``, and audit the check."""
        dt = self._parse_data_type(data_type, user_id)
        consent = await self.get_consent_settings(user_id)
        allowed = consent.allows(dt)
        await self._record(user_id, CONSENT_CHECK, dt.value, allowed)
        return allowed

    async def update_consent_settings(
        self, user_id: str, updates: dict[str, Any]
    ) -> ConsentSettings:
        """Merge ``updates`` into the user's consent and store it atomically.

        Args:
            user_id: User whose consent changes.
            updates: Any of ``data_types`` (mapping of data type → bool),
                     ``sharing_level``, ``retention_period``,
                     ``allow_research``, ``emergency_override``.

        Returns:
            The new ConsentSettings.

        Raises:
            PrivacyViolationError: If the sharing level, retention period or a
                data type is invalid. Nothing is written in that case.
        """
        changes: dict[str, Any] = {}

        if "sharing_level" in updates:
            try:
                changes["sharing_level"] = SharingLevel(updates["sharing_level"])
            except ValueError:
                raise PrivacyViolationError(
                    f"Invalid sharing level: {updates['sharing_level']!r}",
                    code="INVALID_SHARING_LEVEL",
                    user_id=user_id,
                ) from None

        if "retention_period" in updates:
            period = updates["retention_period"]
            if (
                isinstance(period, bool)
                or not isinstance(period, int)
                or not MIN_RETENTION_DAYS <= period <= MAX_RETENTION_DAYS
            ):
                raise PrivacyViolationError(
                    f"Retention period must be between {MIN_RETENTION_DAYS} and "
                    f"{MAX_RETENTION_DAYS} days, got {period!r}",
                    code="INVALID_RETENTION_PERIOD",
                    user_id=user_id,
                )
            changes["retention_period"] = period

        for flag in ("allow_research", "emergency_override"):
            if flag in updates:
                changes[flag] = bool(updates[flag])

        type_changes: dict[DataType, bool] = {}
        for key, allowed in (updates.get("data_types") or {}).items():
            type_changes[self._parse_data_type(key, user_id)] = bool(allowed)

        def _merge(current: ConsentSettings | None) -> ConsentSettings:
            base = current or ConsentSettings.default()
            merged = replace(base, **changes)
            if type_changes:
                merged = replace(merged, data_types={**base.data_types, **type_changes})
            return merged

        new_settings = await self._consent.update(user_id, _merge)
        await self._record(
            user_id,
            CONSENT_UPDATE,
            ",".join(dt.value for dt in type_changes) or "settings",
            True,
            details=", ".join(sorted([*changes, *(["data_types"] if type_changes else [])])),
        )
        logger.info("Updated consent for user %s", user_id)
        return new_settings

    async def update_privacy_settings(
        self, user_id: str, updates: dict[str, Any]
    ) -> PrivacySettings:
        """Merge ``updates`` into the user's per-field sharing preferences.

        Raises:
            PrivacyViolationError: If an unknown setting is given.
        """
        known = {f.name for f in fields(PrivacySettings)}
        unknown = sorted(set(updates) - known)
        if unknown:
            raise PrivacyViolationError(
                f"Unknown privacy settings: {', '.join(unknown)}",
                code="INVALID_PRIVACY_SETTINGS",
                user_id=user_id,
            )
        changes = {k: bool(v) for k, v in updates.items()}
        new_settings = await self._privacy.update(
            user_id, lambda current: replace(current or PrivacySettings(), **changes)
        )
        await self._record(
            user_id, PRIVACY_SETTINGS_UPDATE, "settings", True, details=", ".join(sorted(changes))
        )
        return new_settings

    # ------------------------------------------------------------------
    # Reading filter
    # ------------------------------------------------------------------

    def is_emergency_scenario(self, reading: BiometricReading, consent: ConsentSettings) -> bool:
        """Return True when extreme values meet the user's emergency opt-in."""
        if not consent.emergency_override:
            return False
        cfg = self._config
        if reading.heart_rate is not None and (
            reading.heart_rate.bpm > cfg.emergency_heart_rate_above
            or reading.heart_rate.bpm < cfg.emergency_heart_rate_below
        ):
            return True
        return reading.stress is not None and reading.stress.level > cfg.emergency_stress_above

    async def apply_privacy_settings(
        self, user_id: str, readings: Iterable[BiometricReading]
    ) -> list[BiometricReading]:
        """Release only the readings (and fields) the user allows.

        Readings released through the emergency override keep their measured
        values. Returned readings are copies; inputs are never mutated.

        Args:
            user_id:  Owner of the readings.
            readings: Candidate readings.

        Returns:
            Privacy-compliant readings, in input order.
        """
        consent = await self.get_consent_settings(user_id)
        privacy = await self.get_privacy_settings(user_id)
        retention_cutoff = self._clock() - timedelta(days=consent.retention_period)
        # Consent and violation history outlives the retention period
        pruned = await self._audit.prune(user_id, retention_cutoff, (FILTERED_ACCESS,))
        if pruned:
            logger.debug("Pruned %d expired access entries for user %s", pruned, user_id)

        released: list[BiometricReading] = []
        dropped = 0
        for reading in readings:
            if reading.timestamp is not None and reading.timestamp < retention_cutoff:
                await self._record(user_id, RETENTION_EXPIRED, "all", False, details=reading.id)
                dropped += 1
                continue

            missing = [dt for dt in reading.present_data_types() if not consent.allows(dt)]
            if missing:
                if self.is_emergency_scenario(reading, consent):
                    for dt in missing:
                        await self._record(
                            user_id, EMERGENCY_OVERRIDE, dt.value, True, details=reading.id
                        )
                    logger.warning(
                        "Emergency override released reading %s for user %s",
                        reading.id, user_id,
                    )
                    released.append(reading.copy())
                    continue
                for dt in missing:
                    await self._record(
                        user_id, PRIVACY_VIOLATION, dt.value, False, details=reading.id
                    )
                dropped += 1
                continue

            filtered = self._apply_field_policy(reading, consent, privacy)
            if not filtered.has_measurements():
                dropped += 1
                continue
            await self._record(
                user_id,
                FILTERED_ACCESS,
                ",".join(dt.value for dt in filtered.present_data_types()),
                True,
                details=reading.id,
            )
            released.append(filtered)

        if dropped:
            logger.info(
                "Privacy filter for user %s: released %d, dropped %d",
                user_id, len(released), dropped,
            )
        return released

    def _apply_field_policy(
        self,
        reading: BiometricReading,
        consent: ConsentSettings,
        privacy: PrivacySettings,
    ) -> BiometricReading:
        out = reading.copy()
        remove = consent.sharing_level == SharingLevel.NONE
        for dt in reading.present_data_types():
            if privacy.shares(dt):
                continue
            if remove:
                self._remove_field(out, dt)
            else:
                self._anonymize_field(out, dt)
        return out

    @staticmethod
    def _remove_field(reading: BiometricReading, data_type: DataType) -> None:
        attr = {
            DataType.HEART_RATE: "heart_rate",
            DataType.STRESS_LEVEL: "stress",
            DataType.ACTIVITY_LEVEL: "activity",
            DataType.SLEEP_QUALITY: "sleep",
        }[data_type]
        setattr(reading, attr, None)

    def _anonymize_field(self, reading: BiometricReading, data_type: DataType) -> None:
        cfg = self._config
        if data_type == DataType.HEART_RATE and reading.heart_rate:
            reading.heart_rate.bpm = _round_to(reading.heart_rate.bpm, cfg.bucket("heart_rate"))
            reading.heart_rate.variability = None
        elif data_type == DataType.STRESS_LEVEL and reading.stress:
            reading.stress.level = _round_to(reading.stress.level, cfg.bucket("stress"))
            reading.stress.indicators = {}
        elif data_type == DataType.ACTIVITY_LEVEL and reading.activity:
            activity = reading.activity
            if activity.steps is not None:
                activity.steps = int(_round_to(activity.steps, cfg.bucket("steps")))
            if activity.calories is not None:
                activity.calories = _round_to(activity.calories, cfg.bucket("calories"))
            activity.distance = None
        elif data_type == DataType.SLEEP_QUALITY and reading.sleep:
            sleep = reading.sleep
            sleep.duration = _round_to(sleep.duration, cfg.bucket("sleep_duration"))
            sleep.quality = _round_to(sleep.quality, cfg.bucket("sleep_quality"))
            sleep.deep_sleep_minutes = None
            sleep.rem_sleep_minutes = None

    # ------------------------------------------------------------------
    # Team reporting
    # ------------------------------------------------------------------

    def anonymize_for_team_reporting(
        self, team_id: str, readings: Iterable[BiometricReading]
    ) -> list[AnonymizedBiometricData]:
        """Aggregate readings into hourly buckets that each cover ≥ k users.

        Buckets with fewer than ``k_anonymity_floor`` distinct users are
        discarded entirely.  Averages use present values only; a metric with
        no values in a bucket is omitted.

        Returns:
            One AnonymizedBiometricData per surviving bucket, oldest first.
        """
        cfg = self._config
        bucket_seconds = cfg.bucket_minutes * 60
        buckets: dict[int, list[BiometricReading]] = defaultdict(list)
        for reading in readings:
            if reading.timestamp is None:
                continue
            key = math.floor(reading.timestamp.timestamp() / bucket_seconds)
            buckets[key].append(reading)

        results: list[AnonymizedBiometricData] = []
        for key in sorted(buckets):
            bucket = buckets[key]
            participants = len({r.user_id for r in bucket})
            if participants < cfg.k_anonymity_floor:
                logger.debug(
                    "Team %s: discarded bucket %d with %d participant(s)",
                    team_id, key, participants,
                )
                continue

            metrics: dict[str, float] = {}
            for name, values in (
                ("heart_rate", [r.heart_rate.bpm for r in bucket if r.heart_rate]),
                ("stress_level", [r.stress.level for r in bucket if r.stress]),
                ("activity_intensity", [r.activity.intensity for r in bucket if r.activity]),
            ):
                if values:
                    metrics[name] = sum(values) / len(values)

            margin = cfg.z_score / math.sqrt(len(bucket))
            results.append(
                AnonymizedBiometricData(
                    team_id=team_id,
                    timestamp=datetime.fromtimestamp(key * bucket_seconds, tz=timezone.utc),
                    aggregated_metrics=metrics,
                    participant_count=participants,
                    confidence_interval=ConfidenceInterval(
                        lower=max(0.0, 1 - margin),
                        upper=min(1.0, 1 + margin),
                    ),
                )
            )

        logger.info(
            "Team %s: %d of %d hourly buckets released", team_id, len(results), len(buckets)
        )
        return results

    # ------------------------------------------------------------------
    # Audit / compliance
    # ------------------------------------------------------------------

    async def get_audit_log(
        self,
        user_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[AuditEntry]:
        return await self._audit.query(user_id=user_id, start=start, end=end)

    async def generate_compliance_report(
        self, team_id: str, user_ids: Iterable[str] | None = None
    ) -> ComplianceReport:
        """Summarize consent coverage and violations.

        Args:
            team_id:  Team the report is for.
            user_ids: Team members. Defaults to every user with stored consent.
        """
        members = list(user_ids) if user_ids is not None else await self._consent.keys()
        per_type = {dt.value: 0 for dt in DataType}
        consented = 0
        violations = 0
        last_audit: datetime | None = None

        for user_id in members:
            consent = await self._consent.get(user_id) or ConsentSettings.default()
            allowed = [dt for dt in DataType if consent.allows(dt)]
            if allowed:
                consented += 1
            for dt in allowed:
                per_type[dt.value] += 1
            for entry in await self._audit.query(user_id=user_id):
                if entry.action == PRIVACY_VIOLATION:
                    violations += 1
                if last_audit is None or entry.timestamp > last_audit:
                    last_audit = entry.timestamp

        return ComplianceReport(
            team_id=team_id,
            total_users=len(members),
            consented_users=consented,
            data_types_consented=per_type,
            privacy_violations=violations,
            last_audit_date=last_audit,
            generated_at=self._clock(),
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _record(
        self,
        user_id: str,
        action: str,
        data_type: str,
        approved: bool,
        details: str | None = None,
    ) -> None:
        await self._audit.append(
            AuditEntry(
                user_id=user_id,
                action=action,
                data_type=data_type,
                timestamp=self._clock(),
                approved=approved,
                details=details,
            )
        )

    @staticmethod
    def _parse_data_type(value: DataType | str, user_id: str) -> DataType:
        try:
            return DataType(value)
        except ValueError:
            raise PrivacyViolationError(
                f"Unknown data type: {value!r}", code="INVALID_DATA_TYPE", user_id=user_id
            ) from None
