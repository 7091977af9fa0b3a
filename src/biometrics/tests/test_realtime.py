"""Tests for the real-time processor: smoothing, derived metrics, anomalies, alerts, streams."""

from __future__ import annotations

import asyncio
from typing import AsyncIterator

import pytest

from src.biometrics.base import AlertSeverity, AlertType, BaselineMetrics, BiometricReading
from src.biometrics.config_loader import PipelineConfig
from src.biometrics.realtime import RealTimeProcessor, fatigue_score, wellness_score
from src.biometrics.tests.conftest import TEST_USER_ID, fixed_clock, make_reading

BASELINE = BaselineMetrics()  # resting 70, max 190, stress threshold 60


async def _baseline() -> BaselineMetrics:
    return BASELINE


async def _collect(processor: RealTimeProcessor, source) -> list[str]:
    return [
        processed.original.id
        async for processed in processor.process_stream(TEST_USER_ID, source, _baseline)
    ]


# ---------------------------------------------------------------------------
# Smoothing and derived metrics
# ---------------------------------------------------------------------------


class TestSmoothing:
    def test_first_value_seeds_the_filter(self, processor: RealTimeProcessor) -> None:
        result = processor.process_reading(TEST_USER_ID, make_reading(bpm=100), BASELINE)
        assert result.smoothed["heart_rate"] == pytest.approx(100)

    def test_exponential_smoothing(self, processor: RealTimeProcessor) -> None:
        processor.process_reading(TEST_USER_ID, make_reading("a", bpm=100), BASELINE)
        result = processor.process_reading(TEST_USER_ID, make_reading("b", bpm=50), BASELINE)
        # 0.8 * 50 + 0.2 * 100
        assert result.smoothed["heart_rate"] == pytest.approx(60)

    def test_users_do_not_share_state(self, processor: RealTimeProcessor) -> None:
        processor.process_reading("alice", make_reading(user_id="alice", bpm=100), BASELINE)
        result = processor.process_reading("bob", make_reading(user_id="bob", bpm=50), BASELINE)
        assert result.smoothed["heart_rate"] == pytest.approx(50)

    def test_reset_forgets_smoothing(self, processor: RealTimeProcessor) -> None:
        processor.process_reading(TEST_USER_ID, make_reading("a", bpm=100), BASELINE)
        processor.reset(TEST_USER_ID)
        result = processor.process_reading(TEST_USER_ID, make_reading("b", bpm=50), BASELINE)
        assert result.smoothed["heart_rate"] == pytest.approx(50)


class TestDerivedMetrics:
    def test_heart_rate_zone_and_reserve(self, processor: RealTimeProcessor) -> None:
        derived = processor.derive_metrics({"heart_rate": 140}, BASELINE)
        # 140 / 190 = 73.7% of max
        assert derived["heart_rate_zone"] == 4
        assert derived["heart_rate_reserve"] == pytest.approx(70 / 120 * 100)

    def test_zone_one_below_first_bound(self, processor: RealTimeProcessor) -> None:
        assert processor.derive_metrics({"heart_rate": 80}, BASELINE)["heart_rate_zone"] == 1

    def test_stress_and_activity_metrics(self, processor: RealTimeProcessor) -> None:
        derived = processor.derive_metrics(
            {"heart_rate": 120, "stress_level": 40, "activity_intensity": 0.5}, BASELINE
        )
        assert derived["stress_index"] == pytest.approx(0.4)
        assert derived["stress_deviation"] == pytest.approx(-20)
        assert derived["activity_efficiency"] == pytest.approx(0.9)
        assert derived["fatigue_score"] == pytest.approx(fatigue_score(120, 40))
        assert 0 <= derived["wellness_score"] <= 100

    def test_wellness_score_without_metrics(self) -> None:
        assert wellness_score(None, None, None, BASELINE) == 50.0

    def test_wellness_score_at_rest(self) -> None:
        assert wellness_score(70, 0, None, BASELINE) == pytest.approx(100)

    def test_fatigue_score(self) -> None:
        # (150 - 60) / 120 * 50 + 70 * 0.5
        assert fatigue_score(150, 70) == pytest.approx(72.5)
        assert fatigue_score(50, 0) == 0.0


# ---------------------------------------------------------------------------
# Anomalies
# ---------------------------------------------------------------------------


class TestDetectAnomalies:
    @pytest.mark.parametrize(
        "kwargs, anomaly_type, severity",
        [
            ({"bpm": 205}, "heart_rate_spike", AlertSeverity.CRITICAL),
            ({"bpm": 25}, "heart_rate_drop", AlertSeverity.CRITICAL),
            ({"bpm": 175}, "elevated_heart_rate", AlertSeverity.HIGH),
            ({"bpm": 45}, "low_heart_rate", AlertSeverity.MEDIUM),
            ({"bpm": None, "stress": 97}, "extreme_stress", AlertSeverity.CRITICAL),
            ({"bpm": None, "stress": 85}, "stress_spike", AlertSeverity.HIGH),
            ({"bpm": None, "intensity": 0.97}, "extreme_activity", AlertSeverity.MEDIUM),
        ],
    )
    def test_anomaly_branches(
        self,
        processor: RealTimeProcessor,
        kwargs: dict,
        anomaly_type: str,
        severity: AlertSeverity,
    ) -> None:
        result = processor.detect_anomalies(make_reading(**kwargs), BASELINE)
        assert result.is_anomaly
        assert result.anomaly_type == anomaly_type
        assert result.severity == severity
        assert result.recommended_action

    def test_normal_reading(self, processor: RealTimeProcessor) -> None:
        result = processor.detect_anomalies(make_reading(bpm=72, stress=30), BASELINE)
        assert not result.is_anomaly
        assert result.anomaly_type is None

    def test_heart_rate_checked_before_stress(self, processor: RealTimeProcessor) -> None:
        result = processor.detect_anomalies(make_reading(bpm=205, stress=97), BASELINE)
        assert result.anomaly_type == "heart_rate_spike"

    def test_thresholds_follow_personal_baseline(self, processor: RealTimeProcessor) -> None:
        athlete = BaselineMetrics(resting_heart_rate=50, max_heart_rate=200)
        # 175 < 0.9 * 200 and 40 > 0.7 * 50
        assert not processor.detect_anomalies(make_reading(bpm=175), athlete).is_anomaly
        assert not processor.detect_anomalies(make_reading(bpm=40), athlete).is_anomaly


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


class TestAlerts:
    def test_anomaly_raises_alert(self, processor: RealTimeProcessor) -> None:
        result = processor.process_reading(TEST_USER_ID, make_reading(bpm=205), BASELINE)
        assert len(result.alerts) == 1
        alert = result.alerts[0]
        assert alert.type == AlertType.HEART_RATE_ANOMALY
        assert alert.severity == AlertSeverity.CRITICAL
        assert alert.data["heart_rate"] == 205
        assert "alert_generation" in result.algorithms

    def test_extreme_activity_maps_to_fatigue_alert(self, processor: RealTimeProcessor) -> None:
        result = processor.process_reading(
            TEST_USER_ID, make_reading(bpm=None, intensity=0.97), BASELINE
        )
        assert [a.type for a in result.alerts] == [AlertType.FATIGUE_DETECTED]

    def test_stress_spike_alert(self, processor: RealTimeProcessor) -> None:
        result = processor.process_reading(
            TEST_USER_ID, make_reading(bpm=None, stress=85), BASELINE
        )
        assert [a.type for a in result.alerts] == [AlertType.STRESS_SPIKE]

    def test_fatigue_alert_needs_heart_rate_and_stress(
        self, processor: RealTimeProcessor
    ) -> None:
        result = processor.process_reading(
            TEST_USER_ID, make_reading(bpm=150, stress=70), BASELINE
        )
        assert [a.type for a in result.alerts] == [AlertType.FATIGUE_DETECTED]
        assert result.alerts[0].data["fatigue_score"] == pytest.approx(72.5)

        stress_only = processor.process_reading(
            TEST_USER_ID, make_reading("b", bpm=None, stress=70), BASELINE
        )
        assert stress_only.alerts == []

    def test_inactivity_warning(self, processor: RealTimeProcessor) -> None:
        result = processor.process_reading(
            TEST_USER_ID, make_reading(bpm=None, intensity=0.05), BASELINE
        )
        assert [a.type for a in result.alerts] == [AlertType.INACTIVITY_WARNING]
        assert result.alerts[0].severity == AlertSeverity.LOW

    def test_normal_reading_raises_nothing(self, processor: RealTimeProcessor) -> None:
        result = processor.process_reading(TEST_USER_ID, make_reading(bpm=72), BASELINE)
        assert result.alerts == []
        assert processor.get_active_alerts(TEST_USER_ID) == []

    def test_acknowledge_and_clear(self, processor: RealTimeProcessor) -> None:
        processor.process_reading(TEST_USER_ID, make_reading("a", bpm=205), BASELINE)
        processor.process_reading(TEST_USER_ID, make_reading("b", bpm=25), BASELINE)
        active = processor.get_active_alerts(TEST_USER_ID)
        assert len(active) == 2

        assert processor.acknowledge_alert(TEST_USER_ID, active[0].id) is True
        assert processor.acknowledge_alert(TEST_USER_ID, "alert-missing") is False
        assert [a.id for a in processor.get_active_alerts(TEST_USER_ID)] == [active[1].id]

        assert processor.clear_acknowledged_alerts(TEST_USER_ID) == 1
        assert processor.clear_acknowledged_alerts(TEST_USER_ID) == 0
        assert len(processor.get_active_alerts(TEST_USER_ID)) == 1


# ---------------------------------------------------------------------------
# process_reading() robustness
# ---------------------------------------------------------------------------


class TestProcessReading:
    def test_full_pipeline_output(self, processor: RealTimeProcessor) -> None:
        result = processor.process_reading(
            TEST_USER_ID, make_reading(bpm=72, stress=30, intensity=0.5), BASELINE
        )
        assert result.algorithms[:3] == [
            "exponential_smoothing", "derived_metrics", "anomaly_detection",
        ]
        assert 0.1 <= result.confidence <= 1.0
        assert result.processing_time_ms >= 0
        assert result.to_dict()["processing_metadata"]["algorithms"] == result.algorithms

    def test_failure_degrades_to_fallback(self, processor: RealTimeProcessor) -> None:
        result = processor.process_reading(TEST_USER_ID, make_reading(bpm=72), None)
        assert result.algorithms == ["error_fallback"]
        assert result.confidence == pytest.approx(0.1)
        assert result.original.heart_rate.bpm == 72


# ---------------------------------------------------------------------------
# calculate_real_time_metrics()
# ---------------------------------------------------------------------------


class TestRealTimeMetrics:
    def test_trends_are_stable_without_history(self, processor: RealTimeProcessor) -> None:
        metrics = processor.calculate_real_time_metrics(make_reading(bpm=72, stress=20))
        assert metrics.instantaneous == {"heart_rate": 72, "stress_level": 20}
        assert metrics.trends == {"heart_rate": "stable", "stress_level": "stable"}
        assert metrics.alerts == []

    def test_trends_against_smoothed_state(self, processor: RealTimeProcessor) -> None:
        processor.process_reading(TEST_USER_ID, make_reading("a", bpm=100, stress=50), BASELINE)
        metrics = processor.calculate_real_time_metrics(
            make_reading("b", bpm=120, stress=30)
        )
        assert metrics.trends == {"heart_rate": "increasing", "stress_level": "decreasing"}

    def test_immediate_alerts_are_not_stored(self, processor: RealTimeProcessor) -> None:
        metrics = processor.calculate_real_time_metrics(make_reading(bpm=185, stress=92))
        assert [(a.type, a.severity) for a in metrics.alerts] == [
            (AlertType.HEART_RATE_ANOMALY, AlertSeverity.CRITICAL),
            (AlertType.STRESS_SPIKE, AlertSeverity.HIGH),
        ]
        assert processor.get_active_alerts(TEST_USER_ID) == []


# ---------------------------------------------------------------------------
# process_stream()
# ---------------------------------------------------------------------------


class TestProcessStream:
    @pytest.mark.asyncio
    async def test_burst_is_coalesced_to_latest(self, processor: RealTimeProcessor) -> None:
        async def source() -> AsyncIterator[BiometricReading]:
            for i, minutes_ago in enumerate([3, 2, 1], start=1):
                yield make_reading(f"r{i}", minutes_ago=minutes_ago)

        assert await _collect(processor, source()) == ["r3"]

    @pytest.mark.asyncio
    async def test_debounce_window(self, pipeline_config: PipelineConfig) -> None:
        processor = RealTimeProcessor(
            pipeline_config.realtime, debounce_seconds=0.05, clock=fixed_clock
        )

        async def source() -> AsyncIterator[BiometricReading]:
            yield make_reading("r1", minutes_ago=3)
            yield make_reading("r2", minutes_ago=2)
            await asyncio.sleep(0.2)
            yield make_reading("r3", minutes_ago=1)

        assert await _collect(processor, source()) == ["r2", "r3"]

    @pytest.mark.asyncio
    async def test_release_sees_only_coalesced_readings(
        self, pipeline_config: PipelineConfig
    ) -> None:
        processor = RealTimeProcessor(
            pipeline_config.realtime, debounce_seconds=0.05, clock=fixed_clock
        )
        released: list[str] = []

        async def release(reading: BiometricReading) -> BiometricReading | None:
            released.append(reading.id)
            return None if reading.id == "r2" else reading

        async def source() -> AsyncIterator[BiometricReading]:
            yield make_reading("r1", minutes_ago=3)
            yield make_reading("r2", minutes_ago=2)
            await asyncio.sleep(0.2)
            yield make_reading("r3", minutes_ago=1)

        seen = [
            processed.original.id
            async for processed in processor.process_stream(
                TEST_USER_ID, source(), _baseline, release=release
            )
        ]
        assert released == ["r2", "r3"]
        assert seen == ["r3"]

    @pytest.mark.asyncio
    async def test_out_of_order_reading_is_dropped(self, processor: RealTimeProcessor) -> None:
        async def source() -> AsyncIterator[BiometricReading]:
            yield make_reading("r1", minutes_ago=5)
            await asyncio.sleep(0.01)
            yield make_reading("late", minutes_ago=10)
            await asyncio.sleep(0.01)
            yield make_reading("r3", minutes_ago=1)

        assert await _collect(processor, source()) == ["r1", "r3"]

    @pytest.mark.asyncio
    async def test_unprocessable_reading_is_dropped(self, processor: RealTimeProcessor) -> None:
        async def source() -> AsyncIterator[BiometricReading]:
            yield make_reading("r1", minutes_ago=5)
            await asyncio.sleep(0.01)
            yield make_reading("empty", bpm=None, minutes_ago=1)

        assert await _collect(processor, source()) == ["r1"]

    @pytest.mark.asyncio
    async def test_source_error_propagates_after_pending_reading(
        self, processor: RealTimeProcessor
    ) -> None:
        async def source() -> AsyncIterator[BiometricReading]:
            yield make_reading("r1")
            raise RuntimeError("device went away")

        seen: list[str] = []
        with pytest.raises(RuntimeError, match="device went away"):
            async for processed in processor.process_stream(TEST_USER_ID, source(), _baseline):
                seen.append(processed.original.id)
        assert seen == ["r1"]

    @pytest.mark.asyncio
    async def test_empty_source_ends_cleanly(self, processor: RealTimeProcessor) -> None:
        async def source() -> AsyncIterator[BiometricReading]:
            return
            yield  # pragma: no cover

        assert await _collect(processor, source()) == []
