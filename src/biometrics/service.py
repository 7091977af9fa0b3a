"""Biometric orchestrator: devices, profiles, per-user live pipelines and metrics.

One ``BiometricService`` serves every user.  Per user it owns:

- the connected-device map and the biometric profile (key-value stores)
- one ``BroadcastChannel`` and one pipeline task, alive while at least
  one device is connected
- a short window of released readings used by the metric views

Live pipeline, one asyncio task per user::

    device sync / push ingest ─feed→ channel
        → RealTimeProcessor.process_stream (debounce, order,
          release through privacy filter and validation, process)
        ─publish→ every subscriber

Connect, disconnect, sync and collect for one user are serialized by a
per-user ``asyncio.Lock``; different users never wait on each other.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import defaultdict
from dataclasses import dataclass, fields, replace
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Callable, Iterable

from src.biometrics import metrics
from src.biometrics.adapters import get_adapter
from src.biometrics.adapters.apple_watch import AppleWatchAdapter
from src.biometrics.adapters.base import DeviceAdapter, DeviceCredentials
from src.biometrics.base import (
    AnonymizedBiometricData,
    BaselineMetrics,
    BiometricProfile,
    BiometricReading,
    ConnectedDevice,
    ConnectionStatus,
    DeviceType,
    SharingLevel,
    TimeRange,
    WellnessAlert,
    utc_now,
)
from src.biometrics.errors import (
    BiometricServiceError,
    DataValidationError,
    DeviceConnectionError,
    DeviceNotFoundError,
    ProfileNotFoundError,
    StreamError,
)
from src.biometrics.privacy import PrivacyFilter
from src.biometrics.realtime import RealTimeProcessor
from src.biometrics.store import InMemoryKeyValueStore, KeyValueStore
from src.biometrics.streaming import BroadcastChannel, StreamEvent
from src.biometrics.sync import (
    RetryPolicy,
    SyncResult,
    SyncScheduler,
    call_with_retry,
    gather_limited,
)
from src.biometrics.validation import DataQualityAssessment, ValidationEngine

logger = logging.getLogger("wellpulse.biometrics.service")


@dataclass(frozen=True)
class ServiceOptions:
    """Runtime knobs for the orchestrator (populated from ``Settings``).

    Attributes:
        retry:                     Timeout / backoff for adapter calls.
        debounce_seconds:          Coalescing window of the live stream.
        stream_max_retries:        Pipeline restarts before a fatal stream error.
        subscriber_buffer_size:    Capacity of ingest and subscriber queues.
        sync_enabled:              Run periodic per-device sync loops.
        sync_interval_seconds:     Override the per-device-type sync interval.
        sync_lookback_minutes:     Range fetched by a device's first sync.
        privacy_before_validation: Pipeline order for released readings.
        recent_window_minutes:     Readings kept for the metric views.
        max_concurrent_devices:    Parallel adapter calls per collect.
    """

    retry: RetryPolicy = RetryPolicy()
    debounce_seconds: float = 1.0
    stream_max_retries: int = 3
    subscriber_buffer_size: int = 100
    sync_enabled: bool = True
    sync_interval_seconds: float | None = None
    sync_lookback_minutes: int = 60
    privacy_before_validation: bool = True
    recent_window_minutes: int = 60
    max_concurrent_devices: int = 5


_PROFILE_SECTIONS = {"fatigue_indicators", "sleep_pattern", "activity_level"}


class _RecentReadings:
    """Released readings per user inside a sliding time window, de-duplicated by id."""

    def __init__(self, window: timedelta, max_per_user: int = 5000) -> None:
        self._window = window
        self._max = max_per_user
        self._by_user: dict[str, dict[str, BiometricReading]] = defaultdict(dict)

    def add(self, user_id: str, readings: Iterable[BiometricReading], now: datetime) -> None:
        bucket = self._by_user[user_id]
        for reading in readings:
            bucket[reading.id] = reading
        cutoff = now - self._window
        stale = [k for k, r in bucket.items() if r.timestamp is None or r.timestamp < cutoff]
        for key in stale:
            del bucket[key]
        if len(bucket) > self._max:
            ordered = sorted(bucket.values(), key=lambda r: r.timestamp)
            self._by_user[user_id] = {r.id: r for r in ordered[-self._max:]}

    def window(self, user_id: str, now: datetime) -> list[BiometricReading]:
        cutoff = now - self._window
        return sorted(
            (r for r in self._by_user.get(user_id, {}).values() if r.timestamp >= cutoff),
            key=lambda r: r.timestamp,
        )


class BiometricService:
    """Coordinates adapters, the privacy filter, validation and real-time processing.

    Args:
        options:    Runtime settings.
        adapters:   Adapter instances by device type; missing types are
                    instantiated from ``ADAPTER_REGISTRY`` on first use.
        validation: Validation engine. Defaults to one built from the global config.
        privacy:    Privacy filter. Defaults to in-memory stores.
        processor:  Real-time processor.
        profile_store: Per-user BiometricProfile.
        device_store:  Per-user map of device id → ConnectedDevice.
        clock:      Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        options: ServiceOptions | None = None,
        *,
        adapters: dict[DeviceType, DeviceAdapter] | None = None,
        validation: ValidationEngine | None = None,
        privacy: PrivacyFilter | None = None,
        processor: RealTimeProcessor | None = None,
        profile_store: KeyValueStore[BiometricProfile] | None = None,
        device_store: KeyValueStore[dict[str, ConnectedDevice]] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._options = options or ServiceOptions()
        self._clock = clock
        self._adapters: dict[DeviceType, DeviceAdapter] = dict(adapters or {})
        self._validation = validation or ValidationEngine(clock=clock)
        self._privacy = privacy or PrivacyFilter(clock=clock)
        self._processor = processor or RealTimeProcessor(
            debounce_seconds=self._options.debounce_seconds, clock=clock
        )
        self._profiles = profile_store or InMemoryKeyValueStore("profiles")
        self._devices = device_store or InMemoryKeyValueStore("devices")
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._channels: dict[str, BroadcastChannel] = {}
        self._pipelines: dict[str, asyncio.Task] = {}
        self._recent = _RecentReadings(timedelta(minutes=self._options.recent_window_minutes))
        self._scheduler = SyncScheduler(self._options.sync_interval_seconds)

    @property
    def privacy(self) -> PrivacyFilter:
        return self._privacy

    @property
    def validation(self) -> ValidationEngine:
        return self._validation

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------

    def _adapter(self, device_type: DeviceType | str) -> DeviceAdapter:
        try:
            adapter_cls = get_adapter(device_type)
        except KeyError as exc:
            raise BiometricServiceError(
                str(exc.args[0]), code="UNSUPPORTED_DEVICE_TYPE"
            ) from None
        if adapter_cls.DEVICE_TYPE not in self._adapters:
            self._adapters[adapter_cls.DEVICE_TYPE] = adapter_cls()
        return self._adapters[adapter_cls.DEVICE_TYPE]

    async def connect_device(
        self,
        user_id: str,
        device_type: DeviceType | str,
        credentials: DeviceCredentials,
    ) -> ConnectedDevice:
        """Bind a device, create the profile if needed and start the user's pipeline.

        Connecting a second device attaches it to the already running pipeline.

        Raises:
            DeviceConnectionError: Bad credentials, vendor rejection, or the
                adapter timed out after retries.
            BiometricServiceError: Unsupported device type.
        """
        adapter = self._adapter(device_type)
        problems = adapter.validate_credentials(credentials)
        if problems:
            raise DeviceConnectionError(
                "; ".join(problems), code="INVALID_CREDENTIALS", user_id=user_id
            )

        async with self._locks[user_id]:
            result = await call_with_retry(
                lambda: adapter.connect(user_id, credentials),
                self._options.retry,
                operation="connect",
                user_id=user_id,
            )
            if not result.success or not result.device_id:
                raise DeviceConnectionError(
                    result.error or f"{adapter.DISPLAY_NAME} rejected the connection",
                    code="DEVICE_CONNECTION_FAILED",
                    user_id=user_id,
                )

            device = ConnectedDevice(
                device_id=result.device_id,
                user_id=user_id,
                device_type=adapter.DEVICE_TYPE,
                connection_status=ConnectionStatus.CONNECTED,
                data_types=adapter.get_capabilities(),
                battery_level=result.battery_level,
                firmware_version=result.firmware_version,
                model=result.model,
            )
            await self._devices.update(
                user_id, lambda current: {**(current or {}), device.device_id: device}
            )
            await self._profiles.update(
                user_id, lambda profile: self._attach_device(user_id, profile, device.device_id)
            )
            self._ensure_pipeline(user_id)
            if self._options.sync_enabled:
                self._scheduler.schedule(
                    device.device_id,
                    device.device_type,
                    lambda: self.sync_device_data(user_id, device.device_id),
                )

        logger.info(
            "Connected %s device %s for user %s", device.device_type.value, device.device_id, user_id
        )
        return device

    def _attach_device(
        self, user_id: str, profile: BiometricProfile | None, device_id: str
    ) -> BiometricProfile:
        if profile is None:
            logger.info("Created biometric profile for user %s", user_id)
            profile = BiometricProfile(user_id=user_id)
        ids = profile.connected_device_ids
        if device_id in ids:
            return profile
        return replace(profile, connected_device_ids=[*ids, device_id], updated_at=self._clock())

    async def disconnect_device(self, user_id: str, device_id: str) -> None:
        """Unbind a device.  The user's pipeline stops with the last device.

        Raises:
            DeviceNotFoundError: If the device is not connected for this user.
        """
        async with self._locks[user_id]:
            device = await self._get_device(user_id, device_id)
            await self._scheduler.cancel(device_id)
            await self._adapter(device.device_type).disconnect(device_id)
            remaining = await self._devices.update(
                user_id,
                lambda current: {k: v for k, v in (current or {}).items() if k != device_id},
            )

            def _detach(profile: BiometricProfile | None) -> BiometricProfile | None:
                if profile is None:
                    return None
                ids = [i for i in profile.connected_device_ids if i != device_id]
                return replace(profile, connected_device_ids=ids, updated_at=self._clock())

            await self._profiles.update(user_id, _detach)
            if not remaining:
                await self._stop_pipeline(user_id)
        logger.info("Disconnected device %s for user %s", device_id, user_id)

    async def get_connected_devices(self, user_id: str) -> list[ConnectedDevice]:
        return list((await self._devices.get(user_id) or {}).values())

    async def _get_device(self, user_id: str, device_id: str) -> ConnectedDevice:
        device = (await self._devices.get(user_id) or {}).get(device_id)
        if device is None:
            raise DeviceNotFoundError(
                f"Device {device_id} is not connected", user_id=user_id, device_id=device_id
            )
        return device

    async def _set_device(self, user_id: str, device_id: str, **changes: Any) -> None:
        def _apply(current: dict[str, ConnectedDevice] | None) -> dict[str, ConnectedDevice]:
            devices = dict(current or {})
            if device_id in devices:
                devices[device_id] = replace(devices[device_id], **changes)
            return devices

        await self._devices.update(user_id, _apply)

    async def _collect_from(
        self, user_id: str, device: ConnectedDevice, time_range: TimeRange
    ) -> list[BiometricReading]:
        """Collect from one device, recording the outcome on the device."""
        adapter = self._adapter(device.device_type)
        try:
            readings = await call_with_retry(
                lambda: adapter.collect(device.device_id, device.data_types, time_range),
                self._options.retry,
                operation="collect",
                user_id=user_id,
                device_id=device.device_id,
            )
        except DeviceConnectionError:
            await self._set_device(
                user_id, device.device_id, connection_status=ConnectionStatus.ERROR
            )
            raise
        await self._set_device(
            user_id,
            device.device_id,
            connection_status=ConnectionStatus.CONNECTED,
            last_sync=self._clock(),
        )
        return readings

    async def _refresh(self, user_id: str, device: ConnectedDevice) -> None:
        """Re-check the vendor binding, recording status and battery on the device."""
        adapter = self._adapter(device.device_type)
        try:
            result = await call_with_retry(
                lambda: adapter.refresh(device.device_id),
                self._options.retry,
                operation="refresh",
                user_id=user_id,
                device_id=device.device_id,
            )
        except DeviceConnectionError:
            await self._set_device(
                user_id, device.device_id, connection_status=ConnectionStatus.ERROR
            )
            raise
        if not result.success:
            await self._set_device(
                user_id, device.device_id, connection_status=ConnectionStatus.ERROR
            )
            raise DeviceConnectionError(
                result.error or f"{adapter.DISPLAY_NAME} could not refresh {device.device_id}",
                code="DEVICE_REFRESH_FAILED",
                user_id=user_id,
                device_id=device.device_id,
            )
        changes: dict[str, Any] = {"connection_status": result.status}
        if result.battery_level is not None:
            changes["battery_level"] = result.battery_level
        await self._set_device(user_id, device.device_id, **changes)

    async def sync_device_data(
        self, user_id: str, device_id: str, time_range: TimeRange | None = None
    ) -> SyncResult:
        """Pull new readings from one device into the user's live pipeline.

        Args:
            time_range: Defaults to everything since the last sync (or the
                        lookback window on the first sync).

        The device binding is refreshed before collecting.

        Raises:
            DeviceNotFoundError:   Unknown device.
            DeviceConnectionError: The refresh was rejected or the adapter
                                   failed after retries; the device is marked ERROR.
        """
        async with self._locks[user_id]:
            device = await self._get_device(user_id, device_id)
            await self._refresh(user_id, device)
            now = self._clock()
            if time_range is None:
                start = device.last_sync or now - timedelta(
                    minutes=self._options.sync_lookback_minutes
                )
                time_range = TimeRange(start=start, end=now)
            readings = await self._collect_from(user_id, device, time_range)

        channel = self._channels.get(user_id)
        if channel is not None:
            for reading in readings:
                channel.feed(reading)
        logger.debug("Synced %d reading(s) from %s", len(readings), device_id)
        return SyncResult(user_id=user_id, device_id=device_id, readings_collected=len(readings))

    async def ingest_reading(self, user_id: str, reading: BiometricReading) -> None:
        """Push path: queue one device-submitted reading for the live pipeline.

        Raises:
            DataValidationError: The reading belongs to another user.
            DeviceNotFoundError: The reading's device is not connected.
            StreamError:         No pipeline is running for the user.
        """
        if reading.user_id and reading.user_id != user_id:
            raise DataValidationError(
                f"Reading {reading.id} belongs to another user", user_id=user_id
            )
        await self._get_device(user_id, reading.device_id)
        self._channel_for(user_id).feed(reading)

    async def ingest_export(
        self, user_id: str, device_id: str, payload: dict
    ) -> list[BiometricReading]:
        """Buffer an uploaded HealthKit export and feed it to the live pipeline.

        Raises:
            DeviceNotFoundError: Unknown device.
            DataValidationError: The device does not accept uploads.
        """
        device = await self._get_device(user_id, device_id)
        adapter = self._adapter(device.device_type)
        if not isinstance(adapter, AppleWatchAdapter):
            raise DataValidationError(
                f"{adapter.DISPLAY_NAME} does not accept uploads",
                code="UNSUPPORTED_UPLOAD",
                user_id=user_id,
                device_id=device_id,
            )
        added = adapter.ingest_export(device_id, payload)
        channel = self._channels.get(user_id)
        if channel is not None:
            for reading in added:
                channel.feed(reading)
        return added

    # ------------------------------------------------------------------
    # Batch collection
    # ------------------------------------------------------------------

    async def collect_biometric_data(
        self, user_id: str, time_range: TimeRange
    ) -> list[BiometricReading]:
        """Pull readings from every connected device and release the compliant ones.

        Devices are queried concurrently.  A failing device is marked ERROR
        and skipped; if every device fails the error propagates.

        Returns:
            Validated, privacy-compliant readings sorted by timestamp.

        Raises:
            DeviceConnectionError: If all devices failed.
        """
        async with self._locks[user_id]:
            devices = await self.get_connected_devices(user_id)
            if not devices:
                return []
            results = await gather_limited(
                (self._collect_from(user_id, d, time_range) for d in devices),
                self._options.max_concurrent_devices,
            )

        raw: list[BiometricReading] = []
        failures: list[BaseException] = []
        for device, result in zip(devices, results):
            if isinstance(result, BaseException):
                logger.warning(
                    "Collect failed for device %s (user %s): %s", device.device_id, user_id, result
                )
                failures.append(result)
            else:
                raw.extend(result)
        if failures and len(failures) == len(devices):
            first = failures[0]
            if isinstance(first, BiometricServiceError):
                raise first
            raise DeviceConnectionError(
                f"All devices failed to collect: {first}", user_id=user_id
            ) from first

        released = await self._release(user_id, raw)
        released.sort(key=lambda r: r.timestamp)
        self._recent.add(user_id, released, self._clock())
        logger.info(
            "Collected %d reading(s) for user %s, released %d", len(raw), user_id, len(released)
        )
        return released

    async def _release(
        self, user_id: str, readings: list[BiometricReading]
    ) -> list[BiometricReading]:
        if self._options.privacy_before_validation:
            permitted = await self._privacy.apply_privacy_settings(user_id, readings)
            return self._validation.filter_valid(permitted)
        valid = self._validation.filter_valid(readings)
        return await self._privacy.apply_privacy_settings(user_id, valid)

    async def assess_data_quality(self, user_id: str) -> DataQualityAssessment:
        """Quality scores over the user's recent released readings."""
        return self._validation.assess_data_quality(self._recent.window(user_id, self._clock()))

    # ------------------------------------------------------------------
    # Live pipeline
    # ------------------------------------------------------------------

    def _channel_for(self, user_id: str) -> BroadcastChannel:
        channel = self._channels.get(user_id)
        if channel is None or channel.closed:
            raise StreamError(
                f"No active stream for user {user_id}",
                code="STREAM_NOT_ACTIVE",
                user_id=user_id,
            )
        return channel

    def _ensure_pipeline(self, user_id: str) -> None:
        task = self._pipelines.get(user_id)
        channel = self._channels.get(user_id)
        if task is not None and not task.done() and channel is not None and not channel.closed:
            return
        channel = BroadcastChannel(user_id, self._options.subscriber_buffer_size)
        self._channels[user_id] = channel
        self._pipelines[user_id] = asyncio.create_task(
            self._run_pipeline(user_id, channel), name=f"pipeline-{user_id}"
        )
        logger.info("Started pipeline for user %s", user_id)

    async def _stop_pipeline(self, user_id: str) -> None:
        channel = self._channels.pop(user_id, None)
        task = self._pipelines.pop(user_id, None)
        if channel is not None:
            channel.close()
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._processor.reset(user_id)
        logger.info("Stopped pipeline for user %s", user_id)

    async def _release_live(
        self, user_id: str, reading: BiometricReading
    ) -> BiometricReading | None:
        released = await self._release(user_id, [reading])
        if not released:
            return None
        self._recent.add(user_id, released, self._clock())
        return released[0]

    async def _baseline(self, user_id: str) -> BaselineMetrics:
        profile = await self._profiles.get(user_id)
        return profile.baseline if profile else BaselineMetrics()

    async def _run_pipeline(self, user_id: str, channel: BroadcastChannel) -> None:
        failures = 0
        while not channel.closed:
            try:
                async for processed in self._processor.process_stream(
                    user_id,
                    channel.readings(),
                    lambda: self._baseline(user_id),
                    release=lambda reading: self._release_live(user_id, reading),
                ):
                    channel.publish(StreamEvent.data(processed))
                return
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                failures += 1
                logger.exception(
                    "Pipeline failure %d for user %s", failures, user_id
                )
                if failures > self._options.stream_max_retries:
                    channel.close(
                        StreamEvent.error(user_id, f"Stream failed: {exc}", fatal=True)
                    )
                    return
                channel.publish(StreamEvent.error(user_id, f"Stream interrupted: {exc}"))

    def stream_biometric_data(self, user_id: str) -> AsyncIterator[StreamEvent]:
        """Subscribe to the user's live feed.

        The first event is always ``connected``.  Closing the iterator
        unsubscribes without affecting other subscribers or the pipeline.

        Raises:
            StreamError: If no device is connected for the user.
        """
        subscription = self._channel_for(user_id).subscribe()

        async def _events() -> AsyncIterator[StreamEvent]:
            try:
                yield StreamEvent.connected(user_id)
                async for event in subscription:
                    yield event
            finally:
                subscription.close()

        return _events()

    def is_streaming(self, user_id: str) -> bool:
        channel = self._channels.get(user_id)
        return channel is not None and not channel.closed

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    async def get_biometric_profile(self, user_id: str) -> BiometricProfile:
        profile = await self._profiles.get(user_id)
        if profile is None:
            raise ProfileNotFoundError(user_id)
        return profile

    async def update_biometric_profile(
        self, user_id: str, updates: dict[str, Any]
    ) -> BiometricProfile:
        """Merge baseline ``updates`` into the stored profile.

        Nested sections (``fatigue_indicators``, ``sleep_pattern``,
        ``activity_level``) are merged key by key.

        Raises:
            ProfileNotFoundError: No profile exists.
            DataValidationError:  Unknown keys or an inconsistent baseline.
        """
        known = {f.name for f in fields(BaselineMetrics)}
        unknown = sorted(set(updates) - known)
        if unknown:
            raise DataValidationError(
                f"Unknown baseline fields: {', '.join(unknown)}",
                code="INVALID_PROFILE",
                user_id=user_id,
            )

        def _merge(profile: BiometricProfile | None) -> BiometricProfile:
            if profile is None:
                raise ProfileNotFoundError(user_id)
            merged = profile.baseline.to_dict()
            for key, value in updates.items():
                if key in _PROFILE_SECTIONS and isinstance(value, dict):
                    merged[key] = {**merged[key], **value}
                else:
                    merged[key] = value
            try:
                baseline = BaselineMetrics.from_dict(merged)
            except (TypeError, ValueError) as exc:
                raise DataValidationError(
                    f"Invalid baseline: {exc}", code="INVALID_PROFILE", user_id=user_id
                ) from exc
            if not 0 < baseline.resting_heart_rate < baseline.max_heart_rate:
                raise DataValidationError(
                    "Resting heart rate must be positive and below max heart rate",
                    code="INVALID_PROFILE",
                    user_id=user_id,
                )
            return replace(profile, baseline=baseline, updated_at=self._clock())

        profile = await self._profiles.update(user_id, _merge)
        logger.info("Updated biometric profile for user %s", user_id)
        return profile

    # ------------------------------------------------------------------
    # Health metrics (read-only views over the recent window)
    # ------------------------------------------------------------------

    async def _metric_inputs(self, user_id: str) -> tuple[list[BiometricReading], BaselineMetrics]:
        profile = await self.get_biometric_profile(user_id)
        return self._recent.window(user_id, self._clock()), profile.baseline

    async def calculate_stress_level(self, user_id: str) -> metrics.StressMetrics:
        readings, baseline = await self._metric_inputs(user_id)
        return metrics.calculate_stress_level(readings, baseline)

    async def detect_fatigue(self, user_id: str) -> metrics.FatigueAssessment:
        readings, baseline = await self._metric_inputs(user_id)
        return metrics.detect_fatigue(readings, baseline)

    async def assess_wellness_score(self, user_id: str) -> metrics.WellnessScore:
        readings, baseline = await self._metric_inputs(user_id)
        return metrics.assess_wellness_score(readings, baseline, self._clock())

    async def analyze_heart_rate_variability(self, user_id: str) -> metrics.HRVAnalysis:
        readings, baseline = await self._metric_inputs(user_id)
        return metrics.analyze_heart_rate_variability(readings, baseline)

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    def get_active_alerts(self, user_id: str) -> list[WellnessAlert]:
        return self._processor.get_active_alerts(user_id)

    def acknowledge_alert(self, user_id: str, alert_id: str) -> None:
        """Raises BiometricServiceError (ALERT_NOT_FOUND) for unknown alerts."""
        if not self._processor.acknowledge_alert(user_id, alert_id):
            raise BiometricServiceError(
                f"Alert {alert_id} not found", code="ALERT_NOT_FOUND", user_id=user_id
            )

    def clear_acknowledged_alerts(self, user_id: str) -> int:
        return self._processor.clear_acknowledged_alerts(user_id)

    # ------------------------------------------------------------------
    # Team reporting
    # ------------------------------------------------------------------

    async def aggregate_team_data(
        self, team_id: str, user_ids: Iterable[str], time_range: TimeRange
    ) -> list[AnonymizedBiometricData]:
        """k-anonymous hourly aggregates over the members who opted in.

        Members are included only when their sharing level is team or
        organization and team aggregation is allowed.  A member whose
        devices all fail is skipped.
        """
        readings: list[BiometricReading] = []
        included = 0
        for user_id in user_ids:
            consent = await self._privacy.get_consent_settings(user_id)
            settings = await self._privacy.get_privacy_settings(user_id)
            if consent.sharing_level == SharingLevel.NONE or not settings.allow_team_aggregation:
                continue
            try:
                readings.extend(await self.collect_biometric_data(user_id, time_range))
            except DeviceConnectionError as exc:
                logger.warning("Team %s: skipped user %s: %s", team_id, user_id, exc)
                continue
            included += 1
        logger.info("Team %s: aggregating %d member(s)", team_id, included)
        return self._privacy.anonymize_for_team_reporting(team_id, readings)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def shutdown(self) -> None:
        """Stop sync loops and every pipeline, closing all subscriber streams."""
        await self._scheduler.cancel_all()
        for user_id in list(self._channels):
            await self._stop_pipeline(user_id)
        logger.info("Biometric service shut down")
