"""Biometric endpoints: devices, readings, live stream, profile, metrics, consent, teams.

Every JSON endpoint answers ``{"success": true, "data": ...}``.  Pipeline
errors are raised as ``BiometricServiceError`` subclasses and rendered as
``{"error", "code"}`` by the handler registered in ``src.main``.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import datetime
from typing import Any, AsyncIterator

from fastapi import APIRouter, Query
from fastapi.responses import StreamingResponse

from src.biometrics.adapters import ADAPTER_REGISTRY
from src.biometrics.base import DataType, TimeRange, parse_timestamp
from src.dependencies import Service
from src.models.base import ok
from src.models.biometrics import (
    ComplianceReportRequest,
    ConsentUpdate,
    DeviceConnectRequest,
    DeviceSyncRequest,
    HealthKitUpload,
    PrivacySettingsUpdate,
    ProfileUpdate,
    ReadingIn,
    TeamAggregateRequest,
)

router = APIRouter(prefix="/biometrics", tags=["biometrics"])
logger = logging.getLogger("wellpulse.routers.biometrics")


# ---------- Device types ----------

@router.get("/device-types")
async def list_device_types() -> dict[str, Any]:
    return ok([
        {
            "device_type": device_type.value,
            "display_name": adapter_cls.DISPLAY_NAME,
            "capabilities": [dt.value for dt in adapter_cls.CAPABILITIES],
        }
        for device_type, adapter_cls in ADAPTER_REGISTRY.items()
    ])


# ---------- Devices ----------

@router.post("/{user_id}/devices", status_code=201)
async def connect_device(user_id: str, body: DeviceConnectRequest, service: Service) -> dict[str, Any]:
    device = await service.connect_device(user_id, body.device_type, body.to_credentials())
    return ok(device.to_dict())


@router.get("/{user_id}/devices")
async def list_devices(user_id: str, service: Service) -> dict[str, Any]:
    devices = await service.get_connected_devices(user_id)
    return ok([d.to_dict() for d in devices])


@router.delete("/{user_id}/devices/{device_id}")
async def disconnect_device(user_id: str, device_id: str, service: Service) -> dict[str, Any]:
    await service.disconnect_device(user_id, device_id)
    return ok({"device_id": device_id, "disconnected": True})


@router.post("/{user_id}/devices/{device_id}/sync")
async def sync_device(
    user_id: str, device_id: str, service: Service, body: DeviceSyncRequest | None = None
) -> dict[str, Any]:
    time_range = body.to_time_range() if body else None
    result = await service.sync_device_data(user_id, device_id, time_range)
    return ok(result.to_dict())


@router.post("/{user_id}/devices/{device_id}/healthkit", status_code=202)
async def upload_healthkit(
    user_id: str, device_id: str, body: HealthKitUpload, service: Service
) -> dict[str, Any]:
    added = await service.ingest_export(user_id, device_id, body.model_dump())
    return ok({"buffered": len(added)})


# ---------- Readings ----------

@router.post("/{user_id}/readings", status_code=202)
async def ingest_reading(user_id: str, body: ReadingIn, service: Service) -> dict[str, Any]:
    await service.ingest_reading(user_id, body.to_reading(user_id))
    return ok({"accepted": body.id})


@router.get("/{user_id}/readings")
async def collect_readings(
    user_id: str,
    service: Service,
    start_time: datetime = Query(...),
    end_time: datetime = Query(...),
) -> dict[str, Any]:
    time_range = TimeRange(start=parse_timestamp(start_time), end=parse_timestamp(end_time))
    readings = await service.collect_biometric_data(user_id, time_range)
    return ok([r.to_dict() for r in readings])


@router.get("/{user_id}/readings/quality")
async def readings_quality(user_id: str, service: Service) -> dict[str, Any]:
    assessment = await service.assess_data_quality(user_id)
    return ok(asdict(assessment))


@router.get("/{user_id}/stream")
async def stream_readings(user_id: str, service: Service) -> StreamingResponse:
    """Server-Sent Events feed of the user's processed readings."""
    events = service.stream_biometric_data(user_id)

    async def generate_stream() -> AsyncIterator[str]:
        try:
            async for event in events:
                yield event.to_sse()
        finally:
            await events.aclose()
            logger.debug("SSE client for user %s disconnected", user_id)

    return StreamingResponse(
        generate_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


# ---------- Profile ----------

@router.get("/{user_id}/profile")
async def get_profile(user_id: str, service: Service) -> dict[str, Any]:
    profile = await service.get_biometric_profile(user_id)
    return ok(profile.to_dict())


@router.patch("/{user_id}/profile")
async def update_profile(user_id: str, body: ProfileUpdate, service: Service) -> dict[str, Any]:
    profile = await service.update_biometric_profile(user_id, body.model_dump(exclude_none=True))
    return ok(profile.to_dict())


# ---------- Health metrics ----------

@router.get("/{user_id}/metrics/stress")
async def stress_level(user_id: str, service: Service) -> dict[str, Any]:
    return ok((await service.calculate_stress_level(user_id)).to_dict())


@router.get("/{user_id}/metrics/fatigue")
async def fatigue(user_id: str, service: Service) -> dict[str, Any]:
    return ok((await service.detect_fatigue(user_id)).to_dict())


@router.get("/{user_id}/metrics/wellness")
async def wellness(user_id: str, service: Service) -> dict[str, Any]:
    return ok((await service.assess_wellness_score(user_id)).to_dict())


@router.get("/{user_id}/metrics/hrv")
async def heart_rate_variability(user_id: str, service: Service) -> dict[str, Any]:
    return ok((await service.analyze_heart_rate_variability(user_id)).to_dict())


# ---------- Consent / privacy ----------

@router.get("/{user_id}/consent")
async def get_consent(user_id: str, service: Service) -> dict[str, Any]:
    consent = await service.privacy.get_consent_settings(user_id)
    return ok(consent.to_dict())


@router.patch("/{user_id}/consent")
async def update_consent(user_id: str, body: ConsentUpdate, service: Service) -> dict[str, Any]:
    consent = await service.privacy.update_consent_settings(
        user_id, body.model_dump(exclude_none=True)
    )
    return ok(consent.to_dict())


@router.get("/{user_id}/consent/{data_type}")
async def check_consent(user_id: str, data_type: DataType, service: Service) -> dict[str, Any]:
    allowed = await service.privacy.check_consent_status(user_id, data_type)
    return ok({"data_type": data_type.value, "consented": allowed})


@router.get("/{user_id}/privacy")
async def get_privacy(user_id: str, service: Service) -> dict[str, Any]:
    settings = await service.privacy.get_privacy_settings(user_id)
    return ok(asdict(settings))


@router.patch("/{user_id}/privacy")
async def update_privacy(
    user_id: str, body: PrivacySettingsUpdate, service: Service
) -> dict[str, Any]:
    settings = await service.privacy.update_privacy_settings(
        user_id, body.model_dump(exclude_none=True)
    )
    return ok(asdict(settings))


@router.get("/{user_id}/audit")
async def audit_log(
    user_id: str,
    service: Service,
    start_time: datetime | None = Query(default=None),
    end_time: datetime | None = Query(default=None),
) -> dict[str, Any]:
    entries = await service.privacy.get_audit_log(
        user_id, parse_timestamp(start_time), parse_timestamp(end_time)
    )
    return ok([e.to_dict() for e in entries])


# ---------- Alerts ----------

@router.get("/{user_id}/alerts")
async def active_alerts(user_id: str, service: Service) -> dict[str, Any]:
    return ok([a.to_dict() for a in service.get_active_alerts(user_id)])


@router.post("/{user_id}/alerts/{alert_id}/acknowledge")
async def acknowledge_alert(user_id: str, alert_id: str, service: Service) -> dict[str, Any]:
    service.acknowledge_alert(user_id, alert_id)
    return ok({"alert_id": alert_id, "acknowledged": True})


@router.delete("/{user_id}/alerts/acknowledged")
async def clear_acknowledged(user_id: str, service: Service) -> dict[str, Any]:
    return ok({"cleared": service.clear_acknowledged_alerts(user_id)})


# ---------- Teams ----------

@router.post("/teams/{team_id}/aggregate")
async def team_aggregate(team_id: str, body: TeamAggregateRequest, service: Service) -> dict[str, Any]:
    rows = await service.aggregate_team_data(team_id, body.user_ids, body.to_time_range())
    return ok([row.to_dict() for row in rows])


@router.post("/teams/{team_id}/compliance")
async def compliance_report(
    team_id: str, body: ComplianceReportRequest, service: Service
) -> dict[str, Any]:
    report = await service.privacy.generate_compliance_report(team_id, body.user_ids)
    return ok(report.to_dict())
