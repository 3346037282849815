from typing import Optional

from fastapi import APIRouter, HTTPException, Request

from shift_guardian.domain import AlertStatus
from shift_guardian.ingest import LocationEngine
from shift_guardian.logging_config import get_logger
from shift_guardian.payloads import (
    geofence_changes,
    geofence_from_payload,
    optional_int,
    ping_from_payload,
    required_int,
)

router = APIRouter()
logger = get_logger("api", "api.log")


def get_engine(request: Request) -> LocationEngine:
    return request.app.state.engine


def _alert_status(value: Optional[str]) -> Optional[AlertStatus]:
    if value is None or value == "":
        return None
    try:
        return AlertStatus(value.upper())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"unknown alert status {value!r}")


# ---------------------------------------------------
#                GPS TRACKING & LOCATION
# ---------------------------------------------------
@router.post("/driver/location")
async def submit_location(payload: dict, request: Request):
    engine = get_engine(request)
    ping = ping_from_payload(payload, default_timestamp=engine.clock())
    return await engine.submit_ping(ping)


@router.post("/driver/location/batch")
async def submit_location_batch(payload: dict, request: Request):
    locations = payload.get("locations")
    if not isinstance(locations, list):
        raise HTTPException(status_code=400, detail="Invalid locations array")

    results = await get_engine(request).submit_ping_batch(locations)

    items = []
    for r in results:
        item = {"success": r.success}
        if r.success:
            item["location"] = r.ping
        else:
            item["error"] = r.error
        items.append(item)

    successful = sum(1 for r in results if r.success)
    return {
        "processed": len(results),
        "successful": successful,
        "failed": len(results) - successful,
        "results": items,
    }


@router.get("/manager/driver-locations/{company_id}")
async def driver_locations(company_id: int, request: Request):
    locations = await get_engine(request).latest_locations(company_id)
    return [
        {**vars(loc.ping), "is_stagnant": loc.is_stagnant, "geofence_name": loc.geofence_name}
        for loc in locations
    ]


# ---------------------------------------------------
#                    GEOFENCING
# ---------------------------------------------------
@router.post("/geofences")
async def create_geofence(payload: dict, request: Request):
    return await get_engine(request).create_geofence(geofence_from_payload(payload))


@router.get("/geofences/{company_id}")
async def list_geofences(company_id: int, request: Request, active_only: bool = False):
    return await get_engine(request).list_geofences(company_id, active_only=active_only)


@router.patch("/geofences/{geofence_id}")
async def update_geofence(geofence_id: int, payload: dict, request: Request):
    company_id = required_int(payload, "companyId", "company_id")
    return await get_engine(request).update_geofence(company_id, geofence_id, geofence_changes(payload))


@router.delete("/geofences/{geofence_id}")
async def delete_geofence(geofence_id: int, company_id: int, request: Request):
    await get_engine(request).delete_geofence(company_id, geofence_id)
    return {"success": True}


# ---------------------------------------------------
#                STAGNATION ALERTS
# ---------------------------------------------------
@router.get("/stagnation-alerts/{company_id}")
async def list_stagnation_alerts(company_id: int, request: Request, status: Optional[str] = None):
    return await get_engine(request).emitter.list_alerts(company_id, _alert_status(status))


@router.patch("/stagnation-alerts/{alert_id}")
async def resolve_stagnation_alert(alert_id: int, payload: dict, request: Request):
    emitter = get_engine(request).emitter
    company_id = required_int(payload, "companyId", "company_id")
    status = _alert_status(payload.get("status")) or AlertStatus.ACKNOWLEDGED
    by = optional_int(payload, "acknowledgedBy", "acknowledged_by")
    notes = payload.get("resolutionNotes", payload.get("resolution_notes"))

    if status == AlertStatus.ACKNOWLEDGED:
        return await emitter.acknowledge(company_id, alert_id, by=by, notes=notes)
    if status == AlertStatus.DISMISSED:
        return await emitter.dismiss(company_id, alert_id, by=by, notes=notes)
    raise HTTPException(status_code=400, detail="status must be ACKNOWLEDGED or DISMISSED")


@router.post("/stagnation-alerts/{company_id}/dismiss-all")
async def dismiss_all_stagnation_alerts(company_id: int, request: Request):
    count = await get_engine(request).emitter.dismiss_all(company_id)
    return {"success": True, "dismissed": count}


# ---------------------------------------------------
#                    TIMESHEETS
# ---------------------------------------------------
@router.post("/timesheets/clock-in")
async def clock_in(payload: dict, request: Request):
    return await get_engine(request).timesheets.clock_in(
        required_int(payload, "companyId", "company_id"),
        required_int(payload, "driverId", "driver_id"),
        payload.get("depotName", payload.get("depot_name")),
        latitude=payload.get("latitude"),
        longitude=payload.get("longitude"),
    )


@router.post("/timesheets/clock-out")
async def clock_out(payload: dict, request: Request):
    return await get_engine(request).timesheets.clock_out(
        required_int(payload, "companyId", "company_id"),
        required_int(payload, "driverId", "driver_id"),
        latitude=payload.get("latitude"),
        longitude=payload.get("longitude"),
    )


@router.get("/timesheets/active/{company_id}/{driver_id}")
async def active_timesheet(company_id: int, driver_id: int, request: Request):
    return {"timesheet": await get_engine(request).timesheets.active_timesheet(company_id, driver_id)}


@router.get("/timesheets/{company_id}")
async def list_timesheets(company_id: int, request: Request, driver_id: Optional[int] = None):
    return await get_engine(request).timesheets.list_timesheets(company_id, driver_id)


@router.get("/health")
async def health():
    return {"ok": True}
