from fastapi import APIRouter, Depends, Request, status
from datetime import datetime
from typing import Any, Optional

from guardtrack.api.auth import CurrentUser, require_roles
from guardtrack.core.tenancy import ensure_guard_access, get_company_scope, get_guard_for_user
from guardtrack.database import SessionDep
from guardtrack.errors import ValidationError
from guardtrack.models.tracking import (
    LocationSampleCreate, LocationSampleRead, GeofenceEventCreate, GeofenceEventRead,
    GeofenceCheckRequest
)
from guardtrack.models.user import User, UserRole

router = APIRouter()

DASHBOARD_ROLES = (UserRole.ADMIN, UserRole.CLIENT, UserRole.SUPER_ADMIN)

@router.post("/location", status_code=status.HTTP_201_CREATED)
async def record_location(
    db: SessionDep,
    request: Request,
    sample: LocationSampleCreate,
    current_user: CurrentUser
) -> dict[str, Any]:
    if sample.guard_id:
        guard = await ensure_guard_access(db, current_user, sample.guard_id)
    else:
        # Guards may omit their own id
        guard = await get_guard_for_user(db, current_user.id)
        if guard is None:
            raise ValidationError("guardId is required")

    record = await request.app.state.realtime.process_location(db, guard.id, sample)

    return {
        "success": True,
        "data": LocationSampleRead.model_validate(record).to_wire(),
        "message": "Location recorded successfully"
    }

@router.get("/guard/{guard_id}/history")
async def get_guard_tracking_history(
    guard_id: str,
    db: SessionDep,
    request: Request,
    current_user: CurrentUser,
    startDate: Optional[datetime] = None,
    endDate: Optional[datetime] = None,
    limit: int = 100
) -> dict[str, Any]:
    guard = await ensure_guard_access(db, current_user, guard_id)

    records = await request.app.state.tracking_service.get_history(
        db, guard.id, startDate, endDate, max(1, min(limit, 1000))
    )

    return {
        "success": True,
        "data": [LocationSampleRead.model_validate(r).to_wire() for r in records],
        "count": len(records)
    }

@router.get("/guard/{guard_id}/latest")
async def get_latest_location(
    guard_id: str,
    db: SessionDep,
    request: Request,
    current_user: CurrentUser
) -> dict[str, Any]:
    guard = await ensure_guard_access(db, current_user, guard_id)

    record = await request.app.state.tracking_service.get_latest(db, guard.id)

    return {
        "success": True,
        "data": LocationSampleRead.model_validate(record).to_wire() if record else None
    }

@router.get("/active-locations")
async def get_active_guards_locations(
    db: SessionDep,
    request: Request,
    current_user: User = Depends(require_roles(*DASHBOARD_ROLES))
) -> dict[str, Any]:
    company_id = await get_company_scope(db, current_user)

    locations = await request.app.state.tracking_service.get_active_guards_locations(db, company_id)

    return {
        "success": True,
        "data": [location.to_wire() for location in locations],
        "count": len(locations)
    }

@router.get("/live-locations")
async def get_real_time_location_data(
    db: SessionDep,
    request: Request,
    current_user: User = Depends(require_roles(*DASHBOARD_ROLES))
) -> dict[str, Any]:
    company_id = await get_company_scope(db, current_user)

    snapshot = await request.app.state.tracking_service.get_real_time_location_data(db, company_id)

    return {"success": True, "data": snapshot.to_wire()}

@router.post("/geofence-event", status_code=status.HTTP_201_CREATED)
async def record_geofence_event(
    db: SessionDep,
    request: Request,
    event: GeofenceEventCreate,
    current_user: CurrentUser
) -> dict[str, Any]:
    guard = await ensure_guard_access(db, current_user, event.guard_id)
    event.guard_id = guard.id

    record = await request.app.state.tracking_service.record_geofence_event(db, event)
    request.app.state.realtime.announce_geofence_event(record)

    return {
        "success": True,
        "data": GeofenceEventRead.model_validate(record).to_wire(),
        "message": "Geofence event recorded successfully"
    }

@router.get("/guard/{guard_id}/geofence-events")
async def get_geofence_events(
    guard_id: str,
    db: SessionDep,
    request: Request,
    current_user: CurrentUser,
    startDate: Optional[datetime] = None,
    endDate: Optional[datetime] = None
) -> dict[str, Any]:
    guard = await ensure_guard_access(db, current_user, guard_id)

    events = await request.app.state.tracking_service.get_geofence_events(db, guard.id, startDate, endDate)

    return {
        "success": True,
        "data": [GeofenceEventRead.model_validate(e).to_wire() for e in events],
        "count": len(events)
    }

@router.post("/check-geofence/{guard_id}")
async def check_location_in_geofences(
    guard_id: str,
    db: SessionDep,
    request: Request,
    point: GeofenceCheckRequest,
    current_user: CurrentUser
) -> dict[str, Any]:
    guard = await ensure_guard_access(db, current_user, guard_id)

    checks = await request.app.state.tracking_service.check_location_in_geofences(
        db, guard.id, point.latitude, point.longitude
    )

    return {
        "success": True,
        "data": [check.to_wire() for check in checks],
        "count": len(checks)
    }

@router.get("/analytics")
async def get_location_analytics(
    db: SessionDep,
    request: Request,
    startDate: Optional[datetime] = None,
    endDate: Optional[datetime] = None,
    current_user: User = Depends(require_roles(UserRole.ADMIN, UserRole.SUPER_ADMIN))
) -> dict[str, Any]:
    company_id = await get_company_scope(db, current_user)

    analytics = await request.app.state.tracking_service.get_analytics(db, startDate, endDate, company_id)

    return {"success": True, "data": analytics.to_wire()}
