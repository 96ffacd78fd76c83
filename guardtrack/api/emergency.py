from fastapi import APIRouter, Depends, Request, status
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from guardtrack.api.auth import CurrentUser, require_roles
from guardtrack.core.emergency_alert import EmergencyService
from guardtrack.core.tenancy import (
    ensure_guard_access, get_company_scope, get_guard_for_user, guard_belongs_to_company
)
from guardtrack.database import SessionDep
from guardtrack.errors import NotFoundError, UnauthorizedError
from guardtrack.models.emergency import EmergencyAlert, EmergencyRequest, ResolveRequest
from guardtrack.models.user import User, UserRole

router = APIRouter()

async def _ensure_alert_access(
    db: AsyncSession,
    emergency_service: EmergencyService,
    user: User,
    alert_id: str
) -> EmergencyAlert:
    alert = await emergency_service.get_alert(db, alert_id)

    company_id = await get_company_scope(db, user)
    if company_id and not await guard_belongs_to_company(db, alert.guard_id, company_id):
        raise UnauthorizedError("Emergency alert does not belong to your company")

    return alert

@router.post("/alert", status_code=status.HTTP_201_CREATED)
async def trigger_emergency_alert(
    db: SessionDep,
    request: Request,
    emergency_data: EmergencyRequest,
    current_user: User = Depends(require_roles(UserRole.GUARD))
) -> dict[str, Any]:
    guard = await get_guard_for_user(db, current_user.id)
    if guard is None:
        raise NotFoundError("Guard profile not found")

    alert = await request.app.state.emergency_service.trigger(
        db,
        guard.id,
        emergency_data.type,
        emergency_data.severity,
        emergency_data.location,
        message=emergency_data.message,
        shift_id=emergency_data.shift_id
    )

    # Notify via WebSocket
    request.app.state.realtime.announce_emergency(alert)

    return {
        "success": True,
        "data": alert.to_wire(),
        "message": "Emergency alert triggered successfully"
    }

@router.post("/alert/{alert_id}/acknowledge")
async def acknowledge_emergency_alert(
    alert_id: str,
    db: SessionDep,
    request: Request,
    current_user: User = Depends(require_roles(UserRole.ADMIN, UserRole.CLIENT, UserRole.SUPER_ADMIN))
) -> dict[str, Any]:
    emergency_service = request.app.state.emergency_service
    await _ensure_alert_access(db, emergency_service, current_user, alert_id)

    alert = await emergency_service.acknowledge(db, alert_id, current_user.id)
    request.app.state.realtime.announce_alert_update("emergency_acknowledged", alert)

    return {
        "success": True,
        "data": alert.to_wire(),
        "message": "Emergency alert acknowledged"
    }

@router.post("/alert/{alert_id}/resolve")
async def resolve_emergency_alert(
    alert_id: str,
    db: SessionDep,
    request: Request,
    resolve_data: ResolveRequest,
    current_user: User = Depends(require_roles(UserRole.ADMIN, UserRole.SUPER_ADMIN))
) -> dict[str, Any]:
    emergency_service = request.app.state.emergency_service
    await _ensure_alert_access(db, emergency_service, current_user, alert_id)

    alert = await emergency_service.resolve(
        db, alert_id, current_user.id, resolve_data.resolution, resolve_data.status
    )
    request.app.state.realtime.announce_alert_update("emergency_resolved", alert)

    return {
        "success": True,
        "data": alert.to_wire(),
        "message": "Emergency alert resolved"
    }

@router.get("/alerts/active")
async def get_active_emergency_alerts(
    db: SessionDep,
    request: Request,
    current_user: User = Depends(require_roles(UserRole.ADMIN, UserRole.CLIENT, UserRole.SUPER_ADMIN))
) -> dict[str, Any]:
    company_id = await get_company_scope(db, current_user)

    alerts = await request.app.state.emergency_service.get_active(db, company_id)

    return {
        "success": True,
        "data": [alert.to_wire() for alert in alerts],
        "count": len(alerts)
    }

@router.get("/guard/{guard_id}/history")
async def get_guard_emergency_history(
    guard_id: str,
    db: SessionDep,
    request: Request,
    current_user: CurrentUser,
    limit: int = 50
) -> dict[str, Any]:
    # Guards only see their own history
    guard = await ensure_guard_access(db, current_user, guard_id)

    alerts = await request.app.state.emergency_service.get_history(db, guard.id, max(1, min(limit, 500)))

    return {
        "success": True,
        "data": [alert.to_wire() for alert in alerts],
        "count": len(alerts)
    }

@router.get("/statistics")
async def get_emergency_statistics(
    db: SessionDep,
    request: Request,
    startDate: Optional[datetime] = None,
    endDate: Optional[datetime] = None,
    current_user: User = Depends(require_roles(UserRole.ADMIN, UserRole.SUPER_ADMIN))
) -> dict[str, Any]:
    company_id = await get_company_scope(db, current_user)

    statistics = await request.app.state.emergency_service.get_statistics(db, startDate, endDate, company_id)

    return {"success": True, "data": statistics}
