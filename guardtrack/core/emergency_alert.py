import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select, desc, col

from guardtrack.core.tenancy import resolve_guard, get_guard_company_id, guard_belongs_to_company
from guardtrack.errors import NotFoundError, ValidationError, InvalidStateError
from guardtrack.models.emergency import (
    Incident, IncidentType, IncidentStatus, EmergencyAlert, AlertLocation,
    EmergencyType, EmergencySeverity, EmergencyStatus,
    INCIDENT_TYPE_FOR_EMERGENCY, EMERGENCY_STATUS_FOR_INCIDENT,
    INCIDENT_STATUS_FOR_EMERGENCY, OPEN_INCIDENT_STATUSES
)
from guardtrack.models.location import Location, LocationType
from guardtrack.models.notification import NotificationType, NotificationPriority
from guardtrack.models.shift import Shift, ShiftStatus
from guardtrack.models.user import User, UserRole, Guard, Client, CompanyUser, CompanyGuard
from guardtrack.utils.notifications import NotificationManager

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = (EmergencyStatus.RESOLVED, EmergencyStatus.FALSE_ALARM)

EMERGENCY_TYPE_FOR_INCIDENT = {
    IncidentType.SECURITY_BREACH: EmergencyType.SECURITY,
    IncidentType.MEDICAL_EMERGENCY: EmergencyType.MEDICAL,
    IncidentType.FIRE: EmergencyType.FIRE,
    IncidentType.OTHER: EmergencyType.CUSTOM,
}

class EmergencyService:
    """
    Lifecycle of emergency alerts and notification fan-out.

    Alerts are persisted as Incident rows; the service keeps no state of its
    own, so a single instance is shared by the REST and realtime layers.

    Status only moves forward: ACTIVE -> ACKNOWLEDGED -> RESOLVED | FALSE_ALARM,
    and RESOLVED/FALSE_ALARM may also be reached straight from ACTIVE.
    """

    def __init__(self, notification_manager: Optional[NotificationManager] = None):
        self.notification_manager = notification_manager or NotificationManager()

    async def trigger(
        self,
        db: AsyncSession,
        guard_id: str,
        alert_type: EmergencyType,
        severity: EmergencySeverity,
        location: AlertLocation,
        message: Optional[str] = None,
        shift_id: Optional[str] = None
    ) -> EmergencyAlert:
        # Unknown guard fails before anything is written
        guard = await resolve_guard(db, guard_id)
        user = await db.get(User, guard.user_id)

        shift, site = await self._find_shift(db, guard.id, shift_id)
        place = await self._find_or_create_location(db, alert_type, location)

        guard_name = user.full_name if user else guard.id
        incident = Incident(
            reported_by=guard.user_id,
            guard_id=guard.id,
            shift_id=shift.id if shift else None,
            location_id=place.id,
            type=INCIDENT_TYPE_FOR_EMERGENCY[alert_type],
            emergency_type=alert_type,
            is_emergency=True,
            severity=severity,
            title=f"EMERGENCY: {alert_type.value} Alert",
            description=message or f"Emergency {alert_type.value.lower()} alert triggered by {guard_name}",
            status=IncidentStatus.REPORTED,
            accuracy=location.accuracy
        )

        db.add(incident)
        await db.commit()

        alert = self._to_alert(incident, place)
        alert.location.address = location.address or place.address

        logger.critical(
            f"EMERGENCY ALERT: {alert_type.value}/{severity.value} - Guard: {guard_name} "
            f"({guard.employee_id or guard.id}) at {location.latitude}, {location.longitude}"
        )

        # The alert is already committed; a failed fan-out leaves it valid
        try:
            await self._notify_emergency_contacts(db, alert, guard, guard_name, shift, site)
        except Exception:
            await db.rollback()
            logger.exception(f"Emergency notification fan-out failed for alert {alert.id}")

        return alert

    async def acknowledge(self, db: AsyncSession, alert_id: str, acknowledged_by: str) -> EmergencyAlert:
        incident = await self._get_incident(db, alert_id)
        status = EMERGENCY_STATUS_FOR_INCIDENT[incident.status]

        if status in TERMINAL_STATUSES:
            raise InvalidStateError(f"Emergency alert is already {status.value}")

        if status == EmergencyStatus.ACKNOWLEDGED:
            # First acknowledgement wins
            logger.info(f"Emergency alert {alert_id} re-acknowledged by {acknowledged_by}")
            return await self._load_alert(db, incident)

        now = datetime.now(timezone.utc)
        incident.status = IncidentStatus.INVESTIGATING
        incident.acknowledged_at = now
        incident.acknowledged_by = acknowledged_by
        incident.updated_at = now

        db.add(incident)
        await db.commit()

        logger.info(f"Emergency alert {alert_id} acknowledged by {acknowledged_by}")
        return await self._load_alert(db, incident)

    async def resolve(
        self,
        db: AsyncSession,
        alert_id: str,
        resolved_by: str,
        resolution: str,
        outcome: EmergencyStatus = EmergencyStatus.RESOLVED
    ) -> EmergencyAlert:
        if not resolution or not resolution.strip():
            raise ValidationError("Resolution description is required")

        if outcome not in TERMINAL_STATUSES:
            raise ValidationError("Resolution status must be RESOLVED or FALSE_ALARM")

        incident = await self._get_incident(db, alert_id)
        status = EMERGENCY_STATUS_FOR_INCIDENT[incident.status]

        if status in TERMINAL_STATUSES:
            raise InvalidStateError(f"Emergency alert is already {status.value}")

        now = datetime.now(timezone.utc)
        incident.status = INCIDENT_STATUS_FOR_EMERGENCY[outcome]
        incident.resolved_at = now
        incident.resolved_by = resolved_by
        incident.resolution = resolution
        # Description keeps the original report; resolution is appended
        incident.description = f"{incident.description}\n\nResolution: {resolution}"
        incident.updated_at = now

        db.add(incident)
        await db.commit()

        logger.info(f"Emergency alert {alert_id} resolved by {resolved_by}: {outcome.value}")
        return await self._load_alert(db, incident)

    async def get_alert(self, db: AsyncSession, alert_id: str) -> EmergencyAlert:
        incident = await self._get_incident(db, alert_id)
        return await self._load_alert(db, incident)

    async def get_active(self, db: AsyncSession, company_id: Optional[str] = None) -> List[EmergencyAlert]:
        """Alerts still ACTIVE or ACKNOWLEDGED, newest first"""
        stmt = (
            select(Incident, Location)
            .outerjoin(Location, col(Location.id) == col(Incident.location_id))
            .where(
                Incident.is_emergency == True,
                col(Incident.status).in_(OPEN_INCIDENT_STATUSES)
            )
        )
        if company_id:
            stmt = stmt.where(col(Incident.guard_id).in_(self._company_guard_ids(company_id)))

        result = await db.execute(stmt.order_by(desc(Incident.created_at)))
        return [self._to_alert(incident, place) for incident, place in result.all()]

    async def get_history(
        self,
        db: AsyncSession,
        guard_id: str,
        limit: int = 50,
        company_id: Optional[str] = None
    ) -> List[EmergencyAlert]:
        guard = await resolve_guard(db, guard_id)

        if company_id and not await guard_belongs_to_company(db, guard.id, company_id):
            raise NotFoundError("Guard not found or does not belong to your company")

        result = await db.execute(
            select(Incident, Location)
            .outerjoin(Location, col(Location.id) == col(Incident.location_id))
            .where(
                Incident.is_emergency == True,
                Incident.guard_id == guard.id
            )
            .order_by(desc(Incident.created_at))
            .limit(limit)
        )
        return [self._to_alert(incident, place) for incident, place in result.all()]

    async def get_statistics(
        self,
        db: AsyncSession,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        company_id: Optional[str] = None
    ) -> Dict[str, Any]:
        active_alerts = await self.get_active(db, company_id)

        stmt = select(Incident).where(Incident.is_emergency == True)
        if start_date:
            stmt = stmt.where(Incident.created_at >= start_date)
        if end_date:
            stmt = stmt.where(Incident.created_at <= end_date)
        if company_id:
            stmt = stmt.where(col(Incident.guard_id).in_(self._company_guard_ids(company_id)))

        result = await db.execute(stmt)
        period_alerts = [self._to_alert(incident, None) for incident in result.scalars().all()]

        def count(alerts: List[EmergencyAlert], **match: Any) -> int:
            return sum(1 for alert in alerts if all(getattr(alert, k) == v for k, v in match.items()))

        return {
            "activeAlerts": len(active_alerts),
            "criticalAlerts": count(active_alerts, severity=EmergencySeverity.CRITICAL),
            "highAlerts": count(active_alerts, severity=EmergencySeverity.HIGH),
            "mediumAlerts": count(active_alerts, severity=EmergencySeverity.MEDIUM),
            "lowAlerts": count(active_alerts, severity=EmergencySeverity.LOW),
            "alertsByType": {
                alert_type.value.lower(): count(active_alerts, type=alert_type)
                for alert_type in EmergencyType
            },
            "totalAlerts": len(period_alerts),
            "alertsByStatus": {
                status.value: count(period_alerts, status=status)
                for status in EmergencyStatus
            },
        }

    async def _get_incident(self, db: AsyncSession, alert_id: str) -> Incident:
        incident = await db.get(Incident, alert_id)
        if incident is None or not incident.is_emergency:
            raise NotFoundError("Emergency alert not found")
        return incident

    async def _load_alert(self, db: AsyncSession, incident: Incident) -> EmergencyAlert:
        place = await db.get(Location, incident.location_id) if incident.location_id else None
        return self._to_alert(incident, place)

    def _to_alert(self, incident: Incident, place: Optional[Location]) -> EmergencyAlert:
        return EmergencyAlert(
            id=incident.id,
            guard_id=incident.guard_id or "",
            type=incident.emergency_type or EMERGENCY_TYPE_FOR_INCIDENT[incident.type],
            severity=incident.severity,
            location=AlertLocation(
                latitude=place.latitude if place else 0.0,
                longitude=place.longitude if place else 0.0,
                accuracy=incident.accuracy,
                address=place.address if place else None
            ),
            message=incident.description,
            status=EMERGENCY_STATUS_FOR_INCIDENT[incident.status],
            created_at=incident.created_at,
            acknowledged_at=incident.acknowledged_at,
            acknowledged_by=incident.acknowledged_by,
            resolved_at=incident.resolved_at,
            resolved_by=incident.resolved_by,
            resolution=incident.resolution
        )

    @staticmethod
    def _company_guard_ids(company_id: str):
        return select(CompanyGuard.guard_id).where(
            CompanyGuard.security_company_id == company_id,
            CompanyGuard.is_active == True
        )

    async def _find_shift(
        self,
        db: AsyncSession,
        guard_id: str,
        shift_id: Optional[str]
    ) -> Tuple[Optional[Shift], Optional[Location]]:
        """The explicitly named shift, otherwise the guard's in-progress shift"""
        stmt = select(Shift, Location).outerjoin(Location, col(Location.id) == col(Shift.location_id))
        if shift_id:
            stmt = stmt.where(Shift.id == shift_id, Shift.guard_id == guard_id)
        else:
            stmt = stmt.where(Shift.guard_id == guard_id, Shift.status == ShiftStatus.IN_PROGRESS)

        result = await db.execute(stmt.limit(1))
        row = result.first()
        if row is None:
            if shift_id:
                logger.warning(f"Shift {shift_id} not found for guard {guard_id}; alert has no site context")
            return None, None

        shift, site = row
        return shift, site

    async def _find_or_create_location(
        self,
        db: AsyncSession,
        alert_type: EmergencyType,
        location: AlertLocation
    ) -> Location:
        result = await db.execute(
            select(Location).where(
                Location.latitude == location.latitude,
                Location.longitude == location.longitude
            )
        )
        place = result.scalars().first()
        if place is not None:
            return place

        place = Location(
            name=f"Emergency Location - {alert_type.value}",
            address=location.address or f"Lat: {location.latitude}, Lng: {location.longitude}",
            latitude=location.latitude,
            longitude=location.longitude,
            type=LocationType.OUTDOOR,
            description=f"Emergency location for {alert_type.value} alert"
        )
        db.add(place)
        await db.flush()
        return place

    async def _admin_recipients(self, db: AsyncSession, company_id: str) -> List[str]:
        """Active admins of the guard's company"""
        stmt = (
            select(User.id)
            .join(CompanyUser, col(CompanyUser.user_id) == col(User.id))
            .where(
                User.role == UserRole.ADMIN,
                User.is_active == True,
                CompanyUser.security_company_id == company_id,
                CompanyUser.is_active == True
            )
        )

        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def _notify_emergency_contacts(
        self,
        db: AsyncSession,
        alert: EmergencyAlert,
        guard: Guard,
        guard_name: str,
        shift: Optional[Shift],
        site: Optional[Location]
    ):
        site_name = site.name if site else None
        client_id = (shift.client_id if shift else None) or (site.client_id if site else None)

        company_id = await get_guard_company_id(db, guard.id)
        recipients: List[str] = []
        if company_id is None:
            logger.warning(f"Guard {guard.id} not linked to a company - admin notifications skipped")
        else:
            recipients = await self._admin_recipients(db, company_id)

        if client_id:
            client = await db.get(Client, client_id)
            if client:
                recipients.append(client.user_id)

        if not recipients:
            logger.warning(f"No recipients for emergency alert {alert.id}")
            return

        location_text = alert.location.address or "GPS coordinates provided"
        at_site = f" at {site_name}" if site_name else ""

        await self.notification_manager.create_bulk_notifications(
            db,
            recipients,
            notification_type=NotificationType.EMERGENCY,
            title=f"EMERGENCY ALERT: {alert.type.value}{at_site}",
            message=(
                f"{guard_name} has triggered a {alert.severity.value.lower()} "
                f"{alert.type.value.lower()} alert{at_site}. Location: {location_text}"
            ),
            data={
                "alertId": alert.id,
                "guardId": alert.guard_id,
                "type": alert.type.value,
                "severity": alert.severity.value,
                "location": alert.location.to_wire(),
                "siteId": site.id if site else None,
                "siteName": site_name,
                "clientId": client_id,
            },
            priority=(
                NotificationPriority.URGENT
                if alert.severity == EmergencySeverity.CRITICAL
                else NotificationPriority.HIGH
            ),
            security_company_id=company_id
        )

        logger.info(f"Emergency notifications sent to {len(recipients)} recipient(s) for alert {alert.id}")
