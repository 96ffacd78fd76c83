import logging
from datetime import datetime, timezone, timedelta
from typing import Dict, List, Optional

from sqlalchemy import delete, distinct
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select, desc, func, col

from guardtrack.config import settings
from guardtrack.core.geofencing import evaluate_geofence, validate_coordinates
from guardtrack.core.tenancy import resolve_guard
from guardtrack.errors import ValidationError
from guardtrack.models.location import Location
from guardtrack.models.shift import Shift, ShiftStatus, OPEN_SHIFT_STATUSES
from guardtrack.models.tracking import (
    TrackingRecord, GeofenceEvent, GeofenceState, GeofenceEventType,
    LocationSampleCreate, LocationSampleRead, GeofenceEventCreate, GeofenceCheck,
    ActiveGuardLocation, LiveGuardLocation, LiveLocationSnapshot, ShiftContext,
    LocationAnalytics, AccuracyStats
)
from guardtrack.models.user import Guard, GuardStatus, User, CompanyGuard

logger = logging.getLogger(__name__)

class TrackingService:
    """Durable recording and retrieval of guard locations and geofence events"""

    def __init__(self, geofence_radius: float = settings.GEOFENCE_RADIUS_METERS):
        self.geofence_radius = geofence_radius

    async def resolve_guard(self, db: AsyncSession, guard_ref: str) -> Guard:
        return await resolve_guard(db, guard_ref)

    async def record_location(
        self,
        db: AsyncSession,
        guard_ref: str,
        sample: LocationSampleCreate
    ) -> TrackingRecord:
        guard = await self.resolve_guard(db, guard_ref)

        record = TrackingRecord(
            guard_id=guard.id,
            latitude=sample.latitude,
            longitude=sample.longitude,
            accuracy=sample.accuracy,
            battery_level=sample.battery_level,
            timestamp=sample.timestamp or datetime.now(timezone.utc)
        )

        db.add(record)
        await db.commit()

        logger.debug(f"Location recorded for guard: {guard.id}")
        return record

    async def get_history(
        self,
        db: AsyncSession,
        guard_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: int = 100
    ) -> List[TrackingRecord]:
        """Newest first, at most `limit` records"""
        guard = await self.resolve_guard(db, guard_id)

        stmt = select(TrackingRecord).where(TrackingRecord.guard_id == guard.id)
        if start_date:
            stmt = stmt.where(TrackingRecord.timestamp >= start_date)
        if end_date:
            stmt = stmt.where(TrackingRecord.timestamp <= end_date)

        result = await db.execute(
            stmt.order_by(desc(TrackingRecord.timestamp)).limit(limit)
        )
        return list(result.scalars().all())

    async def get_latest(self, db: AsyncSession, guard_id: str) -> Optional[TrackingRecord]:
        guard = await self.resolve_guard(db, guard_id)
        return await self._latest_record(db, guard.id)

    async def _latest_record(self, db: AsyncSession, guard_id: str) -> Optional[TrackingRecord]:
        result = await db.execute(
            select(TrackingRecord)
            .where(TrackingRecord.guard_id == guard_id)
            .order_by(desc(TrackingRecord.timestamp))
            .limit(1)
        )
        return result.scalars().first()

    async def get_active_guards_locations(
        self,
        db: AsyncSession,
        company_id: Optional[str] = None
    ) -> List[ActiveGuardLocation]:
        """Latest sample for every on-duty guard; guards without samples are omitted"""
        stmt = (
            select(Guard, User)
            .join(User, col(User.id) == col(Guard.user_id))
            .where(Guard.status == GuardStatus.ON_DUTY)
        )
        if company_id:
            stmt = stmt.join(CompanyGuard, col(CompanyGuard.guard_id) == col(Guard.id)).where(
                CompanyGuard.security_company_id == company_id,
                CompanyGuard.is_active == True
            )

        result = await db.execute(stmt)

        locations: List[ActiveGuardLocation] = []
        for guard, user in result.all():
            latest = await self._latest_record(db, guard.id)
            if latest is None:
                continue

            locations.append(ActiveGuardLocation(
                guard_id=guard.id,
                guard_name=user.full_name,
                employee_id=guard.employee_id,
                location=LocationSampleRead.model_validate(latest)
            ))

        return locations

    async def get_real_time_location_data(
        self,
        db: AsyncSession,
        company_id: Optional[str] = None
    ) -> LiveLocationSnapshot:
        """Live snapshot: on-duty guards, their latest sample and in-progress shift"""
        active = await self.get_active_guards_locations(db, company_id)

        guards: List[LiveGuardLocation] = []
        for entry in active:
            shift_result = await db.execute(
                select(Shift, Location)
                .outerjoin(Location, col(Location.id) == col(Shift.location_id))
                .where(
                    Shift.guard_id == entry.guard_id,
                    Shift.status == ShiftStatus.IN_PROGRESS
                )
                .limit(1)
            )
            row = shift_result.first()

            shift_context = None
            if row is not None:
                shift, site = row
                shift_context = ShiftContext(
                    shift_id=shift.id,
                    status=shift.status.value,
                    site_id=site.id if site else None,
                    site_name=site.name if site else None
                )

            guards.append(LiveGuardLocation(**entry.model_dump(), active_shift=shift_context))

        return LiveLocationSnapshot(
            guards=guards,
            count=len(guards),
            timestamp=datetime.now(timezone.utc)
        )

    async def record_geofence_event(
        self,
        db: AsyncSession,
        event: GeofenceEventCreate
    ) -> GeofenceEvent:
        guard = await self.resolve_guard(db, event.guard_id)

        record = GeofenceEvent(
            guard_id=guard.id,
            geofence_id=event.geofence_id,
            event_type=event.event_type,
            latitude=event.location.latitude,
            longitude=event.location.longitude,
            accuracy=event.location.accuracy,
            timestamp=event.timestamp or datetime.now(timezone.utc)
        )

        db.add(record)
        await db.commit()

        logger.info(f"Geofence {event.event_type.value} recorded for guard {guard.id} at {event.geofence_id}")
        return record

    async def get_geofence_events(
        self,
        db: AsyncSession,
        guard_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> List[GeofenceEvent]:
        guard = await self.resolve_guard(db, guard_id)

        stmt = select(GeofenceEvent).where(GeofenceEvent.guard_id == guard.id)
        if start_date:
            stmt = stmt.where(GeofenceEvent.timestamp >= start_date)
        if end_date:
            stmt = stmt.where(GeofenceEvent.timestamp <= end_date)

        result = await db.execute(stmt.order_by(desc(GeofenceEvent.timestamp)))
        return list(result.scalars().all())

    async def check_location_in_geofences(
        self,
        db: AsyncSession,
        guard_id: str,
        latitude: float,
        longitude: float
    ) -> List[GeofenceCheck]:
        """
        Point-in-time membership check against the sites of the guard's
        scheduled and in-progress shifts. Shifts without a location are skipped.
        """
        coordinates = validate_coordinates(latitude, longitude)
        if not coordinates["valid"]:
            raise ValidationError("; ".join(coordinates["errors"]))

        guard = await self.resolve_guard(db, guard_id)

        result = await db.execute(
            select(Shift, Location)
            .join(Location, col(Location.id) == col(Shift.location_id))
            .where(
                Shift.guard_id == guard.id,
                col(Shift.status).in_(OPEN_SHIFT_STATUSES)
            )
        )

        checks: List[GeofenceCheck] = []
        for shift, site in result.all():
            geofence = evaluate_geofence(
                (latitude, longitude),
                (site.latitude, site.longitude),
                self.geofence_radius
            )
            checks.append(GeofenceCheck(
                shift_id=shift.id,
                site_id=site.id,
                site_name=site.name,
                distance_meters=geofence.distance_meters,
                is_inside=geofence.is_inside
            ))

        return checks

    async def detect_geofence_transitions(
        self,
        db: AsyncSession,
        guard_id: str,
        latitude: float,
        longitude: float,
        accuracy: Optional[float] = None,
        timestamp: Optional[datetime] = None
    ) -> List[GeofenceEvent]:
        """
        Compare the current checks with the last known state per site and
        record an ENTER or EXIT event for every change. The first observation
        of a site only produces an event when the guard is inside it.
        """
        guard = await self.resolve_guard(db, guard_id)
        guard_id = guard.id
        checks = await self.check_location_in_geofences(db, guard_id, latitude, longitude)

        # Several shifts may share a site
        membership: Dict[str, bool] = {}
        for check in checks:
            membership[check.site_id] = membership.get(check.site_id, False) or check.is_inside

        try:
            events = await self._apply_transitions(db, guard_id, membership, latitude, longitude, accuracy, timestamp)
        except IntegrityError:
            # A concurrent sample created the same state row first; re-read it
            await db.rollback()
            logger.debug(f"Geofence state race for guard {guard_id}, retrying")
            events = await self._apply_transitions(db, guard_id, membership, latitude, longitude, accuracy, timestamp)

        for event in events:
            logger.info(f"Geofence {event.event_type.value} detected for guard {guard_id} at {event.geofence_id}")

        return events

    async def _apply_transitions(
        self,
        db: AsyncSession,
        guard_id: str,
        membership: Dict[str, bool],
        latitude: float,
        longitude: float,
        accuracy: Optional[float],
        timestamp: Optional[datetime]
    ) -> List[GeofenceEvent]:
        now = datetime.now(timezone.utc)
        events: List[GeofenceEvent] = []

        for site_id, is_inside in membership.items():
            state_result = await db.execute(
                select(GeofenceState).where(
                    GeofenceState.guard_id == guard_id,
                    GeofenceState.geofence_id == site_id
                )
            )
            state = state_result.scalars().first()

            if state is None:
                db.add(GeofenceState(guard_id=guard_id, geofence_id=site_id, is_inside=is_inside))
                if not is_inside:
                    continue
            elif state.is_inside == is_inside:
                continue
            else:
                state.is_inside = is_inside
                state.updated_at = now
                db.add(state)

            event = GeofenceEvent(
                guard_id=guard_id,
                geofence_id=site_id,
                event_type=GeofenceEventType.ENTER if is_inside else GeofenceEventType.EXIT,
                latitude=latitude,
                longitude=longitude,
                accuracy=accuracy,
                timestamp=timestamp or now
            )
            db.add(event)
            events.append(event)

        await db.commit()
        return events

    async def get_analytics(
        self,
        db: AsyncSession,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        company_id: Optional[str] = None
    ) -> LocationAnalytics:
        conditions = []
        if company_id:
            conditions.append(col(TrackingRecord.guard_id).in_(
                select(CompanyGuard.guard_id).where(
                    CompanyGuard.security_company_id == company_id,
                    CompanyGuard.is_active == True
                )
            ))
        if start_date:
            conditions.append(TrackingRecord.timestamp >= start_date)
        if end_date:
            conditions.append(TrackingRecord.timestamp <= end_date)

        total_result = await db.execute(
            select(func.count(TrackingRecord.id)).where(*conditions)
        )
        unique_result = await db.execute(
            select(func.count(distinct(TrackingRecord.guard_id))).where(*conditions)
        )
        accuracy_result = await db.execute(
            select(
                func.avg(TrackingRecord.accuracy),
                func.min(TrackingRecord.accuracy),
                func.max(TrackingRecord.accuracy)
            ).where(*conditions)
        )
        avg_accuracy, min_accuracy, max_accuracy = accuracy_result.one()

        day = func.date(TrackingRecord.timestamp)
        daily_result = await db.execute(
            select(day, func.count(TrackingRecord.id))
            .where(*conditions)
            .group_by(day)
            .order_by(day)
        )

        return LocationAnalytics(
            total_records=total_result.scalar_one() or 0,
            unique_guards_count=unique_result.scalar_one() or 0,
            accuracy=AccuracyStats(
                avg=float(avg_accuracy) if avg_accuracy is not None else None,
                min=float(min_accuracy) if min_accuracy is not None else None,
                max=float(max_accuracy) if max_accuracy is not None else None
            ),
            records_per_day={str(day_value): count for day_value, count in daily_result.all()}
        )

    async def delete_old_records(
        self,
        db: AsyncSession,
        days_to_keep: int = settings.TRACKING_RETENTION_DAYS
    ) -> Dict[str, int]:
        """Retention purge of the location store"""
        cutoff = datetime.now(timezone.utc) - timedelta(days=days_to_keep)

        result = await db.execute(
            delete(TrackingRecord)
            .where(col(TrackingRecord.timestamp) < cutoff)
            .execution_options(synchronize_session=False)
        )
        await db.commit()

        deleted = result.rowcount or 0
        logger.info(f"Deleted {deleted} old tracking records")

        return {"deleted": deleted}
