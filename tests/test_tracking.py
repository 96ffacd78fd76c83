from datetime import datetime, timedelta, timezone

import pytest
from sqlmodel import select

from guardtrack.errors import NotFoundError, ValidationError
from guardtrack.models.location import Location
from guardtrack.models.shift import Shift, ShiftStatus
from guardtrack.models.tracking import (
    GeofenceEvent, GeofenceEventCreate, GeofenceEventType, GeofenceState,
    LocationSampleCreate, TrackingRecord
)
from conftest import SITE_LAT, SITE_LON

T0 = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)

def sample(lat=SITE_LAT, lon=SITE_LON, accuracy=10.0, timestamp=None, **extra):
    return LocationSampleCreate(latitude=lat, longitude=lon, accuracy=accuracy, timestamp=timestamp, **extra)

async def test_record_location_persists_exact_fields(db, seed, tracking_service):
    record = await tracking_service.record_location(db, "g1", sample(timestamp=T0, battery_level=80))

    result = await db.execute(select(TrackingRecord))
    rows = result.scalars().all()

    assert len(rows) == 1
    assert rows[0].id == record.id
    assert rows[0].guard_id == "g1"
    assert rows[0].latitude == SITE_LAT
    assert rows[0].longitude == SITE_LON
    assert rows[0].accuracy == 10.0
    assert rows[0].battery_level == 80

async def test_record_location_accepts_user_id(db, seed, tracking_service):
    record = await tracking_service.record_location(db, "u-g1", sample())
    assert record.guard_id == "g1"

async def test_record_location_unknown_guard(db, seed, tracking_service):
    with pytest.raises(NotFoundError):
        await tracking_service.record_location(db, "nobody", sample())

    result = await db.execute(select(TrackingRecord))
    assert result.scalars().all() == []

@pytest.mark.parametrize("count, limit", [(5, 3), (2, 10), (4, 4)])
async def test_history_is_newest_first_and_capped(db, seed, tracking_service, count, limit):
    for i in range(count):
        await tracking_service.record_location(db, "g1", sample(timestamp=T0 + timedelta(minutes=i)))

    history = await tracking_service.get_history(db, "g1", limit=limit)

    assert len(history) == min(count, limit)
    timestamps = [record.timestamp for record in history]
    assert timestamps == sorted(timestamps, reverse=True)
    assert len(set(timestamps)) == len(timestamps)

async def test_history_date_range(db, seed, tracking_service):
    for i in range(5):
        await tracking_service.record_location(db, "g1", sample(timestamp=T0 + timedelta(hours=i)))

    history = await tracking_service.get_history(
        db, "g1", start_date=T0 + timedelta(hours=1), end_date=T0 + timedelta(hours=3)
    )
    assert len(history) == 3

async def test_latest_returns_most_recent_sample(db, seed, tracking_service):
    await tracking_service.record_location(db, "g1", sample(lat=1.0, timestamp=T0))
    await tracking_service.record_location(db, "g1", sample(lat=2.0, timestamp=T0 + timedelta(seconds=30)))

    latest = await tracking_service.get_latest(db, "g1")
    assert latest.latitude == 2.0

async def test_latest_without_samples_is_none(db, seed, tracking_service):
    assert await tracking_service.get_latest(db, "g2") is None

async def test_active_guards_locations_company_scoped(db, seed, tracking_service):
    await tracking_service.record_location(db, "g1", sample(timestamp=T0))
    await tracking_service.record_location(db, "g2", sample(lat=41.0, timestamp=T0))

    everyone = await tracking_service.get_active_guards_locations(db)
    company_a = await tracking_service.get_active_guards_locations(db, "company-a")

    assert {entry.guard_id for entry in everyone} == {"g1", "g2"}
    assert [entry.guard_id for entry in company_a] == ["g1"]
    assert company_a[0].guard_name == "Gary Guard"
    assert company_a[0].employee_id == "EMP-001"

async def test_active_guards_skips_guards_without_samples(db, seed, tracking_service):
    await tracking_service.record_location(db, "g1", sample())

    locations = await tracking_service.get_active_guards_locations(db)
    assert [entry.guard_id for entry in locations] == ["g1"]

async def test_real_time_snapshot_includes_shift_context(db, seed, tracking_service):
    await tracking_service.record_location(db, "g1", sample())
    await tracking_service.record_location(db, "g2", sample(lat=41.0))

    snapshot = await tracking_service.get_real_time_location_data(db)
    by_guard = {entry.guard_id: entry for entry in snapshot.guards}

    assert snapshot.count == 2
    assert by_guard["g1"].active_shift.shift_id == "shift1"
    assert by_guard["g1"].active_shift.site_name == "Harbor Towers"
    assert by_guard["g2"].active_shift is None

    wire = snapshot.to_wire()
    assert "activeShift" in wire["guards"][0]

async def test_record_and_query_geofence_events(db, seed, tracking_service):
    for i, event_type in enumerate([GeofenceEventType.ENTER, GeofenceEventType.EXIT]):
        await tracking_service.record_geofence_event(db, GeofenceEventCreate(
            guard_id="g1",
            geofence_id="site1",
            event_type=event_type,
            location={"latitude": SITE_LAT, "longitude": SITE_LON, "accuracy": 5.0},
            timestamp=T0 + timedelta(minutes=i)
        ))

    events = await tracking_service.get_geofence_events(db, "g1")
    assert [event.event_type for event in events] == [GeofenceEventType.EXIT, GeofenceEventType.ENTER]

    windowed = await tracking_service.get_geofence_events(db, "g1", start_date=T0 + timedelta(seconds=30))
    assert len(windowed) == 1

async def test_check_location_in_geofences(db, seed, tracking_service):
    inside = await tracking_service.check_location_in_geofences(db, "g1", SITE_LAT, SITE_LON)
    outside = await tracking_service.check_location_in_geofences(db, "g1", SITE_LAT + 0.01, SITE_LON)

    assert len(inside) == 1
    assert inside[0].site_id == "site1"
    assert inside[0].is_inside
    assert inside[0].distance_meters == 0
    assert not outside[0].is_inside

async def test_check_location_only_uses_open_shifts_with_a_site(db, seed, tracking_service):
    sites = [
        Location(id=f"site-{name}", name=name, latitude=SITE_LAT, longitude=SITE_LON, client_id="c1")
        for name in ("scheduled", "completed", "cancelled")
    ]
    shifts = [
        Shift(id="shift-scheduled", guard_id="g1", location_id="site-scheduled", status=ShiftStatus.SCHEDULED),
        Shift(id="shift-completed", guard_id="g1", location_id="site-completed", status=ShiftStatus.COMPLETED),
        Shift(id="shift-cancelled", guard_id="g1", location_id="site-cancelled", status=ShiftStatus.CANCELLED),
        Shift(id="shift-unsited", guard_id="g1", location_id=None, status=ShiftStatus.IN_PROGRESS),
    ]
    db.add_all([*sites, *shifts])
    await db.commit()

    checks = await tracking_service.check_location_in_geofences(db, "g1", SITE_LAT, SITE_LON)

    assert sorted(check.shift_id for check in checks) == ["shift-scheduled", "shift1"]
    assert sorted(check.site_id for check in checks) == ["site-scheduled", "site1"]

async def test_check_location_rejects_out_of_range_coordinates(db, seed, tracking_service):
    with pytest.raises(ValidationError) as exc_info:
        await tracking_service.check_location_in_geofences(db, "g1", 91.0, -181.0)

    assert "latitude" in exc_info.value.message
    assert "longitude" in exc_info.value.message

async def test_check_location_without_shifts(db, seed, tracking_service):
    assert await tracking_service.check_location_in_geofences(db, "g2", SITE_LAT, SITE_LON) == []

async def test_transition_detection(db, seed, tracking_service):
    entered = await tracking_service.detect_geofence_transitions(db, "g1", SITE_LAT, SITE_LON)
    assert [(e.geofence_id, e.event_type) for e in entered] == [("site1", GeofenceEventType.ENTER)]

    # Still inside: no new event
    assert await tracking_service.detect_geofence_transitions(db, "g1", SITE_LAT + 0.0001, SITE_LON) == []

    exited = await tracking_service.detect_geofence_transitions(db, "g1", SITE_LAT + 0.01, SITE_LON)
    assert [e.event_type for e in exited] == [GeofenceEventType.EXIT]

    result = await db.execute(select(GeofenceEvent).where(GeofenceEvent.guard_id == "g1"))
    assert len(result.scalars().all()) == 2

async def test_first_observation_outside_records_nothing(db, seed, tracking_service):
    events = await tracking_service.detect_geofence_transitions(db, "g1", SITE_LAT + 0.01, SITE_LON)
    assert events == []

    result = await db.execute(select(GeofenceState).where(GeofenceState.guard_id == "g1"))
    state = result.scalars().one()
    assert state.is_inside is False

async def test_analytics(db, seed, tracking_service):
    await tracking_service.record_location(db, "g1", sample(accuracy=5.0, timestamp=T0))
    await tracking_service.record_location(db, "g1", sample(accuracy=15.0, timestamp=T0 + timedelta(days=1)))
    await tracking_service.record_location(db, "g2", sample(accuracy=10.0, timestamp=T0 + timedelta(days=1)))

    analytics = await tracking_service.get_analytics(db)

    assert analytics.total_records == 3
    assert analytics.unique_guards_count == 2
    assert analytics.accuracy.avg == pytest.approx(10.0)
    assert analytics.accuracy.min == 5.0
    assert analytics.accuracy.max == 15.0
    assert analytics.records_per_day == {"2026-10-01": 1, "2026-10-02": 2}

    scoped = await tracking_service.get_analytics(db, company_id="company-a")
    assert scoped.total_records == 2

async def test_analytics_empty_period(db, seed, tracking_service):
    analytics = await tracking_service.get_analytics(db, start_date=T0)

    assert analytics.total_records == 0
    assert analytics.accuracy.avg is None
    assert analytics.records_per_day == {}

async def test_delete_old_records(db, seed, tracking_service):
    now = datetime.now(timezone.utc)
    await tracking_service.record_location(db, "g1", sample(timestamp=now - timedelta(days=45)))
    await tracking_service.record_location(db, "g1", sample(timestamp=now - timedelta(days=1)))

    assert await tracking_service.delete_old_records(db, days_to_keep=30) == {"deleted": 1}

    result = await db.execute(select(TrackingRecord))
    assert len(result.scalars().all()) == 1
