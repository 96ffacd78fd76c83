import asyncio

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlmodel import SQLModel, select

from guardtrack.models.tracking import (
    GeofenceEvent, GeofenceEventType, GeofenceState, LocationSampleCreate, TrackingRecord
)
from conftest import SITE_LAT, SITE_LON

@pytest.fixture
async def engine(tmp_path):
    # Separate connections per session, so concurrent writers really race
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'guardtrack.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield engine

    await engine.dispose()

async def test_simultaneous_samples_for_one_guard_are_both_accepted(seed, realtime, session_factory):
    sample = LocationSampleCreate(latitude=SITE_LAT, longitude=SITE_LON)

    async def submit():
        async with session_factory() as db:
            return await realtime.process_location(db, "g1", sample)

    results = await asyncio.gather(submit(), submit(), return_exceptions=True)

    assert [type(result) for result in results] == [TrackingRecord, TrackingRecord]

    async with session_factory() as db:
        samples = (await db.execute(select(TrackingRecord))).scalars().all()
        states = (await db.execute(select(GeofenceState))).scalars().all()
        events = (await db.execute(select(GeofenceEvent))).scalars().all()

    assert len(samples) == 2
    assert [(state.geofence_id, state.is_inside) for state in states] == [("site1", True)]
    assert [event.event_type for event in events] == [GeofenceEventType.ENTER]

async def test_detection_retries_after_losing_the_state_race(seed, tracking_service, session_factory):
    async with session_factory() as first, session_factory() as second:
        results = await asyncio.gather(
            tracking_service.detect_geofence_transitions(first, "g1", SITE_LAT, SITE_LON),
            tracking_service.detect_geofence_transitions(second, "g1", SITE_LAT, SITE_LON)
        )

    assert sorted(len(events) for events in results) == [0, 1]
