import os

# Must be set before guardtrack.config is imported anywhere
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("FCM_SERVER_KEY", "")
os.environ.setdefault("SMTP_HOST", "")

import asyncio
import json
from types import SimpleNamespace

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from guardtrack.core.emergency_alert import EmergencyService
from guardtrack.core.realtime import RealtimeService
from guardtrack.core.security import create_access_token
from guardtrack.core.tracking import TrackingService
from guardtrack.database import get_db
from guardtrack.models.location import Location
from guardtrack.models.shift import Shift, ShiftStatus
from guardtrack.models.user import (
    User, UserRole, Guard, GuardStatus, Client, SecurityCompany,
    CompanyUser, CompanyGuard, CompanyClient
)
from guardtrack.utils.notifications import NotificationManager
import guardtrack.models.tracking  # noqa: F401
import guardtrack.models.emergency  # noqa: F401
import guardtrack.models.notification  # noqa: F401

SITE_LAT = 40.7128
SITE_LON = -74.0060

@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield engine

    await engine.dispose()

@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session

@pytest.fixture
async def seed(db):
    """
    Two companies. Company A: admin1, admin1b, an inactive admin, guard g1
    (on duty, in-progress shift at site1) and client c1. Company B: admin2 and
    guard g2. Plus one SUPER_ADMIN.
    """
    company_a = SecurityCompany(id="company-a", name="Alpha Security")
    company_b = SecurityCompany(id="company-b", name="Bravo Security")

    users = [
        User(id="admin1", email="admin1@alpha.test", first_name="Ada", last_name="Admin", role=UserRole.ADMIN),
        User(id="admin1b", email="admin1b@alpha.test", first_name="Ben", last_name="Admin", role=UserRole.ADMIN),
        User(id="admin-off", email="off@alpha.test", first_name="Old", last_name="Admin", role=UserRole.ADMIN, is_active=False),
        User(id="admin2", email="admin2@bravo.test", first_name="Bea", last_name="Bravo", role=UserRole.ADMIN),
        User(id="root", email="root@guardtrack.test", first_name="Root", role=UserRole.SUPER_ADMIN),
        User(id="u-g1", email="g1@alpha.test", first_name="Gary", last_name="Guard", role=UserRole.GUARD),
        User(id="u-g2", email="g2@bravo.test", first_name="Gina", last_name="Guard", role=UserRole.GUARD),
        User(id="u-c1", email="c1@client.test", first_name="Cleo", last_name="Client", role=UserRole.CLIENT),
    ]
    guards = [
        Guard(id="g1", user_id="u-g1", employee_id="EMP-001", status=GuardStatus.ON_DUTY),
        Guard(id="g2", user_id="u-g2", employee_id="EMP-002", status=GuardStatus.ON_DUTY),
    ]
    client = Client(id="c1", user_id="u-c1", company_name="Harbor Towers")
    site = Location(id="site1", name="Harbor Towers", address="1 Harbor Way", latitude=SITE_LAT, longitude=SITE_LON, client_id="c1")
    shift = Shift(id="shift1", guard_id="g1", location_id="site1", client_id="c1", status=ShiftStatus.IN_PROGRESS)

    memberships = [
        CompanyUser(security_company_id="company-a", user_id="admin1"),
        CompanyUser(security_company_id="company-a", user_id="admin1b"),
        CompanyUser(security_company_id="company-a", user_id="admin-off"),
        CompanyUser(security_company_id="company-b", user_id="admin2"),
        CompanyGuard(security_company_id="company-a", guard_id="g1"),
        CompanyGuard(security_company_id="company-b", guard_id="g2"),
        CompanyClient(security_company_id="company-a", client_id="c1"),
    ]

    db.add_all([company_a, company_b, *users, *guards, client, site, shift, *memberships])
    await db.commit()

    return SimpleNamespace(
        company_a=company_a,
        company_b=company_b,
        users={user.id: user for user in users},
        g1=guards[0],
        g2=guards[1],
        client=client,
        site=site,
        shift=shift
    )

@pytest.fixture
def tracking_service():
    return TrackingService(geofence_radius=100.0)

@pytest.fixture
def emergency_service():
    return EmergencyService(NotificationManager())

@pytest.fixture
async def realtime(session_factory, tracking_service, emergency_service):
    service = RealtimeService(
        session_factory,
        tracking_service,
        emergency_service,
        auth_timeout=1.0,
        auto_geofence_transitions=True
    )
    yield service
    await service.stop()

def token_for(user_id: str) -> str:
    return create_access_token({"sub": user_id, "type": "access"})

def auth_headers(user_id: str) -> dict:
    return {"Authorization": f"Bearer {token_for(user_id)}"}

@pytest.fixture
async def client(session_factory, tracking_service, emergency_service, realtime):
    from guardtrack.main import app

    async def override_get_db():
        async with session_factory() as session:
            yield session

    saved = (app.state.tracking_service, app.state.emergency_service, app.state.realtime)
    app.dependency_overrides[get_db] = override_get_db
    app.state.tracking_service = tracking_service
    app.state.emergency_service = emergency_service
    app.state.realtime = realtime

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http

    app.dependency_overrides.clear()
    app.state.tracking_service, app.state.emergency_service, app.state.realtime = saved

class FakeWebSocket:
    """Queue-backed stand-in for a Starlette WebSocket"""

    def __init__(self):
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.sent: list = []
        self.accepted = False
        self.close_code = None

    async def accept(self):
        self.accepted = True

    async def receive(self) -> dict:
        frame = await self.inbound.get()
        if frame is None:
            return {"type": "websocket.disconnect", "code": 1000}
        if isinstance(frame, bytes):
            return {"type": "websocket.receive", "bytes": frame}
        return {"type": "websocket.receive", "text": frame}

    async def send_text(self, text: str):
        self.sent.append(json.loads(text))

    async def close(self, code: int = 1000):
        self.close_code = code

    def push(self, event: str, data: dict | None = None):
        self.inbound.put_nowait(json.dumps({"type": event, "data": data or {}}))

    def push_raw(self, frame: str | bytes):
        self.inbound.put_nowait(frame)

    def disconnect(self):
        self.inbound.put_nowait(None)

    def frames(self, event: str) -> list:
        return [frame["data"] for frame in self.sent if frame["type"] == event]

    async def wait_for(self, event: str, timeout: float = 2.0) -> dict:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            frames = self.frames(event)
            if frames:
                return frames[-1]
            await asyncio.sleep(0.01)
        raise AssertionError(f"no {event} frame received; got {[f['type'] for f in self.sent]}")
