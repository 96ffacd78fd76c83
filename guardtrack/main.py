from fastapi import FastAPI, Request, WebSocket, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import asyncio
import logging
from typing import Any
from datetime import datetime, timezone

from guardtrack.config import settings
from guardtrack.database import AsyncSessionLocal, create_db_and_tables
from guardtrack.api import auth, tracking, emergency
from guardtrack.core.emergency_alert import EmergencyService
from guardtrack.core.realtime import RealtimeService
from guardtrack.core.tracking import TrackingService
from guardtrack.errors import AppError
from guardtrack.utils.notifications import NotificationManager

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
)
logger = logging.getLogger(__name__)

# Services are built once and shared by the REST and realtime layers
tracking_service = TrackingService()
emergency_service = EmergencyService(NotificationManager())
realtime = RealtimeService(AsyncSessionLocal, tracking_service, emergency_service)

async def retention_sweep(interval_hours: float = settings.RETENTION_SWEEP_INTERVAL_HOURS):
    """Purge tracking records older than the retention window, forever"""
    while True:
        try:
            async with AsyncSessionLocal() as db:
                await tracking_service.delete_old_records(db, settings.TRACKING_RETENTION_DAYS)
        except Exception:
            logger.exception("Tracking retention sweep failed")
        await asyncio.sleep(interval_hours * 3600)

# Lifespan manager for startup/shutdown events
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    if settings.CREATE_TABLES_ON_STARTUP:
        await create_db_and_tables()
        logger.info("Database tables created")

    realtime.start_live_location_broadcast()
    sweep_task = asyncio.create_task(retention_sweep())
    logger.info("Application starting up")
    yield
    # Shutdown
    sweep_task.cancel()
    try:
        await sweep_task
    except asyncio.CancelledError:
        pass
    await realtime.stop()
    logger.info("Application shutting down")

app = FastAPI(
    title="GuardTrack Realtime API",
    description="Guard location tracking, geofencing and emergency alerting",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.message}
    )

@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "success": False,
            "message": "Validation failed",
            "errors": [
                {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
                for error in exc.errors()
            ]
        }
    )

# Include routers
app.include_router(auth.router, prefix="/api/auth", tags=["Authentication"])
app.include_router(tracking.router, prefix="/api/tracking", tags=["Tracking"])
app.include_router(emergency.router, prefix="/api/emergency", tags=["Emergency"])

@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await websocket.app.state.realtime.serve(websocket)

@app.get("/")
async def root():
    return {
        "message": "GuardTrack Realtime API",
        "status": "active",
        "version": "1.0.0",
        "timestamp": datetime.now(timezone.utc).isoformat()
    }

# Health check endpoint
@app.get("/health")
async def health_check(request: Request) -> dict[str, Any]:
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "connections": request.app.state.realtime.registry.get_connection_stats()
    }

# Make services available to the routers
app.state.tracking_service = tracking_service
app.state.emergency_service = emergency_service
app.state.realtime = realtime
