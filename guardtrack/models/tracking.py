from sqlmodel import SQLModel, Field, Column, DateTime
from sqlalchemy import UniqueConstraint
from pydantic import Field as WireField
from datetime import datetime
from typing import Optional
from enum import Enum

from guardtrack.models.base import CamelModel, utcnow, new_id

class GeofenceEventType(str, Enum):
    ENTER = "ENTER"
    EXIT = "EXIT"

# Location store (append-only)

class TrackingRecord(SQLModel, table=True):
    __tablename__ = "tracking_record"

    id: str = Field(default_factory=new_id, primary_key=True)
    guard_id: str = Field(foreign_key="guard.id", index=True)
    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    battery_level: Optional[int] = None
    timestamp: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True)
    )

class GeofenceEvent(SQLModel, table=True):
    __tablename__ = "geofence_event"

    id: str = Field(default_factory=new_id, primary_key=True)
    guard_id: str = Field(foreign_key="guard.id", index=True)
    geofence_id: str = Field(index=True)
    event_type: GeofenceEventType
    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    timestamp: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True)
    )

class GeofenceState(SQLModel, table=True):
    """Last known membership per (guard, geofence), used to derive ENTER/EXIT"""
    __tablename__ = "geofence_state"
    __table_args__ = (UniqueConstraint("guard_id", "geofence_id"),)

    id: str = Field(default_factory=new_id, primary_key=True)
    guard_id: str = Field(foreign_key="guard.id", index=True)
    geofence_id: str
    is_inside: bool
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True))
    )

# Wire schemas

class LocationSampleCreate(CamelModel):
    guard_id: Optional[str] = None
    latitude: float = WireField(ge=-90, le=90)
    longitude: float = WireField(ge=-180, le=180)
    accuracy: Optional[float] = WireField(default=None, ge=0)
    battery_level: Optional[int] = WireField(default=None, ge=0, le=100)
    timestamp: Optional[datetime] = None

class LocationSampleRead(CamelModel):
    id: str
    guard_id: str
    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    battery_level: Optional[int] = None
    timestamp: datetime

class EventPoint(CamelModel):
    latitude: float = WireField(ge=-90, le=90)
    longitude: float = WireField(ge=-180, le=180)
    accuracy: Optional[float] = None

class GeofenceEventCreate(CamelModel):
    guard_id: str
    geofence_id: str
    event_type: GeofenceEventType
    location: EventPoint
    timestamp: Optional[datetime] = None

class GeofenceEventRead(CamelModel):
    id: str
    guard_id: str
    geofence_id: str
    event_type: GeofenceEventType
    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    timestamp: datetime

class GeofenceCheckRequest(CamelModel):
    latitude: float = WireField(ge=-90, le=90)
    longitude: float = WireField(ge=-180, le=180)

class GeofenceCheck(CamelModel):
    shift_id: str
    site_id: str
    site_name: str
    distance_meters: float
    is_inside: bool

class ActiveGuardLocation(CamelModel):
    guard_id: str
    guard_name: str
    employee_id: Optional[str] = None
    location: LocationSampleRead

class AccuracyStats(CamelModel):
    avg: Optional[float] = None
    min: Optional[float] = None
    max: Optional[float] = None

class LocationAnalytics(CamelModel):
    total_records: int
    unique_guards_count: int
    accuracy: AccuracyStats
    records_per_day: dict[str, int]

class ShiftContext(CamelModel):
    shift_id: str
    status: str
    site_id: Optional[str] = None
    site_name: Optional[str] = None

class LiveGuardLocation(ActiveGuardLocation):
    active_shift: Optional[ShiftContext] = None

class LiveLocationSnapshot(CamelModel):
    guards: list[LiveGuardLocation]
    count: int
    timestamp: datetime
