from sqlmodel import SQLModel, Field, Column, DateTime
from pydantic import Field as WireField
from datetime import datetime
from typing import Optional
from enum import Enum

from guardtrack.models.base import CamelModel, utcnow, new_id

class EmergencyType(str, Enum):
    PANIC = "PANIC"
    MEDICAL = "MEDICAL"
    SECURITY = "SECURITY"
    FIRE = "FIRE"
    CUSTOM = "CUSTOM"

class EmergencySeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

class EmergencyStatus(str, Enum):
    ACTIVE = "ACTIVE"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    RESOLVED = "RESOLVED"
    FALSE_ALARM = "FALSE_ALARM"

class IncidentType(str, Enum):
    SECURITY_BREACH = "SECURITY_BREACH"
    MEDICAL_EMERGENCY = "MEDICAL_EMERGENCY"
    FIRE = "FIRE"
    OTHER = "OTHER"

class IncidentStatus(str, Enum):
    REPORTED = "REPORTED"
    INVESTIGATING = "INVESTIGATING"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"

INCIDENT_TYPE_FOR_EMERGENCY = {
    EmergencyType.PANIC: IncidentType.SECURITY_BREACH,
    EmergencyType.SECURITY: IncidentType.SECURITY_BREACH,
    EmergencyType.MEDICAL: IncidentType.MEDICAL_EMERGENCY,
    EmergencyType.FIRE: IncidentType.FIRE,
    EmergencyType.CUSTOM: IncidentType.OTHER,
}

EMERGENCY_STATUS_FOR_INCIDENT = {
    IncidentStatus.REPORTED: EmergencyStatus.ACTIVE,
    IncidentStatus.INVESTIGATING: EmergencyStatus.ACKNOWLEDGED,
    IncidentStatus.RESOLVED: EmergencyStatus.RESOLVED,
    IncidentStatus.CLOSED: EmergencyStatus.FALSE_ALARM,
}

INCIDENT_STATUS_FOR_EMERGENCY = {v: k for k, v in EMERGENCY_STATUS_FOR_INCIDENT.items()}

OPEN_INCIDENT_STATUSES = (IncidentStatus.REPORTED, IncidentStatus.INVESTIGATING)

class Incident(SQLModel, table=True):
    """Incident record; emergency alerts are incidents with is_emergency set"""

    id: str = Field(default_factory=new_id, primary_key=True)
    reported_by: str = Field(foreign_key="user.id", index=True)
    guard_id: Optional[str] = Field(default=None, foreign_key="guard.id", index=True)
    shift_id: Optional[str] = Field(default=None, foreign_key="shift.id")
    location_id: Optional[str] = Field(default=None, foreign_key="location.id")
    type: IncidentType
    emergency_type: Optional[EmergencyType] = None
    is_emergency: bool = False
    severity: EmergencySeverity
    title: str
    description: str = ""
    status: IncidentStatus = IncidentStatus.REPORTED
    accuracy: Optional[float] = None
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True)
    )
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True))
    )
    acknowledged_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True))
    )
    acknowledged_by: Optional[str] = None
    resolved_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True))
    )
    resolved_by: Optional[str] = None
    resolution: Optional[str] = None

# Wire schemas

class AlertLocation(CamelModel):
    latitude: float = WireField(ge=-90, le=90)
    longitude: float = WireField(ge=-180, le=180)
    accuracy: Optional[float] = None
    address: Optional[str] = None

class EmergencyAlert(CamelModel):
    id: str
    guard_id: str
    type: EmergencyType
    severity: EmergencySeverity
    location: AlertLocation
    message: Optional[str] = None
    status: EmergencyStatus
    created_at: datetime
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution: Optional[str] = None

class EmergencyRequest(CamelModel):
    type: EmergencyType
    severity: EmergencySeverity
    location: AlertLocation
    message: Optional[str] = None
    shift_id: Optional[str] = None

class ResolveRequest(CamelModel):
    resolution: str
    status: EmergencyStatus = EmergencyStatus.RESOLVED
