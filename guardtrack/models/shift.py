from sqlmodel import SQLModel, Field, Column, DateTime
from datetime import datetime
from typing import Optional
from enum import Enum

from guardtrack.models.base import new_id

class ShiftStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

# Shifts that count as geofence targets
OPEN_SHIFT_STATUSES = (ShiftStatus.SCHEDULED, ShiftStatus.IN_PROGRESS)

class Shift(SQLModel, table=True):

    id: str = Field(default_factory=new_id, primary_key=True)
    guard_id: str = Field(foreign_key="guard.id", index=True)
    location_id: Optional[str] = Field(default=None, foreign_key="location.id")
    client_id: Optional[str] = Field(default=None, foreign_key="client.id")
    status: ShiftStatus = ShiftStatus.SCHEDULED
    start_time: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True))
    )
    end_time: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True))
    )
