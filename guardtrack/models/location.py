from sqlmodel import SQLModel, Field, Column, DateTime
from datetime import datetime
from typing import Optional
from enum import Enum

from guardtrack.models.base import utcnow, new_id

class LocationType(str, Enum):
    SITE = "SITE"
    INDOOR = "INDOOR"
    OUTDOOR = "OUTDOOR"

class Location(SQLModel, table=True):
    """Shared place table: client sites and emergency coordinates"""

    id: str = Field(default_factory=new_id, primary_key=True)
    name: str
    address: Optional[str] = None
    latitude: float
    longitude: float
    type: LocationType = LocationType.SITE
    description: Optional[str] = None
    client_id: Optional[str] = Field(default=None, foreign_key="client.id")
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True))
    )
