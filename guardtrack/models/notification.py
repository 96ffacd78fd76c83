from sqlmodel import SQLModel, Field, Column, DateTime
from sqlalchemy import JSON
from datetime import datetime
from typing import Any, Optional
from enum import Enum

from guardtrack.models.base import utcnow, new_id

class NotificationType(str, Enum):
    EMERGENCY = "EMERGENCY"
    INCIDENT = "INCIDENT"
    SHIFT = "SHIFT"
    SYSTEM = "SYSTEM"

class NotificationPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"

class Notification(SQLModel, table=True):

    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(foreign_key="user.id", index=True)
    security_company_id: Optional[str] = Field(default=None, foreign_key="security_company.id")
    type: NotificationType
    title: str
    message: str
    data: Optional[dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    priority: NotificationPriority = NotificationPriority.NORMAL
    is_read: bool = False
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True))
    )
