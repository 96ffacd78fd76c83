from sqlmodel import SQLModel, Field, Column, DateTime
from datetime import datetime
from typing import Optional
from enum import Enum

from guardtrack.models.base import utcnow, new_id

class UserRole(str, Enum):
    GUARD = "GUARD"
    CLIENT = "CLIENT"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"

class GuardStatus(str, Enum):
    ON_DUTY = "ON_DUTY"
    OFF_DUTY = "OFF_DUTY"
    ON_BREAK = "ON_BREAK"

class User(SQLModel, table=True):

    id: str = Field(default_factory=new_id, primary_key=True)
    email: str = Field(unique=True, index=True)
    first_name: str = ""
    last_name: str = ""
    role: UserRole
    is_active: bool = True
    push_token: Optional[str] = None
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True))
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

class Guard(SQLModel, table=True):

    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(foreign_key="user.id", unique=True, index=True)
    employee_id: Optional[str] = None
    status: GuardStatus = GuardStatus.OFF_DUTY

class Client(SQLModel, table=True):

    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(foreign_key="user.id", unique=True, index=True)
    company_name: Optional[str] = None

class SecurityCompany(SQLModel, table=True):
    __tablename__ = "security_company"

    id: str = Field(default_factory=new_id, primary_key=True)
    name: str
    is_active: bool = True

# Company memberships: the multi-tenant scoping boundary

class CompanyUser(SQLModel, table=True):
    __tablename__ = "company_user"

    id: str = Field(default_factory=new_id, primary_key=True)
    security_company_id: str = Field(foreign_key="security_company.id", index=True)
    user_id: str = Field(foreign_key="user.id", index=True)
    is_active: bool = True

class CompanyGuard(SQLModel, table=True):
    __tablename__ = "company_guard"

    id: str = Field(default_factory=new_id, primary_key=True)
    security_company_id: str = Field(foreign_key="security_company.id", index=True)
    guard_id: str = Field(foreign_key="guard.id", index=True)
    is_active: bool = True

class CompanyClient(SQLModel, table=True):
    __tablename__ = "company_client"

    id: str = Field(default_factory=new_id, primary_key=True)
    security_company_id: str = Field(foreign_key="security_company.id", index=True)
    client_id: str = Field(foreign_key="client.id", index=True)
    is_active: bool = True

class UserRead(SQLModel):
    id: str
    email: str
    first_name: str
    last_name: str
    role: UserRole
    is_active: bool
