from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, Index
from sqlmodel import Field, SQLModel

from trailguard.domain.permissions import Role
from trailguard.domain.state_machine import CredentialStatus, IncidentStatus, PermitStatus


def now_utc() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; every stored instant is UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class EventRecord(SQLModel, table=True):
    __tablename__ = "events"

    event_id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    event_type: str = Field(index=True)
    ts: datetime = Field(default_factory=now_utc, index=True)
    actor_id: str | None = Field(default=None, index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    actor_id: str | None = Field(default=None, index=True)
    action: str
    resource: str
    method: str
    status_code: int
    ts: datetime = Field(default_factory=now_utc, index=True)
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    email: str = Field(index=True, unique=True)
    password_hash: str
    full_name: str
    role: Role = Field(index=True)
    is_active: bool = Field(default=True, index=True)
    agency_id: str | None = Field(default=None, foreign_key="agencies.id", index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class Agency(SQLModel, table=True):
    __tablename__ = "agencies"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(index=True)
    registration_number: str = Field(index=True, unique=True)
    license_number: str = Field(index=True, unique=True)
    contact_email: str
    contact_phone: str
    address: str = ""
    status: CredentialStatus = Field(default=CredentialStatus.PENDING, index=True)
    license_expiry: datetime | None = Field(default=None, index=True)
    verified_at: datetime | None = None
    verified_by: str | None = None
    status_changed_at: datetime | None = None
    status_changed_by: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class Guide(SQLModel, table=True):
    __tablename__ = "guides"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    user_id: str = Field(foreign_key="users.id", index=True, unique=True)
    agency_id: str | None = Field(default=None, foreign_key="agencies.id", index=True)
    license_number: str = Field(index=True, unique=True)
    phone_number: str
    emergency_contact: str
    status: CredentialStatus = Field(default=CredentialStatus.PENDING, index=True)
    license_expiry: datetime | None = Field(default=None, index=True)
    verified_at: datetime | None = None
    verified_by: str | None = None
    status_changed_at: datetime | None = None
    status_changed_by: str | None = None
    last_check_in: datetime | None = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class Permit(SQLModel, table=True):
    __tablename__ = "permits"
    __table_args__ = (Index("ix_permits_guide_status", "guide_id", "status"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    permit_number: str = Field(index=True, unique=True)
    guide_id: str = Field(foreign_key="guides.id", index=True)
    client_id: str | None = None
    client_name: str
    client_email: str = ""
    client_phone: str = ""
    start_date: datetime = Field(index=True)
    end_date: datetime = Field(index=True)
    route: str
    status: PermitStatus = Field(default=PermitStatus.ACTIVE, index=True)
    validation_token: str
    issued_by: str
    issued_at: datetime = Field(default_factory=now_utc)
    revoked_at: datetime | None = None
    revoked_by: str | None = None
    updated_at: datetime = Field(default_factory=now_utc)


class IncidentType(StrEnum):
    CHECK_IN = "check_in"
    SOS = "sos"
    MEDICAL = "medical"
    WEATHER = "weather"
    OTHER = "other"


class SafetyCheckIn(SQLModel, table=True):
    __tablename__ = "safety_check_ins"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    guide_id: str = Field(foreign_key="guides.id", index=True)
    permit_id: str | None = Field(default=None, foreign_key="permits.id", index=True)
    latitude: float
    longitude: float
    location: str = ""
    notes: str = ""
    check_in_time: datetime = Field(default_factory=now_utc, index=True)


class Incident(SQLModel, table=True):
    __tablename__ = "incidents"
    __table_args__ = (Index("ix_incidents_guide_type_status", "guide_id", "incident_type", "status"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    incident_type: IncidentType = Field(index=True)
    guide_id: str = Field(foreign_key="guides.id", index=True)
    permit_id: str | None = Field(default=None, foreign_key="permits.id", index=True)
    status: IncidentStatus = Field(default=IncidentStatus.OPEN, index=True)
    latitude: float
    longitude: float
    location: str = ""
    description: str
    reported_at: datetime = Field(default_factory=now_utc, index=True)
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    resolution_notes: str = ""
    updated_at: datetime = Field(default_factory=now_utc)


class EventEnvelope(BaseModel):
    event_id: str = PydanticField(default_factory=lambda: str(uuid4()))
    event_type: str
    ts: datetime = PydanticField(default_factory=now_utc)
    actor_id: str | None = None
    payload: dict[str, Any]


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class LoginRequest(BaseModel):
    email: str
    password: str


class RefreshRequest(BaseModel):
    refresh_token: str


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class BootstrapAdminRequest(BaseModel):
    email: str
    password: str
    full_name: str


class UserCreate(BaseModel):
    email: str
    password: str
    full_name: str
    role: Role
    agency_id: str | None = None


class UserRead(ORMReadModel):
    id: str
    email: str
    full_name: str
    role: Role
    is_active: bool
    agency_id: str | None
    created_at: datetime


class AgencyCreate(BaseModel):
    name: str
    registration_number: str
    license_number: str
    contact_email: str
    contact_phone: str
    address: str = ""
    license_expiry: datetime | None = None


class AgencyUpdate(BaseModel):
    name: str | None = None
    contact_email: str | None = None
    contact_phone: str | None = None
    address: str | None = None
    license_expiry: datetime | None = None


class AgencyRead(ORMReadModel):
    id: str
    name: str
    registration_number: str
    license_number: str
    contact_email: str
    contact_phone: str
    address: str
    status: CredentialStatus
    license_expiry: datetime | None
    verified_at: datetime | None
    verified_by: str | None
    status_changed_at: datetime | None
    status_changed_by: str | None
    created_at: datetime


class GuideCreate(BaseModel):
    user_id: str
    license_number: str
    phone_number: str
    emergency_contact: str
    agency_id: str | None = None
    license_expiry: datetime | None = None


class GuideUpdate(BaseModel):
    phone_number: str | None = None
    emergency_contact: str | None = None
    license_expiry: datetime | None = None
    agency_id: str | None = None


class GuideRead(ORMReadModel):
    id: str
    user_id: str
    agency_id: str | None
    license_number: str
    phone_number: str
    emergency_contact: str
    status: CredentialStatus
    license_expiry: datetime | None
    verified_at: datetime | None
    verified_by: str | None
    status_changed_at: datetime | None
    status_changed_by: str | None
    last_check_in: datetime | None
    created_at: datetime


class PermitCreate(BaseModel):
    guide_id: str
    client_id: str | None = None
    client_name: str
    client_email: str = ""
    client_phone: str = ""
    start_date: datetime
    end_date: datetime
    route: str


class PermitRead(ORMReadModel):
    id: str
    permit_number: str
    guide_id: str
    client_id: str | None
    client_name: str
    client_email: str
    client_phone: str
    start_date: datetime
    end_date: datetime
    route: str
    status: PermitStatus
    validation_token: str
    issued_by: str
    issued_at: datetime
    revoked_at: datetime | None
    revoked_by: str | None


class CheckInCreate(BaseModel):
    guide_id: str
    permit_id: str | None = None
    latitude: float
    longitude: float
    location: str = ""
    notes: str = ""


class CheckInRead(ORMReadModel):
    id: str
    guide_id: str
    permit_id: str | None
    latitude: float
    longitude: float
    location: str
    notes: str
    check_in_time: datetime


class IncidentCreate(BaseModel):
    incident_type: str
    guide_id: str
    permit_id: str | None = None
    latitude: float
    longitude: float
    location: str = ""
    description: str


class IncidentUpdate(BaseModel):
    status: IncidentStatus | None = None
    resolution_notes: str | None = None
    resolved_by: str | None = None


class IncidentRead(ORMReadModel):
    id: str
    incident_type: IncidentType
    guide_id: str
    permit_id: str | None
    status: IncidentStatus
    latitude: float
    longitude: float
    location: str
    description: str
    reported_at: datetime
    resolved_at: datetime | None
    resolved_by: str | None
    resolution_notes: str


class PageMeta(BaseModel):
    total: int
    limit: int
    offset: int


class GuidePage(PageMeta):
    items: list[GuideRead]


class AgencyPage(PageMeta):
    items: list[AgencyRead]


class PermitPage(PageMeta):
    items: list[PermitRead]


class CheckInPage(PageMeta):
    items: list[CheckInRead]


class IncidentPage(PageMeta):
    items: list[IncidentRead]
