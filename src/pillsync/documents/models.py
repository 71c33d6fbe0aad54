"""Document store tables read by the patient and caregiver clients."""

import enum
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


def _now() -> datetime:
    return datetime.now(UTC)


class UserRole(enum.StrEnum):
    patient = "patient"
    caregiver = "caregiver"


class LinkStatus(enum.StrEnum):
    active = "active"
    inactive = "inactive"


class IntakeStatus(enum.StrEnum):
    taken = "TAKEN"
    missed = "MISSED"


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: str = Field(primary_key=True)
    role: UserRole = UserRole.patient
    display_name: str | None = None
    created_at: datetime = Field(default_factory=_now)


class PushToken(SQLModel, table=True):
    """One installed client able to receive push for a user."""

    __tablename__ = "pushTokens"

    user_id: str = Field(primary_key=True)
    token: str = Field(primary_key=True)
    platform: str | None = None
    created_at: datetime = Field(default_factory=_now)


class Device(SQLModel, table=True):
    __tablename__ = "devices"

    id: str = Field(primary_key=True)
    primary_patient_id: str | None = Field(default=None, index=True)
    linked_users: dict[str, str] = Field(default_factory=dict, sa_column=Column(JSON))
    desired_config: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
    last_known_state: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


def device_link_id(device_id: str, user_id: str) -> str:
    return f"{device_id}_{user_id}"


class DeviceLink(SQLModel, table=True):
    """Audit/query record of a user-device association. Never hard-deleted."""

    __tablename__ = "deviceLinks"

    id: str = Field(primary_key=True)
    device_id: str = Field(index=True)
    user_id: str = Field(index=True)
    role: UserRole | None = None  # None = take role from the user profile
    status: LinkStatus = LinkStatus.active
    linked_at: datetime = Field(default_factory=_now)
    linked_by: str | None = None
    updated_at: datetime = Field(default_factory=_now)


class Medication(SQLModel, table=True):
    __tablename__ = "medications"

    id: str = Field(primary_key=True)
    patient_id: str | None = Field(default=None, index=True)
    name: str = ""
    dosage: str = ""


class IntakeRecord(SQLModel, table=True):
    """Outcome of one raw dispense event. Immutable once written."""

    __tablename__ = "intakeRecords"

    id: str = Field(primary_key=True)  # "{device_id}_{event_id}"
    device_id: str = Field(index=True)
    patient_id: str = Field(index=True)
    medication_id: str | None = None
    medication_name: str = ""
    dosage: str = ""
    scheduled_time: datetime
    status: IntakeStatus
    taken_at: datetime | None = None
    created_at: datetime = Field(default_factory=_now)


class CriticalEvent(SQLModel, table=True):
    __tablename__ = "criticalEvents"

    id: str = Field(default_factory=lambda: uuid4().hex, primary_key=True)
    caregiver_id: str | None = Field(default=None, index=True)
    event_type: str
    patient_id: str | None = None
    medication_name: str | None = None
    notification_sent: bool | None = None  # None = not processed yet
    notification_results: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
    notified_at: datetime | None = None
    created_at: datetime = Field(default_factory=_now)


class Notification(SQLModel, table=True):
    """In-app notification record; push delivery is best effort on top of it."""

    __tablename__ = "notifications"

    id: str = Field(default_factory=lambda: uuid4().hex, primary_key=True)
    user_id: str = Field(index=True)
    type: str
    title: str
    body: str
    data: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    read: bool = False
    created_at: datetime = Field(default_factory=_now)
