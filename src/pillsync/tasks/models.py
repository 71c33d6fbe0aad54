"""Delayed HTTP task model."""

import enum
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


class TaskStatus(enum.StrEnum):
    pending = "pending"
    delivered = "delivered"
    failed = "failed"


class ScheduledTask(SQLModel, table=True):
    """An HTTP POST to run at or after ``schedule_time``, delivered at least once."""

    __tablename__ = "scheduled_tasks"

    id: str = Field(default_factory=lambda: uuid4().hex, primary_key=True)
    queue: str = Field(index=True)
    url: str
    payload: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    headers: dict[str, str] = Field(default_factory=dict, sa_column=Column(JSON))
    schedule_time: datetime = Field(index=True)
    status: TaskStatus = TaskStatus.pending
    attempts: int = 0
    last_error: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    delivered_at: datetime | None = None
