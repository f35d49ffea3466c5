"""SQLModel table definitions for the helpdesk data layer.

References between entities are stored as plain string ids without foreign key
constraints; the service layer keeps them consistent. Embedded collections
(department members/topics, ticket comments/history/attachments) live in JSON
columns and are always reassigned as a whole so SQLAlchemy notices the change.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import Boolean, Column, Date, DateTime, Integer, JSON, String, Text
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    """Return a timezone aware UTC timestamp."""

    return datetime.now(timezone.utc)


def _uuid_str() -> str:
    """Generate a random UUID string."""

    return str(uuid.uuid4())


class UserTable(SQLModel, table=True):
    """Helpdesk accounts together with their onboarding state."""

    __tablename__ = "users"

    id: str = Field(default_factory=_uuid_str, primary_key=True, index=True)
    first_name: str = Field(sa_column=Column(String(100), nullable=False))
    last_name: str = Field(sa_column=Column(String(100), nullable=False))
    username: str = Field(sa_column=Column(String(150), nullable=False, unique=True))
    email: str = Field(sa_column=Column(String(255), nullable=False, unique=True))
    birthday: date | None = Field(default=None, sa_column=Column(Date, nullable=True))
    hashed_password: str = Field(sa_column=Column(String(255), nullable=False))
    role: str = Field(sa_column=Column(String(20), nullable=False))
    department_id: str | None = Field(default=None, sa_column=Column(String(36), nullable=True, index=True))
    default_department_id: str | None = Field(default=None, sa_column=Column(String(36), nullable=True))
    status: str = Field(sa_column=Column(String(20), nullable=False))
    email_verified: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False))
    email_verification_token: str | None = Field(default=None, sa_column=Column(String(128), nullable=True))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class DepartmentTable(SQLModel, table=True):
    """Departments owning the member and topic ledgers."""

    __tablename__ = "departments"

    id: str = Field(default_factory=_uuid_str, primary_key=True, index=True)
    name: str = Field(sa_column=Column(String(150), nullable=False, unique=True))
    code: str | None = Field(default=None, sa_column=Column(String(50), nullable=True))
    description: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    supervisor_id: str | None = Field(default=None, sa_column=Column(String(36), nullable=True))
    manager_id: str | None = Field(default=None, sa_column=Column(String(36), nullable=True))
    members: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    topics: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    parent_department_id: str | None = Field(default=None, sa_column=Column(String(36), nullable=True))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class TopicTable(SQLModel, table=True):
    """Ticket topics, each owned by exactly one department."""

    __tablename__ = "topics"

    id: str = Field(default_factory=_uuid_str, primary_key=True, index=True)
    name: str = Field(sa_column=Column(String(150), nullable=False, unique=True))
    category: str = Field(sa_column=Column(String(50), nullable=False))
    subcategory: str | None = Field(default=None, sa_column=Column(String(150), nullable=True))
    description: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    department_id: str = Field(sa_column=Column(String(36), nullable=False, index=True))
    version: str | None = Field(default=None, sa_column=Column(String(50), nullable=True))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class TicketTable(SQLModel, table=True):
    """Ticket aggregate with its embedded comments, history and attachments."""

    __tablename__ = "tickets"

    id: str = Field(default_factory=_uuid_str, primary_key=True, index=True)
    ticket_number: str = Field(sa_column=Column(String(32), nullable=False, unique=True))
    title: str = Field(sa_column=Column(String(200), nullable=False))
    description: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(sa_column=Column(String(20), nullable=False))
    progress: int = Field(default=0, sa_column=Column(Integer, nullable=False, default=0))
    priority: str = Field(sa_column=Column(String(20), nullable=False))
    author_id: str = Field(sa_column=Column(String(36), nullable=False, index=True))
    assigned_to_id: str | None = Field(default=None, sa_column=Column(String(36), nullable=True, index=True))
    department_id: str = Field(sa_column=Column(String(36), nullable=False, index=True))
    topic_id: str = Field(sa_column=Column(String(36), nullable=False))
    escalated_to_department_id: str | None = Field(default=None, sa_column=Column(String(36), nullable=True))
    escalation_approved_by: str | None = Field(default=None, sa_column=Column(String(36), nullable=True))
    comments: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    history: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    attachments: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(
        default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False, index=True)
    )
    updated_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


async def ensure_schema(engine: AsyncEngine) -> None:
    """Create all helpdesk tables that do not exist yet."""

    async with engine.begin() as connection:
        await connection.run_sync(SQLModel.metadata.create_all)


def as_utc(value: datetime | None) -> datetime:
    """Return ``value`` as an aware UTC datetime (SQLite drops the offset)."""

    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    raise TypeError("Expected datetime value from database")
