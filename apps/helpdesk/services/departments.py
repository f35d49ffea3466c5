from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from apps.helpdesk.core.errors import (
    ConflictError,
    InvalidReferenceError,
    NotFoundError,
    ValidationError,
    translate_store_errors,
)
from packages.db.models import DepartmentTable, TopicTable, UserTable, as_utc

from .ledger import MembershipLedger
from .users import Role

logger = logging.getLogger(__name__)

_UNSET = object()


@dataclass(slots=True)
class Department:
    """Department with its member and topic ledgers."""

    id: str
    name: str
    code: str | None
    description: str | None
    supervisor_id: str | None
    manager_id: str | None
    members: list[str]
    topics: list[str]
    parent_department_id: str | None
    created_at: datetime
    updated_at: datetime


class DepartmentService:
    """Department CRUD plus the membership operations exposed over HTTP."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        ledger: MembershipLedger | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._ledger = ledger or MembershipLedger()

    async def create_department(
        self,
        *,
        name: str,
        code: str | None = None,
        description: str | None = None,
        supervisor_id: str | None = None,
        manager_id: str | None = None,
        parent_department_id: str | None = None,
    ) -> Department:
        name = _clean_name(name)
        with translate_store_errors("department"):
            async with self._session_factory() as session:
                async with session.begin():
                    await self._ensure_unique_name(session, name)
                    await _ensure_users_exist(session, supervisor_id, manager_id)
                    if parent_department_id is not None:
                        await _require_department(session, parent_department_id)
                    row = DepartmentTable(
                        name=name,
                        code=code,
                        description=description,
                        supervisor_id=supervisor_id,
                        manager_id=manager_id,
                        parent_department_id=parent_department_id,
                        members=[],
                        topics=[],
                    )
                    session.add(row)
                department = self._table_to_department(row)
        logger.info("Created department %s (%s)", department.name, department.id)
        return department

    async def get_department(self, department_id: str) -> Department:
        async with self._session_factory() as session:
            row = await session.get(DepartmentTable, department_id)
            if row is None:
                raise NotFoundError(f"Department {department_id} not found")
            return self._table_to_department(row)

    async def list_departments(self) -> Sequence[Department]:
        async with self._session_factory() as session:
            result = await session.execute(select(DepartmentTable).order_by(DepartmentTable.name))
            return [self._table_to_department(row) for row in result.scalars().all()]

    async def update_department(
        self,
        department_id: str,
        *,
        name: str | None = None,
        code: str | None | object = _UNSET,
        description: str | None | object = _UNSET,
        supervisor_id: str | None | object = _UNSET,
        manager_id: str | None | object = _UNSET,
        parent_department_id: str | None | object = _UNSET,
    ) -> Department:
        with translate_store_errors("department"):
            async with self._session_factory() as session:
                async with session.begin():
                    row = await session.get(DepartmentTable, department_id, with_for_update=True)
                    if row is None:
                        raise NotFoundError(f"Department {department_id} not found")

                    if name is not None:
                        cleaned = _clean_name(name)
                        if cleaned != row.name:
                            await self._ensure_unique_name(session, cleaned)
                            row.name = cleaned
                    if code is not _UNSET:
                        row.code = code  # type: ignore[assignment]
                    if description is not _UNSET:
                        row.description = description  # type: ignore[assignment]
                    if supervisor_id is not _UNSET:
                        await _ensure_users_exist(session, supervisor_id)  # type: ignore[arg-type]
                        row.supervisor_id = supervisor_id  # type: ignore[assignment]
                    if manager_id is not _UNSET:
                        await _ensure_users_exist(session, manager_id)  # type: ignore[arg-type]
                        row.manager_id = manager_id  # type: ignore[assignment]
                    if parent_department_id is not _UNSET:
                        if parent_department_id == department_id:
                            raise ValidationError("A department cannot be its own parent")
                        if parent_department_id is not None:
                            await _require_department(session, parent_department_id)  # type: ignore[arg-type]
                        row.parent_department_id = parent_department_id  # type: ignore[assignment]
                    row.updated_at = datetime.now(timezone.utc)
                return self._table_to_department(row)

    async def delete_department(self, department_id: str) -> str:
        """Delete an empty department; members and topics must be detached first."""

        with translate_store_errors("department"):
            async with self._session_factory() as session:
                async with session.begin():
                    row = await session.get(DepartmentTable, department_id, with_for_update=True)
                    if row is None:
                        raise NotFoundError(f"Department {department_id} not found")
                    members = len(row.members or [])
                    topics = len(row.topics or [])
                    if members or topics:
                        raise ConflictError(
                            f"Department has {members} user(s) and {topics} topic(s) assigned; "
                            "reassign or remove them before deleting"
                        )
                    await session.delete(row)
        logger.info("Deleted department %s", department_id)
        return f"Department {row.name} removed"

    async def add_member(self, department_id: str, user_id: str) -> Department:
        """Make ``user_id`` a member, moving them out of any previous department."""

        with translate_store_errors("department"):
            async with self._session_factory() as session:
                async with session.begin():
                    if await session.get(DepartmentTable, department_id) is None:
                        raise NotFoundError(f"Department {department_id} not found")
                    user = await session.get(UserTable, user_id, with_for_update=True)
                    if user is None:
                        raise InvalidReferenceError(f"User {user_id} does not exist")
                    await self._ledger.move_member(
                        session,
                        user_id,
                        old_department_id=user.department_id,
                        new_department_id=department_id,
                    )
                    if user.department_id != department_id:
                        user.department_id = department_id
                        user.updated_at = datetime.now(timezone.utc)
                    row = await _require_department(session, department_id)
                return self._table_to_department(row)

    async def remove_member(self, department_id: str, user_id: str) -> Department:
        """Drop ``user_id`` from the member set.

        Only administrators may end up without a department; anyone else still
        pointing here has to be reassigned first.
        """

        with translate_store_errors("department"):
            async with self._session_factory() as session:
                async with session.begin():
                    row = await session.get(DepartmentTable, department_id)
                    if row is None:
                        raise NotFoundError(f"Department {department_id} not found")
                    user = await session.get(UserTable, user_id, with_for_update=True)
                    if user is not None and user.department_id == department_id:
                        if user.role != Role.ADMIN.value:
                            raise ConflictError(
                                f"User {user_id} still belongs to this department; reassign the user first"
                            )
                        user.department_id = None
                        user.updated_at = datetime.now(timezone.utc)
                    await self._ledger.remove_member(session, department_id, user_id)
                return self._table_to_department(row)

    async def add_topic(self, department_id: str, topic_id: str) -> Department:
        """Attach ``topic_id`` to the department, detaching it from its previous owner."""

        with translate_store_errors("department"):
            async with self._session_factory() as session:
                async with session.begin():
                    if await session.get(DepartmentTable, department_id) is None:
                        raise NotFoundError(f"Department {department_id} not found")
                    topic = await session.get(TopicTable, topic_id, with_for_update=True)
                    if topic is None:
                        raise InvalidReferenceError(f"Topic {topic_id} does not exist")
                    await self._ledger.move_topic(
                        session,
                        topic_id,
                        old_department_id=topic.department_id,
                        new_department_id=department_id,
                    )
                    if topic.department_id != department_id:
                        topic.department_id = department_id
                        topic.updated_at = datetime.now(timezone.utc)
                    row = await _require_department(session, department_id)
                return self._table_to_department(row)

    async def remove_topic(self, department_id: str, topic_id: str) -> Department:
        with translate_store_errors("department"):
            async with self._session_factory() as session:
                async with session.begin():
                    row = await session.get(DepartmentTable, department_id)
                    if row is None:
                        raise NotFoundError(f"Department {department_id} not found")
                    topic = await session.get(TopicTable, topic_id)
                    if topic is not None and topic.department_id == department_id:
                        raise ConflictError(
                            f"Topic {topic_id} still belongs to this department; move it to another department first"
                        )
                    await self._ledger.remove_topic(session, department_id, topic_id)
                return self._table_to_department(row)

    @staticmethod
    async def _ensure_unique_name(session: AsyncSession, name: str) -> None:
        result = await session.execute(select(DepartmentTable.id).where(DepartmentTable.name == name))
        if result.first() is not None:
            raise ConflictError(f"Department {name} already exists")

    @staticmethod
    def _table_to_department(row: DepartmentTable) -> Department:
        return Department(
            id=row.id,
            name=row.name,
            code=row.code,
            description=row.description,
            supervisor_id=row.supervisor_id,
            manager_id=row.manager_id,
            members=list(row.members or []),
            topics=list(row.topics or []),
            parent_department_id=row.parent_department_id,
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
        )


def _clean_name(name: str) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError("Name is required")
    return cleaned


async def _require_department(session: AsyncSession, department_id: str) -> DepartmentTable:
    row = await session.get(DepartmentTable, department_id)
    if row is None:
        raise InvalidReferenceError(f"Department {department_id} does not exist")
    return row


async def _ensure_users_exist(session: AsyncSession, *user_ids: str | None) -> None:
    for user_id in user_ids:
        if user_id is not None and await session.get(UserTable, user_id) is None:
            raise InvalidReferenceError(f"User {user_id} does not exist")


