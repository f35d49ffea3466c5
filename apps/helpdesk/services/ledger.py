"""Department membership ledger.

Departments keep ``members`` and ``topics`` id lists that mirror
``User.department_id`` and ``Topic.department_id``. The store does not enforce
that relationship, so every ownership change goes through this ledger. All
operations work on the caller's session and therefore join its transaction.

Moves always add to the new department before removing from the old one: if the
new department cannot be resolved nothing has been touched yet, and if a later
step fails the worst outcome is a duplicate membership, never an orphan.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Literal

from sqlalchemy.ext.asyncio import AsyncSession

from apps.helpdesk.core.errors import InvalidReferenceError
from packages.db.models import DepartmentTable

logger = logging.getLogger(__name__)

LedgerName = Literal["members", "topics"]


class MembershipLedger:
    """Idempotent set operations on department member and topic lists."""

    async def add_member(self, session: AsyncSession, department_id: str, user_id: str) -> bool:
        return await self._insert(session, department_id, "members", user_id)

    async def remove_member(self, session: AsyncSession, department_id: str, user_id: str) -> bool:
        return await self._remove(session, department_id, "members", user_id)

    async def add_topic(self, session: AsyncSession, department_id: str, topic_id: str) -> bool:
        return await self._insert(session, department_id, "topics", topic_id)

    async def remove_topic(self, session: AsyncSession, department_id: str, topic_id: str) -> bool:
        return await self._remove(session, department_id, "topics", topic_id)

    async def move_member(
        self,
        session: AsyncSession,
        user_id: str,
        *,
        old_department_id: str | None,
        new_department_id: str,
    ) -> None:
        await self._move(session, "members", user_id, old_department_id, new_department_id)

    async def move_topic(
        self,
        session: AsyncSession,
        topic_id: str,
        *,
        old_department_id: str | None,
        new_department_id: str,
    ) -> None:
        await self._move(session, "topics", topic_id, old_department_id, new_department_id)

    async def _move(
        self,
        session: AsyncSession,
        ledger: LedgerName,
        entry_id: str,
        old_department_id: str | None,
        new_department_id: str,
    ) -> None:
        await self._insert(session, new_department_id, ledger, entry_id)
        if old_department_id and old_department_id != new_department_id:
            await self._remove(session, old_department_id, ledger, entry_id)
        logger.debug(
            "Moved %s entry %s from %s to %s", ledger, entry_id, old_department_id, new_department_id
        )

    async def _insert(
        self, session: AsyncSession, department_id: str, ledger: LedgerName, entry_id: str
    ) -> bool:
        department = await self._load(session, department_id)
        if department is None:
            raise InvalidReferenceError(f"Department {department_id} does not exist")
        current: list[str] = list(getattr(department, ledger) or [])
        if entry_id in current:
            return False
        setattr(department, ledger, [*current, entry_id])
        department.updated_at = datetime.now(timezone.utc)
        return True

    async def _remove(
        self, session: AsyncSession, department_id: str, ledger: LedgerName, entry_id: str
    ) -> bool:
        department = await self._load(session, department_id)
        if department is None:
            logger.warning(
                "Department %s vanished before %s entry %s could be removed", department_id, ledger, entry_id
            )
            return False
        current: list[str] = list(getattr(department, ledger) or [])
        if entry_id not in current:
            return False
        setattr(department, ledger, [value for value in current if value != entry_id])
        department.updated_at = datetime.now(timezone.utc)
        return True

    @staticmethod
    async def _load(session: AsyncSession, department_id: str) -> DepartmentTable | None:
        return await session.get(DepartmentTable, department_id, with_for_update=True)
