from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from apps.helpdesk.core.errors import ConflictError, NotFoundError, ValidationError, translate_store_errors
from packages.db.models import TopicTable, as_utc

from .ledger import MembershipLedger

logger = logging.getLogger(__name__)

_UNSET = object()


class TopicCategory(str, Enum):
    """Broad grouping used when filing tickets."""

    SOFTWARE = "software"
    HARDWARE = "hardware"
    FINANCE = "finance"
    SALES = "sales"
    OPERATION = "operation"
    SERVER = "server"
    CATEGORY = "category"
    OTHER = "other"


@dataclass(slots=True)
class Topic:
    id: str
    name: str
    category: TopicCategory
    subcategory: str | None
    description: str | None
    department_id: str
    version: str | None
    created_at: datetime
    updated_at: datetime


class TopicService:
    """Topic CRUD; ownership changes are mirrored into the department topic ledger."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        ledger: MembershipLedger | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._ledger = ledger or MembershipLedger()

    async def create_topic(
        self,
        *,
        name: str,
        department_id: str,
        category: TopicCategory | str = TopicCategory.OTHER,
        subcategory: str | None = None,
        description: str | None = None,
        version: str | None = None,
    ) -> Topic:
        name = _clean_name(name)
        category = _parse_category(category)
        with translate_store_errors("topic"):
            async with self._session_factory() as session:
                async with session.begin():
                    await self._ensure_unique_name(session, name)
                    row = TopicTable(
                        name=name,
                        category=category.value,
                        subcategory=subcategory,
                        description=description,
                        department_id=department_id,
                        version=version,
                    )
                    # raises InvalidReferenceError before the topic is added
                    await self._ledger.add_topic(session, department_id, row.id)
                    session.add(row)
                topic = self._table_to_topic(row)
        logger.info("Created topic %s in department %s", topic.name, department_id)
        return topic

    async def get_topic(self, topic_id: str) -> Topic:
        async with self._session_factory() as session:
            row = await session.get(TopicTable, topic_id)
            if row is None:
                raise NotFoundError(f"Topic {topic_id} not found")
            return self._table_to_topic(row)

    async def list_topics(
        self,
        *,
        category: TopicCategory | str | None = None,
        department_id: str | None = None,
    ) -> Sequence[Topic]:
        statement = select(TopicTable).order_by(TopicTable.name)
        if category is not None:
            statement = statement.where(TopicTable.category == _parse_category(category).value)
        if department_id is not None:
            statement = statement.where(TopicTable.department_id == department_id)
        async with self._session_factory() as session:
            result = await session.execute(statement)
            return [self._table_to_topic(row) for row in result.scalars().all()]

    async def update_topic(
        self,
        topic_id: str,
        *,
        name: str | None = None,
        category: TopicCategory | str | None = None,
        subcategory: str | None | object = _UNSET,
        description: str | None | object = _UNSET,
        version: str | None | object = _UNSET,
        department_id: str | None = None,
    ) -> Topic:
        with translate_store_errors("topic"):
            async with self._session_factory() as session:
                async with session.begin():
                    row = await session.get(TopicTable, topic_id, with_for_update=True)
                    if row is None:
                        raise NotFoundError(f"Topic {topic_id} not found")

                    if name is not None:
                        cleaned = _clean_name(name)
                        if cleaned != row.name:
                            await self._ensure_unique_name(session, cleaned)
                            row.name = cleaned
                    if category is not None:
                        row.category = _parse_category(category).value
                    if subcategory is not _UNSET:
                        row.subcategory = subcategory  # type: ignore[assignment]
                    if description is not _UNSET:
                        row.description = description  # type: ignore[assignment]
                    if version is not _UNSET:
                        row.version = version  # type: ignore[assignment]
                    if department_id is not None and department_id != row.department_id:
                        await self._ledger.move_topic(
                            session,
                            topic_id,
                            old_department_id=row.department_id,
                            new_department_id=department_id,
                        )
                        row.department_id = department_id
                    row.updated_at = datetime.now(timezone.utc)
                return self._table_to_topic(row)

    async def delete_topic(self, topic_id: str) -> str:
        with translate_store_errors("topic"):
            async with self._session_factory() as session:
                async with session.begin():
                    row = await session.get(TopicTable, topic_id, with_for_update=True)
                    if row is None:
                        raise NotFoundError(f"Topic {topic_id} not found")
                    await self._ledger.remove_topic(session, row.department_id, topic_id)
                    await session.delete(row)
        logger.info("Deleted topic %s", topic_id)
        return f"Topic {row.name} removed"

    @staticmethod
    async def _ensure_unique_name(session: AsyncSession, name: str) -> None:
        result = await session.execute(select(TopicTable.id).where(TopicTable.name == name))
        if result.first() is not None:
            raise ConflictError(f"Topic {name} already exists")

    @staticmethod
    def _table_to_topic(row: TopicTable) -> Topic:
        return Topic(
            id=row.id,
            name=row.name,
            category=TopicCategory(row.category),
            subcategory=row.subcategory,
            description=row.description,
            department_id=row.department_id,
            version=row.version,
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
        )


def _clean_name(name: str) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError("Name is required")
    return cleaned


def _parse_category(value: TopicCategory | str) -> TopicCategory:
    try:
        return TopicCategory(value)
    except ValueError as exc:
        raise ValidationError(f"Unknown topic category: {value}") from exc
