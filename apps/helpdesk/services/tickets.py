from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Mapping, Sequence

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from apps.helpdesk.core.errors import (
    ConflictError,
    InvalidReferenceError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
    translate_store_errors,
)
from apps.helpdesk.metrics import MetricsRegistry, metrics_registry
from packages.db.models import DepartmentTable, TicketTable, TopicTable, UserTable, as_utc

from .notifications import LoggingNotificationSender, NotificationTrigger, Recipient, TicketNotice

logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 200
NUMBER_PREFIX = "TKT"


class TicketStatus(str, Enum):
    """Canonical states of the ticket lifecycle."""

    OPEN = "open"
    IN_PROGRESS = "in progress"
    RESOLVED = "resolved"
    CLOSED = "closed"


class TicketPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


# Fields whose changes are written to the ticket history.
TRACKED_FIELDS: tuple[str, ...] = (
    "title",
    "description",
    "status",
    "priority",
    "progress",
    "assigned_to_id",
    "department_id",
    "topic_id",
)


@dataclass(slots=True)
class Comment:
    content: str
    author_id: str
    created_at: datetime


@dataclass(slots=True)
class HistoryEntry:
    """Single field change recorded on a ticket."""

    field: str
    old_value: Any
    new_value: Any
    actor_id: str | None
    timestamp: datetime


@dataclass(slots=True)
class Attachment:
    filename: str
    storage_path: str
    mime_type: str | None
    size_bytes: int | None
    uploaded_by: str
    uploaded_at: datetime


@dataclass(slots=True)
class Ticket:
    """Primary ticket record."""

    id: str
    ticket_number: str
    title: str
    description: str
    status: TicketStatus
    progress: int
    priority: TicketPriority
    author_id: str
    assigned_to_id: str | None
    department_id: str
    topic_id: str
    escalated_to_department_id: str | None
    escalation_approved_by: str | None
    comments: Sequence[Comment]
    history: Sequence[HistoryEntry]
    attachments: Sequence[Attachment]
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True, frozen=True)
class EntityReference:
    """Display summary of a referenced user, department or topic."""

    id: str
    label: str | None
    email: str | None = None


@dataclass(slots=True)
class TicketAggregate:
    """Ticket together with summaries of everything it points at."""

    ticket: Ticket
    author: EntityReference | None
    assignee: EntityReference | None
    department: EntityReference | None
    topic: EntityReference | None
    escalated_to: EntityReference | None


class TicketStateMachine:
    """Validate ticket status transitions.

    The default machine accepts any move. With ``enforce_forward`` a status can
    only stay put or advance along open -> in progress -> resolved -> closed.
    """

    _ORDER: Mapping[TicketStatus, int] = {
        TicketStatus.OPEN: 0,
        TicketStatus.IN_PROGRESS: 1,
        TicketStatus.RESOLVED: 2,
        TicketStatus.CLOSED: 3,
    }

    def __init__(self, *, enforce_forward: bool = False) -> None:
        self._enforce_forward = enforce_forward

    def can_transition(self, current: TicketStatus, target: TicketStatus) -> bool:
        if not self._enforce_forward:
            return True
        return self._ORDER[target] >= self._ORDER[current]

    def assert_transition(self, current: TicketStatus, target: TicketStatus) -> None:
        if current == target:
            return
        if not self.can_transition(current, target):
            logger.warning("Rejected ticket status transition %s -> %s", current.value, target.value)
            raise InvalidStateError(f"Invalid status transition: {current.value} -> {target.value}")


def local_day_bounds(moment: datetime) -> tuple[datetime, datetime]:
    """Return the UTC start and end of the server-local calendar day containing ``moment``."""

    local_date = moment.astimezone().date()
    start = datetime.combine(local_date, time.min).astimezone()
    end = datetime.combine(local_date + timedelta(days=1), time.min).astimezone()
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def format_ticket_number(moment: datetime, sequence: int) -> str:
    return f"{NUMBER_PREFIX}-{moment.astimezone():%Y%m%d}-{sequence:04d}"


class TicketService:
    """Ticket lifecycle: numbering, field-change history, comments and escalation."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        notifier: NotificationTrigger | None = None,
        state_machine: TicketStateMachine | None = None,
        metrics: MetricsRegistry | None = None,
        description_max_length: int = 5000,
        number_attempts: int = 3,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._notifier = notifier or NotificationTrigger(LoggingNotificationSender())
        self._state_machine = state_machine or TicketStateMachine()
        self._metrics = metrics or metrics_registry
        self._description_max_length = description_max_length
        self._number_attempts = max(1, number_attempts)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def create_ticket(
        self,
        *,
        title: str,
        description: str,
        author_id: str,
        department_id: str,
        topic_id: str,
        priority: TicketPriority | str = TicketPriority.MEDIUM,
        assigned_to_id: str | None = None,
        attachments: Iterable[Mapping[str, Any]] = (),
    ) -> TicketAggregate:
        title = self._clean_title(title)
        description = self._clean_description(description)
        priority = _parse_priority(priority)
        assigned_to_id = assigned_to_id or None
        attachment_specs = [_validate_attachment(item) for item in attachments]

        with translate_store_errors("ticket"):
            for attempt in range(1, self._number_attempts + 1):
                try:
                    aggregate = await self._insert_ticket(
                        title=title,
                        description=description,
                        author_id=author_id,
                        department_id=department_id,
                        topic_id=topic_id,
                        priority=priority,
                        assigned_to_id=assigned_to_id,
                        attachments=attachment_specs,
                    )
                except IntegrityError:
                    logger.warning("Ticket number collision on attempt %s; retrying", attempt)
                    continue
                break
            else:
                raise ConflictError("Could not allocate a unique ticket number, please retry")

        self._metrics.counter("tickets_created_total").inc()
        self._metrics.counter("ticket_history_entries_total", label_names=("field",)).inc(
            labels={"field": "status"}
        )
        logger.info("Created ticket %s (%s)", aggregate.ticket.ticket_number, aggregate.ticket.id)
        await self._notifier.ticket_created(
            _notice(aggregate.ticket),
            author=_as_recipient(aggregate.author),
            assignee=_as_recipient(aggregate.assignee),
        )
        return aggregate

    async def get_ticket(self, ticket_id: str) -> TicketAggregate:
        async with self._session_factory() as session:
            row = await session.get(TicketTable, ticket_id)
            if row is None:
                raise NotFoundError(f"Ticket {ticket_id} not found")
            return await self._load_aggregate(session, row)

    async def list_tickets(
        self,
        *,
        status: TicketStatus | str | None = None,
        department_id: str | None = None,
        user_id: str | None = None,
    ) -> Sequence[Ticket]:
        statement = select(TicketTable).order_by(TicketTable.created_at.desc())
        if status is not None:
            statement = statement.where(TicketTable.status == _parse_status(status).value)
        if department_id is not None:
            statement = statement.where(TicketTable.department_id == department_id)
        if user_id is not None:
            statement = statement.where(
                or_(TicketTable.author_id == user_id, TicketTable.assigned_to_id == user_id)
            )
        async with self._session_factory() as session:
            result = await session.execute(statement)
            return [self._table_to_ticket(row) for row in result.scalars().all()]

    async def update_ticket(
        self, ticket_id: str, patch: Mapping[str, Any], *, actor_id: str | None
    ) -> TicketAggregate:
        """Apply ``patch`` and record one history entry per changed field.

        Keys outside :data:`TRACKED_FIELDS` are ignored. The whole patch is
        validated before anything is compared or written.
        """

        changes = self._validate_patch(patch)
        with self._metrics.time("ticket_update_duration_seconds", labels={"operation": "update"}):
            with translate_store_errors("ticket"):
                async with self._session_factory() as session:
                    async with session.begin():
                        row = await self._load_for_update(session, ticket_id)
                        previous = {field: getattr(row, field) for field in changes}
                        entries = await self._apply_changes(session, row, changes, actor_id)
                        aggregate = await self._load_aggregate(session, row)

        self._count_history(entries)
        changed = {entry["field"] for entry in entries}
        notice = _notice(aggregate.ticket)
        if "assigned_to_id" in changed and aggregate.assignee is not None:
            await self._notifier.ticket_assigned(
                notice, assignee=_as_recipient(aggregate.assignee), actor_id=actor_id
            )
        if "status" in changed:
            await self._notifier.ticket_status_changed(
                notice,
                author=_as_recipient(aggregate.author),
                old_status=str(previous["status"]),
                actor_id=actor_id,
            )
        return aggregate

    async def assign_ticket(
        self, ticket_id: str, *, actor_id: str | None, assignee_id: str | None
    ) -> TicketAggregate:
        return await self.update_ticket(ticket_id, {"assigned_to_id": assignee_id or None}, actor_id=actor_id)

    async def update_status(
        self, ticket_id: str, *, actor_id: str | None, status: TicketStatus | str
    ) -> TicketAggregate:
        return await self.update_ticket(ticket_id, {"status": status}, actor_id=actor_id)

    async def update_priority(
        self, ticket_id: str, *, actor_id: str | None, priority: TicketPriority | str
    ) -> TicketAggregate:
        return await self.update_ticket(ticket_id, {"priority": priority}, actor_id=actor_id)

    async def add_comment(self, ticket_id: str, *, actor_id: str, content: str) -> TicketAggregate:
        content = (content or "").strip()
        if not content:
            raise ValidationError("Comment content is required")

        with self._metrics.time("ticket_update_duration_seconds", labels={"operation": "comment"}):
            with translate_store_errors("ticket"):
                async with self._session_factory() as session:
                    async with session.begin():
                        row = await self._load_for_update(session, ticket_id)
                        now = self._now()
                        comment = {"content": content, "author_id": actor_id, "created_at": now.isoformat()}
                        row.comments = [*(row.comments or []), comment]
                        entry = _history_entry("comment", None, "Comment added", actor_id, now)
                        row.history = [*(row.history or []), entry]
                        row.updated_at = now
                        aggregate = await self._load_aggregate(session, row)

        self._count_history([entry])
        await self._notifier.comment_added(
            _notice(aggregate.ticket),
            participants=[_as_recipient(aggregate.author), _as_recipient(aggregate.assignee)],
            actor_id=actor_id,
        )
        return aggregate

    async def escalate_ticket(
        self, ticket_id: str, *, actor_id: str | None, department_id: str
    ) -> TicketAggregate:
        """Request that ``department_id`` take over the ticket; it stays put until approved."""

        with self._metrics.time("ticket_update_duration_seconds", labels={"operation": "escalate"}):
            with translate_store_errors("ticket"):
                async with self._session_factory() as session:
                    async with session.begin():
                        row = await self._load_for_update(session, ticket_id)
                        target = await session.get(DepartmentTable, department_id)
                        if target is None:
                            raise InvalidReferenceError(f"Department {department_id} does not exist")
                        if department_id == row.department_id:
                            raise ValidationError("Ticket already belongs to this department")

                        now = self._now()
                        entries: list[dict[str, Any]] = []
                        if row.escalated_to_department_id != department_id:
                            entries.append(
                                _history_entry(
                                    "escalated_to_department_id",
                                    row.escalated_to_department_id,
                                    department_id,
                                    actor_id,
                                    now,
                                )
                            )
                            row.escalated_to_department_id = department_id
                        if row.escalation_approved_by is not None:
                            entries.append(
                                _history_entry("escalation_approved_by", row.escalation_approved_by, None, actor_id, now)
                            )
                            row.escalation_approved_by = None
                        if entries:
                            row.history = [*(row.history or []), *entries]
                            row.updated_at = now
                        contacts = await _load_recipients(session, target.manager_id, target.supervisor_id)
                        aggregate = await self._load_aggregate(session, row)

        self._count_history(entries)
        logger.info("Ticket %s escalated to department %s", aggregate.ticket.ticket_number, department_id)
        await self._notifier.ticket_escalated(
            _notice(aggregate.ticket), contacts=contacts, department_name=target.name, actor_id=actor_id
        )
        return aggregate

    async def approve_escalation(self, ticket_id: str, *, actor_id: str) -> TicketAggregate:
        with self._metrics.time("ticket_update_duration_seconds", labels={"operation": "approve_escalation"}):
            with translate_store_errors("ticket"):
                async with self._session_factory() as session:
                    async with session.begin():
                        row = await self._load_for_update(session, ticket_id)
                        target_id = row.escalated_to_department_id
                        if target_id is None or row.escalation_approved_by is not None:
                            raise InvalidStateError(f"Ticket {row.ticket_number} has no pending escalation")
                        if await session.get(DepartmentTable, target_id) is None:
                            raise InvalidReferenceError(f"Department {target_id} does not exist")

                        now = self._now()
                        entries = [_history_entry("escalation_approved_by", None, actor_id, actor_id, now)]
                        if row.department_id != target_id:
                            entries.append(_history_entry("department_id", row.department_id, target_id, actor_id, now))
                            row.department_id = target_id
                        row.escalation_approved_by = actor_id
                        row.history = [*(row.history or []), *entries]
                        row.updated_at = now
                        aggregate = await self._load_aggregate(session, row)

        self._count_history(entries)
        logger.info("Escalation of ticket %s approved by %s", aggregate.ticket.ticket_number, actor_id)
        return aggregate

    async def _insert_ticket(
        self,
        *,
        title: str,
        description: str,
        author_id: str,
        department_id: str,
        topic_id: str,
        priority: TicketPriority,
        assigned_to_id: str | None,
        attachments: Sequence[Mapping[str, Any]],
    ) -> TicketAggregate:
        async with self._session_factory() as session:
            async with session.begin():
                await _require(session, UserTable, author_id, "User")
                await _require(session, DepartmentTable, department_id, "Department")
                await _require(session, TopicTable, topic_id, "Topic")
                if assigned_to_id is not None:
                    await _require(session, UserTable, assigned_to_id, "User")

                now = self._now()
                start, end = local_day_bounds(now)
                result = await session.execute(
                    select(func.count())
                    .select_from(TicketTable)
                    .where(TicketTable.created_at >= start)
                    .where(TicketTable.created_at < end)
                )
                sequence = int(result.scalar_one()) + 1
                row = TicketTable(
                    ticket_number=format_ticket_number(now, sequence),
                    title=title,
                    description=description,
                    status=TicketStatus.OPEN.value,
                    progress=0,
                    priority=priority.value,
                    author_id=author_id,
                    assigned_to_id=assigned_to_id,
                    department_id=department_id,
                    topic_id=topic_id,
                    comments=[],
                    history=[_history_entry("status", None, TicketStatus.OPEN.value, author_id, now)],
                    attachments=[
                        {**item, "uploaded_by": author_id, "uploaded_at": now.isoformat()} for item in attachments
                    ],
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
                await session.flush()
                return await self._load_aggregate(session, row)

    async def _apply_changes(
        self,
        session: AsyncSession,
        row: TicketTable,
        changes: Mapping[str, Any],
        actor_id: str | None,
    ) -> list[dict[str, Any]]:
        now = self._now()
        entries: list[dict[str, Any]] = []
        for field, new_value in changes.items():
            old_value = getattr(row, field)
            if old_value == new_value:
                continue
            if field == "status":
                self._state_machine.assert_transition(TicketStatus(old_value), TicketStatus(new_value))
            elif field == "assigned_to_id" and new_value is not None:
                await _require(session, UserTable, new_value, "User")
            elif field == "department_id":
                await _require(session, DepartmentTable, new_value, "Department")
            elif field == "topic_id":
                await _require(session, TopicTable, new_value, "Topic")
            setattr(row, field, new_value)
            entries.append(_history_entry(field, old_value, new_value, actor_id, now))
        if entries:
            row.history = [*(row.history or []), *entries]
            row.updated_at = now
        return entries

    def _validate_patch(self, patch: Mapping[str, Any]) -> dict[str, Any]:
        changes: dict[str, Any] = {}
        for field in TRACKED_FIELDS:
            if field not in patch:
                continue
            value = patch[field]
            if field == "title":
                changes[field] = self._clean_title(value)
            elif field == "description":
                changes[field] = self._clean_description(value)
            elif field == "status":
                changes[field] = _parse_status(value).value
            elif field == "priority":
                changes[field] = _parse_priority(value).value
            elif field == "progress":
                changes[field] = _validate_progress(value)
            elif field == "assigned_to_id":
                changes[field] = value or None
            else:
                if not value:
                    raise ValidationError(f"{field} cannot be empty")
                changes[field] = str(value)
        return changes

    def _clean_title(self, value: Any) -> str:
        title = str(value or "").strip()
        if not title:
            raise ValidationError("Title is required")
        if len(title) > TITLE_MAX_LENGTH:
            raise ValidationError(f"Title must be at most {TITLE_MAX_LENGTH} characters")
        return title

    def _clean_description(self, value: Any) -> str:
        description = str(value or "").strip()
        if not description:
            raise ValidationError("Description is required")
        if len(description) > self._description_max_length:
            raise ValidationError(
                f"Description must be at most {self._description_max_length} characters"
            )
        return description

    def _count_history(self, entries: Iterable[Mapping[str, Any]]) -> None:
        counter = self._metrics.counter("ticket_history_entries_total", label_names=("field",))
        for entry in entries:
            counter.inc(labels={"field": entry["field"]})

    def _now(self) -> datetime:
        return self._clock().astimezone(timezone.utc)

    @staticmethod
    async def _load_for_update(session: AsyncSession, ticket_id: str) -> TicketTable:
        row = await session.get(TicketTable, ticket_id, with_for_update=True)
        if row is None:
            raise NotFoundError(f"Ticket {ticket_id} not found")
        return row

    async def _load_aggregate(self, session: AsyncSession, row: TicketTable) -> TicketAggregate:
        return TicketAggregate(
            ticket=self._table_to_ticket(row),
            author=await _user_reference(session, row.author_id),
            assignee=await _user_reference(session, row.assigned_to_id),
            department=await _department_reference(session, row.department_id),
            topic=await _topic_reference(session, row.topic_id),
            escalated_to=await _department_reference(session, row.escalated_to_department_id),
        )

    @staticmethod
    def _table_to_ticket(row: TicketTable) -> Ticket:
        return Ticket(
            id=row.id,
            ticket_number=row.ticket_number,
            title=row.title,
            description=row.description,
            status=TicketStatus(row.status),
            progress=int(row.progress or 0),
            priority=TicketPriority(row.priority),
            author_id=row.author_id,
            assigned_to_id=row.assigned_to_id,
            department_id=row.department_id,
            topic_id=row.topic_id,
            escalated_to_department_id=row.escalated_to_department_id,
            escalation_approved_by=row.escalation_approved_by,
            comments=[
                Comment(
                    content=item["content"],
                    author_id=item["author_id"],
                    created_at=_parse_timestamp(item["created_at"]),
                )
                for item in row.comments or []
            ],
            history=[
                HistoryEntry(
                    field=item["field"],
                    old_value=item.get("old_value"),
                    new_value=item.get("new_value"),
                    actor_id=item.get("actor_id"),
                    timestamp=_parse_timestamp(item["timestamp"]),
                )
                for item in row.history or []
            ],
            attachments=[
                Attachment(
                    filename=item["filename"],
                    storage_path=item["storage_path"],
                    mime_type=item.get("mime_type"),
                    size_bytes=item.get("size_bytes"),
                    uploaded_by=item["uploaded_by"],
                    uploaded_at=_parse_timestamp(item["uploaded_at"]),
                )
                for item in row.attachments or []
            ],
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
        )


def _history_entry(
    field: str, old_value: Any, new_value: Any, actor_id: str | None, timestamp: datetime
) -> dict[str, Any]:
    return {
        "field": field,
        "old_value": old_value,
        "new_value": new_value,
        "actor_id": actor_id,
        "timestamp": timestamp.isoformat(),
    }


def _parse_timestamp(value: str | datetime) -> datetime:
    if isinstance(value, datetime):
        return as_utc(value)
    return as_utc(datetime.fromisoformat(value))


def _validate_progress(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("Progress must be an integer between 0 and 100")
    if not 0 <= value <= 100:
        raise ValidationError("Progress must be between 0 and 100")
    return value


def _validate_attachment(item: Mapping[str, Any]) -> dict[str, Any]:
    filename = str(item.get("filename") or "").strip()
    storage_path = str(item.get("storage_path") or "").strip()
    if not filename or not storage_path:
        raise ValidationError("Attachments require a filename and a storage path")
    size = item.get("size_bytes")
    if size is not None and (isinstance(size, bool) or not isinstance(size, int) or size < 0):
        raise ValidationError("Attachment size must be a non-negative integer")
    return {
        "filename": filename,
        "storage_path": storage_path,
        "mime_type": item.get("mime_type"),
        "size_bytes": size,
    }


def _parse_status(value: TicketStatus | str) -> TicketStatus:
    try:
        return TicketStatus(value)
    except ValueError as exc:
        raise ValidationError(f"Unknown ticket status: {value}") from exc


def _parse_priority(value: TicketPriority | str) -> TicketPriority:
    try:
        return TicketPriority(value)
    except ValueError as exc:
        raise ValidationError(f"Unknown ticket priority: {value}") from exc


async def _require(session: AsyncSession, table: type, entity_id: str, label: str) -> None:
    if not entity_id or await session.get(table, entity_id) is None:
        raise InvalidReferenceError(f"{label} {entity_id} does not exist")


async def _user_reference(session: AsyncSession, user_id: str | None) -> EntityReference | None:
    if user_id is None:
        return None
    user = await session.get(UserTable, user_id)
    if user is None:
        return EntityReference(id=user_id, label=None)
    return EntityReference(id=user.id, label=f"{user.first_name} {user.last_name}".strip(), email=user.email)


async def _department_reference(session: AsyncSession, department_id: str | None) -> EntityReference | None:
    if department_id is None:
        return None
    department = await session.get(DepartmentTable, department_id)
    return EntityReference(id=department_id, label=department.name if department else None)


async def _topic_reference(session: AsyncSession, topic_id: str | None) -> EntityReference | None:
    if topic_id is None:
        return None
    topic = await session.get(TopicTable, topic_id)
    return EntityReference(id=topic_id, label=topic.name if topic else None)


async def _load_recipients(session: AsyncSession, *user_ids: str | None) -> list[Recipient]:
    recipients: list[Recipient] = []
    for user_id in user_ids:
        reference = await _user_reference(session, user_id)
        recipient = _as_recipient(reference)
        if recipient is not None:
            recipients.append(recipient)
    return recipients


def _as_recipient(reference: EntityReference | None) -> Recipient | None:
    if reference is None:
        return None
    return Recipient(id=reference.id, email=reference.email, name=reference.label or "")


def _notice(ticket: Ticket) -> TicketNotice:
    return TicketNotice(
        ticket_id=ticket.id,
        ticket_number=ticket.ticket_number,
        title=ticket.title,
        status=ticket.status.value,
        priority=ticket.priority.value,
    )
