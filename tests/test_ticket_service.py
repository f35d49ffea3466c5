from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from apps.helpdesk.core.errors import (
    InvalidReferenceError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from apps.helpdesk.services.tickets import (
    TicketPriority,
    TicketService,
    TicketStateMachine,
    TicketStatus,
    format_ticket_number,
    local_day_bounds,
)
from factories import seed_department, seed_topic, seed_user
from packages.db.models import DepartmentTable


class Clock:
    """Mutable server-local clock."""

    def __init__(self, moment: datetime) -> None:
        self.moment = moment

    def __call__(self) -> datetime:
        return self.moment


@pytest.fixture
def clock() -> Clock:
    return Clock(datetime(2024, 5, 1, 12, 0).astimezone())


@pytest.fixture
def make_service(session_factory, notifier, registry, clock):
    def factory(**overrides) -> TicketService:
        options = {"notifier": notifier, "metrics": registry, "clock": clock}
        options.update(overrides)
        return TicketService(session_factory, **options)

    return factory


@pytest_asyncio.fixture
async def world(session_factory):
    support = await seed_department(session_factory, "Support")
    escalation = await seed_department(session_factory, "Second line")
    author = await seed_user(session_factory, "author", department_id=support.id)
    agent = await seed_user(session_factory, "agent", department_id=support.id)
    manager = await seed_user(session_factory, "boss", department_id=escalation.id, role="manager")
    async with session_factory() as session:
        async with session.begin():
            row = await session.get(DepartmentTable, escalation.id)
            row.manager_id = manager.id
    topic = await seed_topic(session_factory, "Email", support.id)
    return {
        "support": support,
        "escalation": escalation,
        "author": author,
        "agent": agent,
        "manager": manager,
        "topic": topic,
    }


async def _create(service: TicketService, world, **overrides):
    values = {
        "title": "Cannot send mail",
        "description": "Outlook shows an authentication error",
        "author_id": world["author"].id,
        "department_id": world["support"].id,
        "topic_id": world["topic"].id,
    }
    values.update(overrides)
    return await service.create_ticket(**values)


def test_local_day_bounds_span_one_local_day():
    moment = datetime(2024, 5, 1, 12, 0).astimezone()

    start, end = local_day_bounds(moment)

    assert start.tzinfo is timezone.utc
    assert start <= moment < end
    assert start.astimezone().hour == 0 and start.astimezone().date() == moment.date()
    assert end.astimezone().date() == moment.date() + timedelta(days=1)


def test_format_ticket_number_pads_sequence():
    moment = datetime(2024, 5, 1, 9, 30).astimezone()

    assert format_ticket_number(moment, 7) == "TKT-20240501-0007"


@pytest.mark.asyncio
async def test_ticket_numbers_increment_and_reset_daily(make_service, world, clock):
    service = make_service()

    first = await _create(service, world)
    second = await _create(service, world)
    clock.moment = clock.moment + timedelta(days=1)
    third = await _create(service, world)

    assert first.ticket.ticket_number == "TKT-20240501-0001"
    assert second.ticket.ticket_number == "TKT-20240501-0002"
    assert third.ticket.ticket_number == "TKT-20240502-0001"


@pytest.mark.asyncio
async def test_create_ticket_records_initial_history(make_service, world, sender, registry):
    service = make_service()

    aggregate = await _create(service, world, assigned_to_id=world["agent"].id)

    ticket = aggregate.ticket
    assert ticket.status is TicketStatus.OPEN
    assert ticket.priority is TicketPriority.MEDIUM
    assert ticket.progress == 0
    assert len(ticket.history) == 1
    entry = ticket.history[0]
    assert (entry.field, entry.old_value, entry.new_value, entry.actor_id) == (
        "status",
        None,
        "open",
        world["author"].id,
    )
    assert aggregate.author.label == "Author Tester"
    assert aggregate.department.label == "Support"
    assert aggregate.topic.label == "Email"
    recipients = sorted(call.args[0] for call in sender.send.await_args_list)
    assert recipients == ["agent@example.com", "author@example.com"]
    assert registry.counter("tickets_created_total").value() == 1


@pytest.mark.asyncio
async def test_create_ticket_validates_before_references(make_service, world):
    service = make_service()

    with pytest.raises(ValidationError):
        await _create(service, world, title="   ", topic_id="missing")
    with pytest.raises(ValidationError):
        await _create(service, world, description="x" * 5001)
    with pytest.raises(ValidationError):
        await _create(service, world, priority="critical")
    with pytest.raises(InvalidReferenceError):
        await _create(service, world, topic_id="missing")
    with pytest.raises(InvalidReferenceError):
        await _create(service, world, assigned_to_id="ghost")


@pytest.mark.asyncio
async def test_create_ticket_stores_attachment_uploader(make_service, world):
    service = make_service()

    aggregate = await _create(
        service,
        world,
        attachments=[{"filename": "log.txt", "storage_path": "uploads/log.txt", "mime_type": "text/plain", "size_bytes": 12}],
    )

    attachment = aggregate.ticket.attachments[0]
    assert attachment.filename == "log.txt"
    assert attachment.uploaded_by == world["author"].id


@pytest.mark.asyncio
async def test_update_priority_scenario(make_service, world):
    service = make_service()
    created = await _create(service, world)

    updated = await service.update_priority(created.ticket.id, actor_id=world["agent"].id, priority="urgent")

    history = updated.ticket.history
    assert len(history) == 2
    assert (history[1].field, history[1].old_value, history[1].new_value) == ("priority", "medium", "urgent")
    assert history[1].actor_id == world["agent"].id


@pytest.mark.asyncio
async def test_history_counts_only_changed_fields(make_service, world, registry):
    service = make_service()
    created = await _create(service, world)

    updated = await service.update_ticket(
        created.ticket.id,
        {
            "title": "Cannot send mail",
            "status": "in progress",
            "progress": 40,
            "priority": "medium",
            "unknown": "ignored",
        },
        actor_id=world["agent"].id,
    )

    fields = [entry.field for entry in updated.ticket.history[1:]]
    assert fields == ["status", "progress"]
    assert updated.ticket.status is TicketStatus.IN_PROGRESS
    assert updated.ticket.progress == 40

    unchanged = await service.update_ticket(created.ticket.id, {"progress": 40}, actor_id=world["agent"].id)
    assert len(unchanged.ticket.history) == 3
    counter = registry.counter("ticket_history_entries_total", label_names=("field",))
    assert counter.value(labels={"field": "progress"}) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("progress", [-1, 101, "50", True, 12.5])
async def test_update_rejects_invalid_progress(make_service, world, progress):
    service = make_service()
    created = await _create(service, world)

    with pytest.raises(ValidationError):
        await service.update_ticket(created.ticket.id, {"progress": progress}, actor_id=None)

    stored = await service.get_ticket(created.ticket.id)
    assert len(stored.ticket.history) == 1


@pytest.mark.asyncio
async def test_invalid_patch_is_rejected_as_a_whole(make_service, world):
    service = make_service()
    created = await _create(service, world)

    with pytest.raises(ValidationError):
        await service.update_ticket(
            created.ticket.id, {"title": "New title", "status": "archived"}, actor_id=None
        )

    stored = await service.get_ticket(created.ticket.id)
    assert stored.ticket.title == "Cannot send mail"


@pytest.mark.asyncio
async def test_update_with_unknown_reference_rolls_back(make_service, world):
    service = make_service()
    created = await _create(service, world)

    with pytest.raises(InvalidReferenceError):
        await service.update_ticket(
            created.ticket.id, {"title": "Renamed", "topic_id": "missing"}, actor_id=None
        )

    stored = await service.get_ticket(created.ticket.id)
    assert stored.ticket.title == "Cannot send mail"
    assert len(stored.ticket.history) == 1


@pytest.mark.asyncio
async def test_update_missing_ticket(make_service, world):
    service = make_service()

    with pytest.raises(NotFoundError):
        await service.update_status("missing", actor_id=None, status="closed")


@pytest.mark.asyncio
async def test_assign_and_unassign(make_service, world, sender):
    service = make_service()
    created = await _create(service, world)
    sender.send.reset_mock()

    assigned = await service.assign_ticket(
        created.ticket.id, actor_id=world["author"].id, assignee_id=world["agent"].id
    )
    again = await service.assign_ticket(created.ticket.id, actor_id=world["author"].id, assignee_id=world["agent"].id)
    unassigned = await service.assign_ticket(created.ticket.id, actor_id=world["author"].id, assignee_id="")

    assert assigned.assignee.id == world["agent"].id
    assert len(again.ticket.history) == 2
    assert unassigned.assignee is None
    assert [entry.new_value for entry in unassigned.ticket.history[1:]] == [world["agent"].id, None]
    sender.send.assert_awaited_once()
    assert sender.send.await_args.args[0] == "agent@example.com"


@pytest.mark.asyncio
async def test_add_comment_appends_history_and_notifies_others(make_service, world, sender):
    service = make_service()
    created = await _create(service, world, assigned_to_id=world["agent"].id)
    sender.send.reset_mock()

    aggregate = await service.add_comment(created.ticket.id, actor_id=world["agent"].id, content=" Looking into it ")

    assert aggregate.ticket.comments[0].content == "Looking into it"
    assert aggregate.ticket.history[-1].field == "comment"
    assert aggregate.ticket.history[-1].new_value == "Comment added"
    assert [call.args[0] for call in sender.send.await_args_list] == ["author@example.com"]
    with pytest.raises(ValidationError):
        await service.add_comment(created.ticket.id, actor_id=world["agent"].id, content="   ")


@pytest.mark.asyncio
async def test_status_change_notifies_author(make_service, world, sender):
    service = make_service()
    created = await _create(service, world)
    sender.send.reset_mock()

    await service.update_status(created.ticket.id, actor_id=world["agent"].id, status=TicketStatus.RESOLVED)

    to_address, subject, _ = sender.send.await_args.args
    assert to_address == "author@example.com"
    assert "resolved" in subject


@pytest.mark.asyncio
async def test_notification_failure_does_not_fail_mutation(make_service, world, sender, registry):
    service = make_service()
    sender.send.side_effect = ConnectionError("smtp down")

    aggregate = await _create(service, world)

    assert aggregate.ticket.ticket_number.endswith("-0001")
    failed = registry.counter("notifications_failed_total", label_names=("kind",))
    assert failed.value(labels={"kind": "ticket_created"}) == 1


@pytest.mark.asyncio
async def test_forward_only_machine_rejects_backward_moves(make_service, world, caplog):
    service = make_service(state_machine=TicketStateMachine(enforce_forward=True))
    created = await _create(service, world)
    await service.update_status(created.ticket.id, actor_id=None, status="resolved")

    with pytest.raises(InvalidStateError):
        await service.update_status(created.ticket.id, actor_id=None, status="open")

    assert "Rejected ticket status transition" in caplog.text
    stored = await service.get_ticket(created.ticket.id)
    assert stored.ticket.status is TicketStatus.RESOLVED


@pytest.mark.asyncio
async def test_permissive_machine_accepts_any_move(make_service, world):
    service = make_service()
    created = await _create(service, world)
    await service.update_status(created.ticket.id, actor_id=None, status="closed")

    reopened = await service.update_status(created.ticket.id, actor_id=None, status="open")

    assert reopened.ticket.status is TicketStatus.OPEN
    assert len(reopened.ticket.history) == 3


@pytest.mark.asyncio
async def test_escalation_flow(make_service, world, sender):
    service = make_service()
    created = await _create(service, world)
    sender.send.reset_mock()

    escalated = await service.escalate_ticket(
        created.ticket.id, actor_id=world["agent"].id, department_id=world["escalation"].id
    )

    assert escalated.ticket.escalated_to_department_id == world["escalation"].id
    assert escalated.ticket.department_id == world["support"].id
    assert escalated.escalated_to.label == "Second line"
    assert sender.send.await_args.args[0] == "boss@example.com"

    approved = await service.approve_escalation(created.ticket.id, actor_id=world["manager"].id)

    assert approved.ticket.department_id == world["escalation"].id
    assert approved.ticket.escalation_approved_by == world["manager"].id
    assert [entry.field for entry in approved.ticket.history[-2:]] == ["escalation_approved_by", "department_id"]
    with pytest.raises(InvalidStateError):
        await service.approve_escalation(created.ticket.id, actor_id=world["manager"].id)


@pytest.mark.asyncio
async def test_escalation_requires_other_existing_department(make_service, world):
    service = make_service()
    created = await _create(service, world)

    with pytest.raises(ValidationError):
        await service.escalate_ticket(created.ticket.id, actor_id=None, department_id=world["support"].id)
    with pytest.raises(InvalidReferenceError):
        await service.escalate_ticket(created.ticket.id, actor_id=None, department_id="missing")
    with pytest.raises(InvalidStateError):
        await service.approve_escalation(created.ticket.id, actor_id=world["manager"].id)


@pytest.mark.asyncio
async def test_list_tickets_filters(make_service, world, clock):
    service = make_service()
    mine = await _create(service, world)
    clock.moment = clock.moment + timedelta(minutes=5)
    theirs = await _create(service, world, author_id=world["agent"].id, title="Printer jam")
    await service.update_status(theirs.ticket.id, actor_id=None, status="closed")

    newest_first = await service.list_tickets()
    by_user = await service.list_tickets(user_id=world["author"].id)
    closed = await service.list_tickets(status="closed", department_id=world["support"].id)

    assert [ticket.id for ticket in newest_first] == [theirs.ticket.id, mine.ticket.id]
    assert [ticket.id for ticket in by_user] == [mine.ticket.id]
    assert [ticket.id for ticket in closed] == [theirs.ticket.id]
