from __future__ import annotations

import pytest

from apps.helpdesk.core.errors import InvalidReferenceError
from apps.helpdesk.services.ledger import MembershipLedger
from factories import load_department, seed_department, seed_user


@pytest.mark.asyncio
async def test_add_member_is_idempotent(session_factory):
    department = await seed_department(session_factory, "Support")
    ledger = MembershipLedger()

    async with session_factory() as session:
        async with session.begin():
            assert await ledger.add_member(session, department.id, "user-1") is True
            assert await ledger.add_member(session, department.id, "user-1") is False

    stored = await load_department(session_factory, department.id)
    assert stored.members == ["user-1"]


@pytest.mark.asyncio
async def test_move_member_adds_to_new_before_removing_from_old(session_factory):
    old = await seed_department(session_factory, "Old")
    new = await seed_department(session_factory, "New")
    user = await seed_user(session_factory, "mover", department_id=old.id)
    ledger = MembershipLedger()

    async with session_factory() as session:
        async with session.begin():
            await ledger.move_member(session, user.id, old_department_id=old.id, new_department_id=new.id)

    assert (await load_department(session_factory, old.id)).members == []
    assert (await load_department(session_factory, new.id)).members == [user.id]


@pytest.mark.asyncio
async def test_failed_move_leaves_old_membership_untouched(session_factory):
    old = await seed_department(session_factory, "Old")
    user = await seed_user(session_factory, "stayer", department_id=old.id)
    ledger = MembershipLedger()

    with pytest.raises(InvalidReferenceError):
        async with session_factory() as session:
            async with session.begin():
                await ledger.move_member(
                    session, user.id, old_department_id=old.id, new_department_id="missing-department"
                )

    assert (await load_department(session_factory, old.id)).members == [user.id]


@pytest.mark.asyncio
async def test_remove_from_missing_department_is_a_noop(session_factory):
    ledger = MembershipLedger()

    async with session_factory() as session:
        async with session.begin():
            assert await ledger.remove_topic(session, "missing-department", "topic-1") is False


@pytest.mark.asyncio
async def test_move_topic_to_same_department_keeps_single_entry(session_factory):
    department = await seed_department(session_factory, "Infra", topics=["topic-1"])
    ledger = MembershipLedger()

    async with session_factory() as session:
        async with session.begin():
            await ledger.move_topic(
                session, "topic-1", old_department_id=department.id, new_department_id=department.id
            )

    assert (await load_department(session_factory, department.id)).topics == ["topic-1"]
