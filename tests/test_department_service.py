from __future__ import annotations

import pytest

from apps.helpdesk.core.errors import ConflictError, InvalidReferenceError, NotFoundError, ValidationError
from apps.helpdesk.services.departments import DepartmentService
from factories import load_department, load_user, seed_department, seed_topic, seed_user
from packages.db.models import DepartmentTable


@pytest.mark.asyncio
async def test_create_department_rejects_duplicate_name(session_factory):
    service = DepartmentService(session_factory)
    created = await service.create_department(name="  Support ", code="SUP")

    assert created.name == "Support"
    assert created.members == [] and created.topics == []
    with pytest.raises(ConflictError):
        await service.create_department(name="Support")


@pytest.mark.asyncio
async def test_create_department_requires_existing_manager(session_factory):
    service = DepartmentService(session_factory)

    with pytest.raises(InvalidReferenceError):
        await service.create_department(name="Finance", manager_id="ghost")


@pytest.mark.asyncio
async def test_delete_department_with_member_reports_counts(session_factory):
    department = await seed_department(session_factory, "Support")
    await seed_user(session_factory, "alice", department_id=department.id)
    service = DepartmentService(session_factory)

    with pytest.raises(ConflictError) as exc:
        await service.delete_department(department.id)

    assert "1 user(s)" in exc.value.message
    assert "0 topic(s)" in exc.value.message
    assert await load_department(session_factory, department.id) is not None


@pytest.mark.asyncio
async def test_delete_empty_department(session_factory):
    department = await seed_department(session_factory, "Legacy")
    service = DepartmentService(session_factory)

    message = await service.delete_department(department.id)

    assert message == "Department Legacy removed"
    with pytest.raises(NotFoundError):
        await service.get_department(department.id)


@pytest.mark.asyncio
async def test_add_member_moves_user_between_departments(session_factory):
    old = await seed_department(session_factory, "Old")
    new = await seed_department(session_factory, "New")
    user = await seed_user(session_factory, "bob", department_id=old.id)
    service = DepartmentService(session_factory)

    result = await service.add_member(new.id, user.id)
    await service.add_member(new.id, user.id)

    assert result.members == [user.id]
    assert (await load_department(session_factory, new.id)).members == [user.id]
    assert (await load_department(session_factory, old.id)).members == []
    assert (await load_user(session_factory, user.id)).department_id == new.id


@pytest.mark.asyncio
async def test_add_member_to_unknown_department(session_factory):
    user = await seed_user(session_factory, "carol")
    service = DepartmentService(session_factory)

    with pytest.raises(NotFoundError):
        await service.add_member("missing", user.id)


@pytest.mark.asyncio
async def test_remove_member_refuses_to_strand_an_agent(session_factory):
    department = await seed_department(session_factory, "Support")
    user = await seed_user(session_factory, "dave", department_id=department.id)
    service = DepartmentService(session_factory)

    with pytest.raises(ConflictError, match="reassign"):
        await service.remove_member(department.id, user.id)

    assert (await load_department(session_factory, department.id)).members == [user.id]
    assert (await load_user(session_factory, user.id)).department_id == department.id


@pytest.mark.asyncio
async def test_remove_member_clears_admin_reference(session_factory):
    department = await seed_department(session_factory, "IT")
    admin = await seed_user(session_factory, "root", department_id=department.id, role="admin")
    service = DepartmentService(session_factory)

    result = await service.remove_member(department.id, admin.id)

    assert result.members == []
    assert (await load_user(session_factory, admin.id)).department_id is None


@pytest.mark.asyncio
async def test_remove_member_drops_stale_entry(session_factory):
    old = await seed_department(session_factory, "Old")
    new = await seed_department(session_factory, "New")
    user = await seed_user(session_factory, "erin", department_id=old.id)
    async with session_factory() as session:
        async with session.begin():
            stale = await session.get(DepartmentTable, new.id)
            stale.members = [user.id]
    service = DepartmentService(session_factory)

    result = await service.remove_member(new.id, user.id)

    assert result.members == []
    assert (await load_user(session_factory, user.id)).department_id == old.id


@pytest.mark.asyncio
async def test_add_topic_moves_topic(session_factory):
    old = await seed_department(session_factory, "Old")
    new = await seed_department(session_factory, "New")
    topic = await seed_topic(session_factory, "VPN", old.id)
    service = DepartmentService(session_factory)

    await service.add_topic(new.id, topic.id)

    assert (await load_department(session_factory, old.id)).topics == []
    assert (await load_department(session_factory, new.id)).topics == [topic.id]


@pytest.mark.asyncio
async def test_remove_owned_topic_is_rejected(session_factory):
    department = await seed_department(session_factory, "Support")
    topic = await seed_topic(session_factory, "Printers", department.id)
    service = DepartmentService(session_factory)

    with pytest.raises(ConflictError):
        await service.remove_topic(department.id, topic.id)


@pytest.mark.asyncio
async def test_department_cannot_be_its_own_parent(session_factory):
    department = await seed_department(session_factory, "Support")
    service = DepartmentService(session_factory)

    with pytest.raises(ValidationError):
        await service.update_department(department.id, parent_department_id=department.id)


@pytest.mark.asyncio
async def test_update_department_keeps_unset_fields(session_factory):
    department = await seed_department(session_factory, "Support", code="SUP", description="Front line")
    service = DepartmentService(session_factory)

    updated = await service.update_department(department.id, description=None)

    assert updated.code == "SUP"
    assert updated.description is None
