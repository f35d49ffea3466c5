from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from apps.helpdesk.api.routes.users import MessageModel
from apps.helpdesk.dependencies.auth import AdminActor, CurrentActor, role_required
from apps.helpdesk.dependencies.services import DepartmentServiceDep
from apps.helpdesk.services.departments import Department
from apps.helpdesk.services.users import Role

router = APIRouter(prefix="/departments", tags=["departments"])

_manage = [Depends(role_required(Role.ADMIN, Role.MANAGER))]


class DepartmentModel(BaseModel):
    id: str
    name: str
    code: str | None = None
    description: str | None = None
    supervisor_id: str | None = None
    manager_id: str | None = None
    members: list[str] = Field(default_factory=list)
    topics: list[str] = Field(default_factory=list)
    parent_department_id: str | None = None
    created_at: str
    updated_at: str

    @classmethod
    def from_entity(cls, entity: Department) -> "DepartmentModel":
        return cls(
            id=entity.id,
            name=entity.name,
            code=entity.code,
            description=entity.description,
            supervisor_id=entity.supervisor_id,
            manager_id=entity.manager_id,
            members=list(entity.members),
            topics=list(entity.topics),
            parent_department_id=entity.parent_department_id,
            created_at=entity.created_at.isoformat(),
            updated_at=entity.updated_at.isoformat(),
        )


class DepartmentCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=150)
    code: str | None = None
    description: str | None = None
    supervisor_id: str | None = None
    manager_id: str | None = None
    parent_department_id: str | None = None


class DepartmentUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=150)
    code: str | None = None
    description: str | None = None
    supervisor_id: str | None = None
    manager_id: str | None = None
    parent_department_id: str | None = None


@router.get("", response_model=list[DepartmentModel])
async def list_departments(service: DepartmentServiceDep, _: CurrentActor) -> list[DepartmentModel]:
    return [DepartmentModel.from_entity(item) for item in await service.list_departments()]


@router.post("", response_model=DepartmentModel, status_code=status.HTTP_201_CREATED, dependencies=_manage)
async def create_department(payload: DepartmentCreateRequest, service: DepartmentServiceDep) -> DepartmentModel:
    department = await service.create_department(**payload.model_dump())
    return DepartmentModel.from_entity(department)


@router.get("/{department_id}", response_model=DepartmentModel)
async def get_department(department_id: str, service: DepartmentServiceDep, _: CurrentActor) -> DepartmentModel:
    return DepartmentModel.from_entity(await service.get_department(department_id))


@router.patch("/{department_id}", response_model=DepartmentModel, dependencies=_manage)
async def update_department(
    department_id: str, payload: DepartmentUpdateRequest, service: DepartmentServiceDep
) -> DepartmentModel:
    changes: dict[str, Any] = payload.model_dump(exclude_unset=True)
    department = await service.update_department(department_id, **changes)
    return DepartmentModel.from_entity(department)


@router.delete("/{department_id}", response_model=MessageModel)
async def delete_department(department_id: str, service: DepartmentServiceDep, _: AdminActor) -> MessageModel:
    return MessageModel(message=await service.delete_department(department_id))


@router.put("/{department_id}/members/{user_id}", response_model=DepartmentModel, dependencies=_manage)
async def add_member(department_id: str, user_id: str, service: DepartmentServiceDep) -> DepartmentModel:
    return DepartmentModel.from_entity(await service.add_member(department_id, user_id))


@router.delete("/{department_id}/members/{user_id}", response_model=DepartmentModel, dependencies=_manage)
async def remove_member(department_id: str, user_id: str, service: DepartmentServiceDep) -> DepartmentModel:
    return DepartmentModel.from_entity(await service.remove_member(department_id, user_id))


@router.put("/{department_id}/topics/{topic_id}", response_model=DepartmentModel, dependencies=_manage)
async def add_topic(department_id: str, topic_id: str, service: DepartmentServiceDep) -> DepartmentModel:
    return DepartmentModel.from_entity(await service.add_topic(department_id, topic_id))


@router.delete("/{department_id}/topics/{topic_id}", response_model=DepartmentModel, dependencies=_manage)
async def remove_topic(department_id: str, topic_id: str, service: DepartmentServiceDep) -> DepartmentModel:
    return DepartmentModel.from_entity(await service.remove_topic(department_id, topic_id))
