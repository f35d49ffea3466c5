from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Query, status
from pydantic import BaseModel, EmailStr, Field

from apps.helpdesk.core.errors import PermissionDeniedError
from apps.helpdesk.dependencies.auth import AdminActor, CurrentActor
from apps.helpdesk.dependencies.services import UserServiceDep
from apps.helpdesk.services.users import Role, User, UserStatus

router = APIRouter(prefix="/users", tags=["users"])


class UserModel(BaseModel):
    id: str
    first_name: str
    last_name: str
    username: str
    email: str
    birthday: str | None = None
    role: Role
    department_id: str | None = None
    default_department_id: str | None = None
    status: UserStatus
    email_verified: bool
    created_at: str
    updated_at: str

    @classmethod
    def from_entity(cls, entity: User) -> "UserModel":
        return cls(
            id=entity.id,
            first_name=entity.first_name,
            last_name=entity.last_name,
            username=entity.username,
            email=entity.email,
            birthday=entity.birthday.strftime("%d.%m.%Y") if entity.birthday else None,
            role=entity.role,
            department_id=entity.department_id,
            default_department_id=entity.default_department_id,
            status=entity.status,
            email_verified=entity.email_verified,
            created_at=entity.created_at.isoformat(),
            updated_at=entity.updated_at.isoformat(),
        )


class UserCreateRequest(BaseModel):
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    username: str = Field(min_length=3)
    email: EmailStr
    password: str = Field(min_length=6)
    role: Role = Role.AGENT
    department_id: str | None = None
    default_department_id: str | None = None
    birthday: str | None = Field(default=None, description="Date of birth as DD.MM.YYYY")


class UserUpdateRequest(BaseModel):
    first_name: str | None = None
    last_name: str | None = None
    email: EmailStr | None = None
    password: str | None = Field(default=None, min_length=6)
    role: Role | None = None
    birthday: str | None = None
    department_id: str | None = None
    default_department_id: str | None = None


class MessageModel(BaseModel):
    message: str


@router.get("", response_model=list[UserModel], summary="List users")
async def list_users(
    service: UserServiceDep,
    _: CurrentActor,
    role: Role | None = None,
    status_filter: Annotated[UserStatus | None, Query(alias="status")] = None,
    department_id: str | None = None,
) -> list[UserModel]:
    users = await service.list_users(role=role, status=status_filter, department_id=department_id)
    return [UserModel.from_entity(item) for item in users]


@router.post("", response_model=UserModel, status_code=status.HTTP_201_CREATED, summary="Provision an active user")
async def create_user(payload: UserCreateRequest, service: UserServiceDep, _: AdminActor) -> UserModel:
    user = await service.register(**payload.model_dump(), approved=True)
    return UserModel.from_entity(user)


@router.get("/{user_id}", response_model=UserModel)
async def get_user(user_id: str, service: UserServiceDep, _: CurrentActor) -> UserModel:
    return UserModel.from_entity(await service.get_user(user_id))


@router.patch("/{user_id}", response_model=UserModel)
async def update_user(
    user_id: str,
    payload: UserUpdateRequest,
    service: UserServiceDep,
    actor: CurrentActor,
) -> UserModel:
    changes: dict[str, Any] = payload.model_dump(exclude_unset=True)
    if actor.role is not Role.ADMIN:
        if actor.user_id != user_id:
            raise PermissionDeniedError("Insufficient permissions")
        if {"role", "department_id"} & changes.keys():
            raise PermissionDeniedError("Only administrators can change role or department")
    user = await service.update_user(user_id, **changes)
    return UserModel.from_entity(user)


@router.delete("/{user_id}", response_model=MessageModel)
async def delete_user(user_id: str, service: UserServiceDep, _: AdminActor) -> MessageModel:
    return MessageModel(message=await service.delete_user(user_id))


@router.post("/{user_id}/approve", response_model=UserModel)
async def approve_user(user_id: str, service: UserServiceDep, _: AdminActor) -> UserModel:
    return UserModel.from_entity(await service.approve_user(user_id))


@router.post("/{user_id}/deactivate", response_model=UserModel)
async def deactivate_user(user_id: str, service: UserServiceDep, _: AdminActor) -> UserModel:
    return UserModel.from_entity(await service.deactivate_user(user_id))


@router.post("/{user_id}/reactivate", response_model=UserModel)
async def reactivate_user(user_id: str, service: UserServiceDep, _: AdminActor) -> UserModel:
    return UserModel.from_entity(await service.reactivate_user(user_id))
