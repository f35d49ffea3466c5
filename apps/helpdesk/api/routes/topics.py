from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from apps.helpdesk.api.routes.users import MessageModel
from apps.helpdesk.dependencies.auth import CurrentActor, role_required
from apps.helpdesk.dependencies.services import TopicServiceDep
from apps.helpdesk.services.topics import Topic, TopicCategory
from apps.helpdesk.services.users import Role

router = APIRouter(prefix="/topics", tags=["topics"])

_manage = [Depends(role_required(Role.ADMIN, Role.MANAGER, Role.SUPERVISOR))]


class TopicModel(BaseModel):
    id: str
    name: str
    category: TopicCategory
    subcategory: str | None = None
    description: str | None = None
    department_id: str
    version: str | None = None
    created_at: str
    updated_at: str

    @classmethod
    def from_entity(cls, entity: Topic) -> "TopicModel":
        return cls(
            id=entity.id,
            name=entity.name,
            category=entity.category,
            subcategory=entity.subcategory,
            description=entity.description,
            department_id=entity.department_id,
            version=entity.version,
            created_at=entity.created_at.isoformat(),
            updated_at=entity.updated_at.isoformat(),
        )


class TopicCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=150)
    department_id: str
    category: TopicCategory = TopicCategory.OTHER
    subcategory: str | None = None
    description: str | None = None
    version: str | None = None


class TopicUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=150)
    department_id: str | None = None
    category: TopicCategory | None = None
    subcategory: str | None = None
    description: str | None = None
    version: str | None = None


@router.get("", response_model=list[TopicModel])
async def list_topics(
    service: TopicServiceDep,
    _: CurrentActor,
    category: TopicCategory | None = None,
    department_id: str | None = None,
) -> list[TopicModel]:
    topics = await service.list_topics(category=category, department_id=department_id)
    return [TopicModel.from_entity(item) for item in topics]


@router.post("", response_model=TopicModel, status_code=status.HTTP_201_CREATED, dependencies=_manage)
async def create_topic(payload: TopicCreateRequest, service: TopicServiceDep) -> TopicModel:
    return TopicModel.from_entity(await service.create_topic(**payload.model_dump()))


@router.get("/{topic_id}", response_model=TopicModel)
async def get_topic(topic_id: str, service: TopicServiceDep, _: CurrentActor) -> TopicModel:
    return TopicModel.from_entity(await service.get_topic(topic_id))


@router.patch("/{topic_id}", response_model=TopicModel, dependencies=_manage)
async def update_topic(topic_id: str, payload: TopicUpdateRequest, service: TopicServiceDep) -> TopicModel:
    changes: dict[str, Any] = payload.model_dump(exclude_unset=True)
    return TopicModel.from_entity(await service.update_topic(topic_id, **changes))


@router.delete("/{topic_id}", response_model=MessageModel, dependencies=_manage)
async def delete_topic(topic_id: str, service: TopicServiceDep) -> MessageModel:
    return MessageModel(message=await service.delete_topic(topic_id))
