from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Query, status
from pydantic import BaseModel, Field

from apps.helpdesk.dependencies.auth import ApproverActor, CurrentActor
from apps.helpdesk.dependencies.services import TicketServiceDep
from apps.helpdesk.services.tickets import (
    EntityReference,
    Ticket,
    TicketAggregate,
    TicketPriority,
    TicketStatus,
)

router = APIRouter(prefix="/tickets", tags=["tickets"])


class CommentModel(BaseModel):
    content: str
    author_id: str
    created_at: str


class HistoryEntryModel(BaseModel):
    field: str
    old_value: Any = None
    new_value: Any = None
    actor_id: str | None = None
    timestamp: str


class AttachmentModel(BaseModel):
    filename: str
    storage_path: str
    mime_type: str | None = None
    size_bytes: int | None = None
    uploaded_by: str
    uploaded_at: str


class ReferenceModel(BaseModel):
    id: str
    label: str | None = None
    email: str | None = None

    @classmethod
    def from_reference(cls, reference: EntityReference | None) -> "ReferenceModel | None":
        if reference is None:
            return None
        return cls(id=reference.id, label=reference.label, email=reference.email)


class TicketModel(BaseModel):
    id: str
    ticket_number: str
    title: str
    description: str
    status: TicketStatus
    progress: int
    priority: TicketPriority
    author_id: str
    assigned_to_id: str | None = None
    department_id: str
    topic_id: str
    escalated_to_department_id: str | None = None
    escalation_approved_by: str | None = None
    comments: list[CommentModel] = Field(default_factory=list)
    history: list[HistoryEntryModel] = Field(default_factory=list)
    attachments: list[AttachmentModel] = Field(default_factory=list)
    created_at: str
    updated_at: str

    @classmethod
    def from_entity(cls, ticket: Ticket) -> "TicketModel":
        return cls(
            id=ticket.id,
            ticket_number=ticket.ticket_number,
            title=ticket.title,
            description=ticket.description,
            status=ticket.status,
            progress=ticket.progress,
            priority=ticket.priority,
            author_id=ticket.author_id,
            assigned_to_id=ticket.assigned_to_id,
            department_id=ticket.department_id,
            topic_id=ticket.topic_id,
            escalated_to_department_id=ticket.escalated_to_department_id,
            escalation_approved_by=ticket.escalation_approved_by,
            comments=[
                CommentModel(content=item.content, author_id=item.author_id, created_at=item.created_at.isoformat())
                for item in ticket.comments
            ],
            history=[
                HistoryEntryModel(
                    field=item.field,
                    old_value=item.old_value,
                    new_value=item.new_value,
                    actor_id=item.actor_id,
                    timestamp=item.timestamp.isoformat(),
                )
                for item in ticket.history
            ],
            attachments=[
                AttachmentModel(
                    filename=item.filename,
                    storage_path=item.storage_path,
                    mime_type=item.mime_type,
                    size_bytes=item.size_bytes,
                    uploaded_by=item.uploaded_by,
                    uploaded_at=item.uploaded_at.isoformat(),
                )
                for item in ticket.attachments
            ],
            created_at=ticket.created_at.isoformat(),
            updated_at=ticket.updated_at.isoformat(),
        )


class TicketDetailModel(TicketModel):
    author: ReferenceModel | None = None
    assignee: ReferenceModel | None = None
    department: ReferenceModel | None = None
    topic: ReferenceModel | None = None
    escalated_to: ReferenceModel | None = None

    @classmethod
    def from_aggregate(cls, aggregate: TicketAggregate) -> "TicketDetailModel":
        base = TicketModel.from_entity(aggregate.ticket)
        return cls(
            **base.model_dump(),
            author=ReferenceModel.from_reference(aggregate.author),
            assignee=ReferenceModel.from_reference(aggregate.assignee),
            department=ReferenceModel.from_reference(aggregate.department),
            topic=ReferenceModel.from_reference(aggregate.topic),
            escalated_to=ReferenceModel.from_reference(aggregate.escalated_to),
        )


class AttachmentCreateRequest(BaseModel):
    filename: str = Field(min_length=1)
    storage_path: str = Field(min_length=1)
    mime_type: str | None = None
    size_bytes: int | None = Field(default=None, ge=0)


class TicketCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: str = Field(min_length=1)
    department_id: str
    topic_id: str
    priority: TicketPriority = TicketPriority.MEDIUM
    assigned_to_id: str | None = None
    attachments: list[AttachmentCreateRequest] = Field(default_factory=list)


class TicketUpdateRequest(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, min_length=1)
    status: TicketStatus | None = None
    priority: TicketPriority | None = None
    progress: int | None = Field(default=None, ge=0, le=100, strict=True)
    assigned_to_id: str | None = None
    department_id: str | None = None
    topic_id: str | None = None


class CommentCreateRequest(BaseModel):
    content: str = Field(min_length=1)


class StatusChangeRequest(BaseModel):
    status: TicketStatus


class PriorityChangeRequest(BaseModel):
    priority: TicketPriority


class AssignRequest(BaseModel):
    assignee_id: str | None = None


class EscalateRequest(BaseModel):
    department_id: str


@router.get("", response_model=list[TicketModel], summary="List tickets, newest first")
async def list_tickets(
    service: TicketServiceDep,
    _: CurrentActor,
    status_filter: Annotated[TicketStatus | None, Query(alias="status")] = None,
    department_id: str | None = None,
    user_id: str | None = None,
) -> list[TicketModel]:
    tickets = await service.list_tickets(status=status_filter, department_id=department_id, user_id=user_id)
    return [TicketModel.from_entity(item) for item in tickets]


@router.post("", response_model=TicketDetailModel, status_code=status.HTTP_201_CREATED)
async def create_ticket(payload: TicketCreateRequest, service: TicketServiceDep, actor: CurrentActor) -> TicketDetailModel:
    aggregate = await service.create_ticket(
        title=payload.title,
        description=payload.description,
        author_id=actor.user_id,
        department_id=payload.department_id,
        topic_id=payload.topic_id,
        priority=payload.priority,
        assigned_to_id=payload.assigned_to_id,
        attachments=[item.model_dump() for item in payload.attachments],
    )
    return TicketDetailModel.from_aggregate(aggregate)


@router.get("/{ticket_id}", response_model=TicketDetailModel)
async def get_ticket(ticket_id: str, service: TicketServiceDep, _: CurrentActor) -> TicketDetailModel:
    return TicketDetailModel.from_aggregate(await service.get_ticket(ticket_id))


@router.patch("/{ticket_id}", response_model=TicketDetailModel)
async def update_ticket(
    ticket_id: str, payload: TicketUpdateRequest, service: TicketServiceDep, actor: CurrentActor
) -> TicketDetailModel:
    patch = payload.model_dump(exclude_unset=True, mode="json")
    aggregate = await service.update_ticket(ticket_id, patch, actor_id=actor.user_id)
    return TicketDetailModel.from_aggregate(aggregate)


@router.post("/{ticket_id}/comments", response_model=TicketDetailModel, status_code=status.HTTP_201_CREATED)
async def add_comment(
    ticket_id: str, payload: CommentCreateRequest, service: TicketServiceDep, actor: CurrentActor
) -> TicketDetailModel:
    aggregate = await service.add_comment(ticket_id, actor_id=actor.user_id, content=payload.content)
    return TicketDetailModel.from_aggregate(aggregate)


@router.put("/{ticket_id}/status", response_model=TicketDetailModel)
async def change_status(
    ticket_id: str, payload: StatusChangeRequest, service: TicketServiceDep, actor: CurrentActor
) -> TicketDetailModel:
    aggregate = await service.update_status(ticket_id, actor_id=actor.user_id, status=payload.status)
    return TicketDetailModel.from_aggregate(aggregate)


@router.put("/{ticket_id}/priority", response_model=TicketDetailModel)
async def change_priority(
    ticket_id: str, payload: PriorityChangeRequest, service: TicketServiceDep, actor: CurrentActor
) -> TicketDetailModel:
    aggregate = await service.update_priority(ticket_id, actor_id=actor.user_id, priority=payload.priority)
    return TicketDetailModel.from_aggregate(aggregate)


@router.put("/{ticket_id}/assign", response_model=TicketDetailModel)
async def assign_ticket(
    ticket_id: str, payload: AssignRequest, service: TicketServiceDep, actor: CurrentActor
) -> TicketDetailModel:
    aggregate = await service.assign_ticket(ticket_id, actor_id=actor.user_id, assignee_id=payload.assignee_id)
    return TicketDetailModel.from_aggregate(aggregate)


@router.post("/{ticket_id}/escalate", response_model=TicketDetailModel)
async def escalate_ticket(
    ticket_id: str, payload: EscalateRequest, service: TicketServiceDep, actor: CurrentActor
) -> TicketDetailModel:
    aggregate = await service.escalate_ticket(ticket_id, actor_id=actor.user_id, department_id=payload.department_id)
    return TicketDetailModel.from_aggregate(aggregate)


@router.post("/{ticket_id}/escalation/approve", response_model=TicketDetailModel)
async def approve_escalation(ticket_id: str, service: TicketServiceDep, actor: ApproverActor) -> TicketDetailModel:
    aggregate = await service.approve_escalation(ticket_id, actor_id=actor.user_id)
    return TicketDetailModel.from_aggregate(aggregate)
