from typing import Annotated, Any

from fastapi import Depends, Request

from apps.helpdesk.core.errors import ServiceUnavailableError
from apps.helpdesk.services.departments import DepartmentService
from apps.helpdesk.services.security import AccessTokenCodec
from apps.helpdesk.services.tickets import TicketService
from apps.helpdesk.services.topics import TopicService
from apps.helpdesk.services.users import UserService


def _from_state(request: Request, attribute: str, label: str) -> Any:
    service = getattr(request.app.state, attribute, None)
    if service is None:
        raise ServiceUnavailableError(f"{label} is not available")
    return service


async def get_ticket_service(request: Request) -> TicketService:
    return _from_state(request, "ticket_service", "Ticket service")


async def get_user_service(request: Request) -> UserService:
    return _from_state(request, "user_service", "User service")


async def get_department_service(request: Request) -> DepartmentService:
    return _from_state(request, "department_service", "Department service")


async def get_topic_service(request: Request) -> TopicService:
    return _from_state(request, "topic_service", "Topic service")


async def get_token_codec(request: Request) -> AccessTokenCodec:
    return _from_state(request, "token_codec", "Token codec")


TicketServiceDep = Annotated[TicketService, Depends(get_ticket_service)]
UserServiceDep = Annotated[UserService, Depends(get_user_service)]
DepartmentServiceDep = Annotated[DepartmentService, Depends(get_department_service)]
TopicServiceDep = Annotated[TopicService, Depends(get_topic_service)]
TokenCodecDep = Annotated[AccessTokenCodec, Depends(get_token_codec)]
