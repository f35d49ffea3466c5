"""Service layer exports."""

from .departments import Department, DepartmentService
from .ledger import MembershipLedger
from .notifications import (
    LoggingNotificationSender,
    NotificationSender,
    NotificationTrigger,
    Recipient,
    SMTPNotificationSender,
    TicketNotice,
)
from .security import AccessTokenCodec, PasswordHasher, TokenClaims
from .tickets import TicketAggregate, TicketPriority, TicketService, TicketStateMachine, TicketStatus
from .topics import Topic, TopicCategory, TopicService
from .users import OnboardingStateMachine, Role, User, UserService, UserStatus

__all__ = [
    "AccessTokenCodec",
    "Department",
    "DepartmentService",
    "LoggingNotificationSender",
    "MembershipLedger",
    "NotificationSender",
    "NotificationTrigger",
    "OnboardingStateMachine",
    "PasswordHasher",
    "Recipient",
    "Role",
    "SMTPNotificationSender",
    "TicketAggregate",
    "TicketNotice",
    "TicketPriority",
    "TicketService",
    "TicketStateMachine",
    "TicketStatus",
    "TokenClaims",
    "Topic",
    "TopicCategory",
    "TopicService",
    "User",
    "UserService",
    "UserStatus",
]
