"""Identity and onboarding.

Accounts move through ``pending_email -> pending_admin -> active``; admins can
then toggle ``active <-> inactive``. Membership in a department is mirrored into
the department member ledger in the same transaction as the user write, and
notifications are only sent once that transaction has committed.
"""

from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Callable, Mapping, Sequence

from sqlalchemy import or_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from apps.helpdesk.core.errors import (
    AgeRestrictionError,
    AuthenticationError,
    ConflictError,
    InvalidReferenceError,
    InvalidStateError,
    InvalidTokenError,
    NotFoundError,
    ValidationError,
    translate_store_errors,
)
from apps.helpdesk.metrics import MetricsRegistry, metrics_registry
from packages.db.models import DepartmentTable, UserTable, as_utc

from .ledger import MembershipLedger
from .notifications import LoggingNotificationSender, NotificationTrigger, Recipient
from .security import PasswordHasher

logger = logging.getLogger(__name__)

_UNSET = object()
_BIRTHDAY_PATTERN = re.compile(r"^\d{2}\.\d{2}\.\d{4}$")
MINIMUM_AGE = 13
PLAUSIBLE_AGE = 5


class Role(str, Enum):
    """Supported roles."""

    ADMIN = "admin"
    MANAGER = "manager"
    SUPERVISOR = "supervisor"
    AGENT = "agent"


class UserStatus(str, Enum):
    PENDING_EMAIL = "pending_email"
    PENDING_ADMIN = "pending_admin"
    ACTIVE = "active"
    INACTIVE = "inactive"


@dataclass(slots=True)
class User:
    """Public view of an account; credentials and tokens are never exposed."""

    id: str
    first_name: str
    last_name: str
    username: str
    email: str
    birthday: date | None
    role: Role
    department_id: str | None
    default_department_id: str | None
    status: UserStatus
    email_verified: bool
    created_at: datetime
    updated_at: datetime

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class OnboardingStateMachine:
    """Validate account status transitions."""

    _DEFAULT_TRANSITIONS: Mapping[UserStatus, Sequence[UserStatus]] = {
        UserStatus.PENDING_EMAIL: (UserStatus.PENDING_ADMIN,),
        UserStatus.PENDING_ADMIN: (UserStatus.ACTIVE,),
        UserStatus.ACTIVE: (UserStatus.INACTIVE,),
        UserStatus.INACTIVE: (UserStatus.ACTIVE,),
    }

    def __init__(self, transitions: Mapping[UserStatus, Sequence[UserStatus]] | None = None) -> None:
        self._transitions = transitions or self._DEFAULT_TRANSITIONS

    def can_transition(self, current: UserStatus, target: UserStatus) -> bool:
        return target in self._transitions.get(current, ())

    def assert_transition(self, current: UserStatus, target: UserStatus) -> None:
        if not self.can_transition(current, target):
            raise InvalidStateError(
                f"User status cannot change from {current.value} to {target.value}"
            )


def parse_birthday(value: str | date | None, *, today: date) -> date | None:
    """Parse a ``dd.mm.yyyy`` birthday and enforce the age limits."""

    if value is None or value == "":
        return None
    if isinstance(value, date):
        birthday = value
    else:
        text = value.strip()
        if not _BIRTHDAY_PATTERN.match(text):
            raise ValidationError("Birthday must use the format DD.MM.YYYY")
        try:
            birthday = datetime.strptime(text, "%d.%m.%Y").date()
        except ValueError as exc:
            raise ValidationError("Birthday is not a valid calendar date") from exc

    if birthday > today:
        raise ValidationError("Birthday cannot be in the future")
    age = calculate_age(birthday, today)
    if age < PLAUSIBLE_AGE:
        raise AgeRestrictionError("Birthday appears to be invalid")
    if age < MINIMUM_AGE:
        raise AgeRestrictionError(f"You must be at least {MINIMUM_AGE} years old to register")
    return birthday


def calculate_age(birthday: date, today: date) -> int:
    return today.year - birthday.year - ((today.month, today.day) < (birthday.month, birthday.day))


class UserService:
    """Registration, onboarding transitions and account maintenance."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        hasher: PasswordHasher | None = None,
        notifier: NotificationTrigger | None = None,
        ledger: MembershipLedger | None = None,
        default_departments: Mapping[str, str] | None = None,
        state_machine: OnboardingStateMachine | None = None,
        metrics: MetricsRegistry | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._hasher = hasher or PasswordHasher()
        self._notifier = notifier or NotificationTrigger(LoggingNotificationSender())
        self._ledger = ledger or MembershipLedger()
        self._default_departments = dict(default_departments or {})
        self._state_machine = state_machine or OnboardingStateMachine()
        self._metrics = metrics or metrics_registry
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def register(
        self,
        *,
        first_name: str,
        last_name: str,
        username: str,
        email: str,
        password: str,
        role: Role | str = Role.AGENT,
        department_id: str | None = None,
        default_department_id: str | None = None,
        birthday: str | date | None = None,
        approved: bool = False,
    ) -> User:
        """Create an account.

        Self-registered accounts start in ``pending_email`` and receive a
        verification link. ``approved=True`` is used when an admin provisions
        the account directly; it starts ``active`` with the email marked verified.
        """

        role = _parse_role(role)
        first_name = _require_text(first_name, "First name")
        last_name = _require_text(last_name, "Last name")
        username = _normalize_identifier(username, "Username")
        email = _normalize_identifier(email, "Email")
        if not password:
            raise ValidationError("Password is required")
        parsed_birthday = parse_birthday(birthday, today=self._clock().date())
        if role is not Role.ADMIN and not department_id:
            raise ValidationError("Department is required for non-admin users")
        if default_department_id is None:
            default_department_id = self._default_departments.get(role.value)

        token = None if approved else secrets.token_hex(32)
        with translate_store_errors("user"):
            async with self._session_factory() as session:
                async with session.begin():
                    await self._ensure_unique(session, username=username, email=email)
                    if default_department_id is not None:
                        await _require_department(session, default_department_id)
                    row = UserTable(
                        first_name=first_name,
                        last_name=last_name,
                        username=username,
                        email=email,
                        birthday=parsed_birthday,
                        hashed_password=self._hasher.hash(password),
                        role=role.value,
                        department_id=department_id or None,
                        default_department_id=default_department_id,
                        status=(UserStatus.ACTIVE if approved else UserStatus.PENDING_EMAIL).value,
                        email_verified=approved,
                        email_verification_token=token,
                    )
                    if row.department_id:
                        await self._ledger.add_member(session, row.department_id, row.id)
                    session.add(row)
                user = self._table_to_user(row)

        self._metrics.counter("users_registered_total", label_names=("role",)).inc(
            labels={"role": role.value}
        )
        logger.info("Registered user %s with role %s", user.username, role.value)
        if token is not None:
            await self._notifier.verification_requested(_recipient(user), token)
        return user

    async def verify_email(self, email: str, token: str) -> User:
        email = (email or "").strip().lower()
        if not email or not token:
            raise InvalidTokenError("Invalid or expired verification token")
        with translate_store_errors("user"):
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        select(UserTable)
                        .where(UserTable.email == email)
                        .where(UserTable.email_verification_token == token)
                        .with_for_update()
                    )
                    row = result.scalars().first()
                    if row is None or row.status != UserStatus.PENDING_EMAIL.value:
                        raise InvalidTokenError("Invalid or expired verification token")
                    self._state_machine.assert_transition(UserStatus(row.status), UserStatus.PENDING_ADMIN)
                    row.email_verification_token = None
                    row.email_verified = True
                    row.status = UserStatus.PENDING_ADMIN.value
                    row.updated_at = self._clock()
                user = self._table_to_user(row)
        logger.info("Email verified for user %s", user.username)
        await self._notifier.approval_pending(_recipient(user))
        return user

    async def approve_user(self, user_id: str) -> User:
        user = await self._transition(user_id, UserStatus.ACTIVE, required=UserStatus.PENDING_ADMIN)
        await self._notifier.account_approved(_recipient(user))
        return user

    async def deactivate_user(self, user_id: str) -> User:
        return await self._transition(user_id, UserStatus.INACTIVE, required=UserStatus.ACTIVE)

    async def reactivate_user(self, user_id: str) -> User:
        return await self._transition(user_id, UserStatus.ACTIVE, required=UserStatus.INACTIVE)

    async def authenticate(self, username: str, password: str) -> User:
        username = (username or "").strip().lower()
        async with self._session_factory() as session:
            result = await session.execute(select(UserTable).where(UserTable.username == username))
            row = result.scalars().first()
        if row is None or row.status != UserStatus.ACTIVE.value:
            raise AuthenticationError("Invalid username or user is not active")
        if not self._hasher.verify(password, row.hashed_password):
            raise AuthenticationError("Invalid password")
        return self._table_to_user(row)

    async def get_user(self, user_id: str) -> User:
        async with self._session_factory() as session:
            row = await session.get(UserTable, user_id)
            if row is None:
                raise NotFoundError(f"User {user_id} not found")
            return self._table_to_user(row)

    async def list_users(
        self,
        *,
        role: Role | str | None = None,
        status: UserStatus | str | None = None,
        department_id: str | None = None,
    ) -> Sequence[User]:
        statement = select(UserTable).order_by(UserTable.username)
        if role is not None:
            statement = statement.where(UserTable.role == _parse_role(role).value)
        if status is not None:
            statement = statement.where(UserTable.status == _parse_status(status).value)
        if department_id is not None:
            statement = statement.where(UserTable.department_id == department_id)
        async with self._session_factory() as session:
            result = await session.execute(statement)
            return [self._table_to_user(row) for row in result.scalars().all()]

    async def update_user(
        self,
        user_id: str,
        *,
        first_name: str | None = None,
        last_name: str | None = None,
        email: str | None = None,
        password: str | None = None,
        role: Role | str | None = None,
        birthday: str | date | None | object = _UNSET,
        department_id: str | None | object = _UNSET,
        default_department_id: str | None | object = _UNSET,
    ) -> User:
        with translate_store_errors("user"):
            async with self._session_factory() as session:
                async with session.begin():
                    row = await session.get(UserTable, user_id, with_for_update=True)
                    if row is None:
                        raise NotFoundError(f"User {user_id} not found")

                    if first_name is not None:
                        row.first_name = _require_text(first_name, "First name")
                    if last_name is not None:
                        row.last_name = _require_text(last_name, "Last name")
                    if email is not None:
                        normalized = _normalize_identifier(email, "Email")
                        if normalized != row.email:
                            await self._ensure_unique(session, email=normalized)
                            row.email = normalized
                    if password:
                        row.hashed_password = self._hasher.hash(password)
                    if role is not None:
                        row.role = _parse_role(role).value
                    if birthday is not _UNSET:
                        row.birthday = parse_birthday(birthday, today=self._clock().date())  # type: ignore[arg-type]
                    if default_department_id is not _UNSET:
                        if default_department_id is not None:
                            await _require_department(session, default_department_id)  # type: ignore[arg-type]
                        row.default_department_id = default_department_id  # type: ignore[assignment]

                    target = row.department_id if department_id is _UNSET else (department_id or None)
                    if target is None and row.role != Role.ADMIN.value:
                        raise ValidationError("Department is required for non-admin users")
                    if target != row.department_id:
                        if target is None:
                            await self._ledger.remove_member(session, row.department_id, user_id)
                        else:
                            await self._ledger.move_member(
                                session,
                                user_id,
                                old_department_id=row.department_id,
                                new_department_id=target,  # type: ignore[arg-type]
                            )
                        row.department_id = target  # type: ignore[assignment]
                    row.updated_at = self._clock()
                return self._table_to_user(row)

    async def delete_user(self, user_id: str) -> str:
        with translate_store_errors("user"):
            async with self._session_factory() as session:
                async with session.begin():
                    row = await session.get(UserTable, user_id, with_for_update=True)
                    if row is None:
                        raise NotFoundError(f"User {user_id} not found")
                    if row.department_id:
                        await self._ledger.remove_member(session, row.department_id, user_id)
                    result = await session.execute(
                        select(DepartmentTable).where(
                            or_(DepartmentTable.supervisor_id == user_id, DepartmentTable.manager_id == user_id)
                        )
                    )
                    for department in result.scalars().all():
                        if department.supervisor_id == user_id:
                            department.supervisor_id = None
                        if department.manager_id == user_id:
                            department.manager_id = None
                        department.updated_at = self._clock()
                    await session.delete(row)
        logger.info("Deleted user %s", user_id)
        return "User removed"

    async def _transition(self, user_id: str, target: UserStatus, *, required: UserStatus) -> User:
        with translate_store_errors("user"):
            async with self._session_factory() as session:
                async with session.begin():
                    row = await session.get(UserTable, user_id, with_for_update=True)
                    if row is None:
                        raise NotFoundError(f"User {user_id} not found")
                    current = UserStatus(row.status)
                    if current is not required:
                        raise InvalidStateError(
                            f"User {row.username} is {current.value}; expected {required.value}"
                        )
                    self._state_machine.assert_transition(current, target)
                    row.status = target.value
                    row.updated_at = self._clock()
                user = self._table_to_user(row)
        logger.info("User %s moved from %s to %s", user.username, required.value, target.value)
        return user

    @staticmethod
    async def _ensure_unique(
        session: AsyncSession, *, username: str | None = None, email: str | None = None
    ) -> None:
        if username is not None:
            result = await session.execute(select(UserTable.id).where(UserTable.username == username))
            if result.first() is not None:
                raise ConflictError(f"Username {username} is already taken")
        if email is not None:
            result = await session.execute(select(UserTable.id).where(UserTable.email == email))
            if result.first() is not None:
                raise ConflictError(f"Email {email} is already registered")

    @staticmethod
    def _table_to_user(row: UserTable) -> User:
        return User(
            id=row.id,
            first_name=row.first_name,
            last_name=row.last_name,
            username=row.username,
            email=row.email,
            birthday=row.birthday,
            role=Role(row.role),
            department_id=row.department_id,
            default_department_id=row.default_department_id,
            status=UserStatus(row.status),
            email_verified=bool(row.email_verified),
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
        )


def _recipient(user: User) -> Recipient:
    return Recipient(id=user.id, email=user.email, name=user.full_name)


async def _require_department(session: AsyncSession, department_id: str) -> None:
    if await session.get(DepartmentTable, department_id) is None:
        raise InvalidReferenceError(f"Department {department_id} does not exist")


def _require_text(value: str, label: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationError(f"{label} is required")
    return cleaned


def _normalize_identifier(value: str, label: str) -> str:
    return _require_text(value, label).lower()


def _parse_role(value: Role | str) -> Role:
    try:
        return Role(value)
    except ValueError as exc:
        raise ValidationError(f"Unknown role: {value}") from exc


def _parse_status(value: UserStatus | str) -> UserStatus:
    try:
        return UserStatus(value)
    except ValueError as exc:
        raise ValidationError(f"Unknown user status: {value}") from exc
