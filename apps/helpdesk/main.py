from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from apps.helpdesk.api.routes import auth, departments, metrics, ping, tickets, topics, users
from apps.helpdesk.core.config import Settings, get_settings
from apps.helpdesk.core.errors import register_exception_handlers
from apps.helpdesk.core.logging import configure_logging, init_tracer, shutdown_tracer
from apps.helpdesk.middleware import AuthMiddleware
from apps.helpdesk.services.departments import DepartmentService
from apps.helpdesk.services.ledger import MembershipLedger
from apps.helpdesk.services.notifications import (
    LoggingNotificationSender,
    NotificationSender,
    NotificationTrigger,
    SMTPNotificationSender,
)
from apps.helpdesk.services.security import AccessTokenCodec, PasswordHasher
from apps.helpdesk.services.tickets import TicketService, TicketStateMachine
from apps.helpdesk.services.topics import TopicService
from apps.helpdesk.services.users import UserService
from packages.db import ensure_schema


def _to_asyncpg_dsn(dsn: str) -> str:
    """Ensure the SQLAlchemy DSN uses the asyncpg driver."""

    if dsn.startswith("postgresql+asyncpg://"):
        return dsn
    if dsn.startswith("postgresql://"):
        return "postgresql+asyncpg://" + dsn[len("postgresql://") :]
    return dsn


def build_sender(settings: Settings) -> NotificationSender:
    if not settings.email_enabled:
        return LoggingNotificationSender()
    return SMTPNotificationSender(
        host=settings.smtp_host,
        port=settings.smtp_port,
        from_address=settings.email_from,
        username=settings.smtp_username,
        password=settings.smtp_password,
        use_tls=settings.smtp_use_tls,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - executed by framework
    settings = get_settings()
    logger = configure_logging(settings)
    tracer_provider = init_tracer(settings)

    app.state.logger = logger
    app.state.tracer_provider = tracer_provider
    app.state.token_codec = AccessTokenCodec(
        settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
        expire_minutes=settings.access_token_expire_minutes,
    )

    db_engine = create_async_engine(_to_asyncpg_dsn(settings.postgres_dsn), future=True)
    try:
        await ensure_schema(db_engine)
        session_factory = async_sessionmaker(db_engine, expire_on_commit=False)
        ledger = MembershipLedger()
        notifier = NotificationTrigger(build_sender(settings), public_base_url=settings.public_base_url)

        app.state.db_engine = db_engine
        app.state.db_session_factory = session_factory
        app.state.user_service = UserService(
            session_factory,
            hasher=PasswordHasher(),
            notifier=notifier,
            ledger=ledger,
            default_departments=settings.default_departments,
        )
        app.state.department_service = DepartmentService(session_factory, ledger=ledger)
        app.state.topic_service = TopicService(session_factory, ledger=ledger)
        app.state.ticket_service = TicketService(
            session_factory,
            notifier=notifier,
            state_machine=TicketStateMachine(enforce_forward=settings.ticket_enforce_forward_transitions),
            description_max_length=settings.ticket_description_max_length,
        )
        logger.info("Helpdesk services initialised")
        yield
    finally:
        await db_engine.dispose()
        shutdown_tracer(tracer_provider)


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.add_middleware(AuthMiddleware)
    register_exception_handlers(app, production=settings.environment == "production")
    app.include_router(ping.router)
    app.include_router(auth.router)
    app.include_router(users.router)
    app.include_router(departments.router)
    app.include_router(topics.router)
    app.include_router(tickets.router)
    app.include_router(metrics.router)
    return app


app = create_app()


def run() -> None:
    """Serve the API with uvicorn on the configured bind address."""

    settings = get_settings()
    # logging is configured by the lifespan, not by uvicorn
    uvicorn.run("apps.helpdesk.main:app", host=settings.api_host, port=settings.api_port, log_config=None)


if __name__ == "__main__":
    run()
