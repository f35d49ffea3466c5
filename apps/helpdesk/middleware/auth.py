"""Bearer token resolution middleware."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from apps.helpdesk.core.errors import AuthenticationError
from apps.helpdesk.core.logging import bind_actor, reset_actor
from apps.helpdesk.dependencies.auth import resolve_actor_from_token

logger = logging.getLogger(__name__)


class AuthMiddleware(BaseHTTPMiddleware):
    """Populate ``request.state.actor`` from the Authorization header.

    Requests without a header pass through with ``actor = None``; routes that
    need a caller reject them through ``get_current_actor``.
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        authorization = request.headers.get("Authorization")
        token: str | None = None

        if authorization:
            scheme, _, credentials = authorization.partition(" ")
            if scheme.lower() != "bearer":
                return JSONResponse(
                    status_code=401,
                    content={"error": AuthenticationError.title, "details": "Invalid authentication scheme"},
                )
            token = credentials.strip() or None

        codec = getattr(request.app.state, "token_codec", None)
        request.state.actor = None
        if token is not None and codec is not None:
            try:
                request.state.actor = resolve_actor_from_token(codec, token)
            except AuthenticationError as exc:
                logger.info("Rejected access token: %s", exc.message)
                return JSONResponse(
                    status_code=exc.status_code,
                    content={"error": exc.title, "details": exc.details},
                )

        actor = request.state.actor
        token = bind_actor(actor.username if actor is not None else None)
        try:
            return await call_next(request)
        finally:
            reset_actor(token)
