from collections.abc import Callable
from typing import Annotated

from fastapi import Depends, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from apps.helpdesk.core.errors import AuthenticationError, PermissionDeniedError
from apps.helpdesk.services.security import AccessTokenCodec, TokenClaims
from apps.helpdesk.services.users import Role


class Actor:
    """Authenticated caller resolved from an access token."""

    def __init__(self, user_id: str, username: str, role: Role):
        self.user_id = user_id
        self.username = username
        self.role = role

    def has_role(self, *roles: Role) -> bool:
        return self.role in roles

    @classmethod
    def from_claims(cls, claims: TokenClaims) -> "Actor":
        try:
            role = Role(claims.role)
        except ValueError as exc:
            raise AuthenticationError("Token carries an unknown role") from exc
        return cls(user_id=claims.user_id, username=claims.username, role=role)


bearer_scheme = HTTPBearer(auto_error=False)


def resolve_actor_from_token(codec: AccessTokenCodec, token: str | None) -> Actor | None:
    """Return the actor for ``token``; ``None`` when no token was sent."""

    if token is None:
        return None
    return Actor.from_claims(codec.decode(token))


async def get_current_actor(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Security(bearer_scheme)],
    request: Request,
) -> Actor:
    cached = getattr(request.state, "actor", None)
    if isinstance(cached, Actor):
        return cached

    codec: AccessTokenCodec | None = getattr(request.app.state, "token_codec", None)
    token = credentials.credentials if credentials is not None else None
    if token is None or codec is None:
        raise AuthenticationError("Authentication required")
    actor = resolve_actor_from_token(codec, token)
    request.state.actor = actor
    return actor  # type: ignore[return-value]


def role_required(*roles: Role) -> Callable[[Actor], Actor]:
    """Dependency factory ensuring the current actor holds one of ``roles``."""

    async def dependency(actor: Annotated[Actor, Depends(get_current_actor)]) -> Actor:
        if not actor.has_role(*roles):
            raise PermissionDeniedError("Insufficient permissions")
        return actor

    return dependency


CurrentActor = Annotated[Actor, Depends(get_current_actor)]
AdminActor = Annotated[Actor, Depends(role_required(Role.ADMIN))]
ApproverActor = Annotated[Actor, Depends(role_required(Role.ADMIN, Role.MANAGER, Role.SUPERVISOR))]
