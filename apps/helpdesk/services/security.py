"""Password hashing and access token helpers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt
from passlib.context import CryptContext

from apps.helpdesk.core.errors import AuthenticationError


class PasswordHasher:
    """Thin wrapper around a passlib context."""

    def __init__(self, schemes: tuple[str, ...] = ("pbkdf2_sha256",)) -> None:
        self._context = CryptContext(schemes=list(schemes), deprecated="auto")

    def hash(self, password: str) -> str:
        return self._context.hash(password)

    def verify(self, password: str, hashed: str) -> bool:
        try:
            return self._context.verify(password, hashed)
        except ValueError:
            # unknown or corrupt hash format
            return False


@dataclass(slots=True, frozen=True)
class TokenClaims:
    """Identity carried inside an access token."""

    user_id: str
    username: str
    role: str


class AccessTokenCodec:
    """Issue and decode signed JWT access tokens."""

    def __init__(self, secret: str, *, algorithm: str = "HS256", expire_minutes: int = 24 * 60) -> None:
        self._secret = secret
        self._algorithm = algorithm
        self._expire = timedelta(minutes=expire_minutes)

    def issue(self, claims: TokenClaims, *, now: datetime | None = None) -> str:
        issued_at = now or datetime.now(timezone.utc)
        payload: dict[str, Any] = {
            "sub": claims.user_id,
            "username": claims.username,
            "role": claims.role,
            "iat": int(issued_at.timestamp()),
            "exp": int((issued_at + self._expire).timestamp()),
        }
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def decode(self, token: str) -> TokenClaims:
        try:
            payload = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except JWTError as exc:
            raise AuthenticationError("Token is not valid") from exc

        user_id = payload.get("sub")
        username = payload.get("username")
        role = payload.get("role")
        if not user_id or not username or not role:
            raise AuthenticationError("Token is missing identity claims")
        return TokenClaims(user_id=str(user_id), username=str(username), role=str(role))
