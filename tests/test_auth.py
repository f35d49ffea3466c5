from __future__ import annotations

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from apps.helpdesk.core.errors import PermissionDeniedError, register_exception_handlers
from apps.helpdesk.dependencies.auth import Actor, CurrentActor, get_current_actor, role_required
from apps.helpdesk.middleware import AuthMiddleware
from apps.helpdesk.services.security import AccessTokenCodec, TokenClaims
from apps.helpdesk.services.users import Role


@pytest.mark.asyncio
async def test_role_required_allows_authorized_actor():
    dependency = role_required(Role.ADMIN, Role.MANAGER)
    actor = Actor("u-1", "alice", Role.MANAGER)

    result = await dependency(actor)  # type: ignore[arg-type]

    assert result.username == "alice"


@pytest.mark.asyncio
async def test_role_required_rejects_unauthorized_actor():
    dependency = role_required(Role.ADMIN)
    actor = Actor("u-2", "bob", Role.AGENT)

    with pytest.raises(PermissionDeniedError) as exc:
        await dependency(actor)  # type: ignore[arg-type]

    assert exc.value.status_code == 403
    assert exc.value.message == "Insufficient permissions"


def _client() -> tuple[TestClient, AccessTokenCodec]:
    codec = AccessTokenCodec("test-secret")
    app = FastAPI()
    app.state.token_codec = codec
    app.add_middleware(AuthMiddleware)
    register_exception_handlers(app)

    @app.get("/whoami")
    async def whoami(actor: CurrentActor) -> dict[str, str]:
        return {"username": actor.username, "role": actor.role.value}

    @app.get("/admin", dependencies=[Depends(role_required(Role.ADMIN))])
    async def admin_only() -> dict[str, str]:
        return {"status": "ok"}

    return TestClient(app), codec


def _bearer(codec: AccessTokenCodec, role: str) -> dict[str, str]:
    token = codec.issue(TokenClaims(user_id="u-1", username="alice", role=role))
    return {"Authorization": f"Bearer {token}"}


def test_valid_token_resolves_actor():
    client, codec = _client()

    response = client.get("/whoami", headers=_bearer(codec, "supervisor"))

    assert response.status_code == 200
    assert response.json() == {"username": "alice", "role": "supervisor"}


def test_missing_token_is_unauthorized():
    client, _ = _client()

    response = client.get("/whoami")

    assert response.status_code == 401
    assert response.json() == {"error": "Authentication Failed", "details": "Authentication required"}


def test_middleware_rejects_bad_scheme_and_bad_token():
    client, _ = _client()

    basic = client.get("/whoami", headers={"Authorization": "Basic abc"})
    forged = client.get("/whoami", headers={"Authorization": "Bearer not-a-jwt"})

    assert basic.status_code == 401
    assert forged.status_code == 401
    assert forged.json()["error"] == "Authentication Failed"


def test_role_gate_uses_token_role():
    client, codec = _client()

    denied = client.get("/admin", headers=_bearer(codec, "agent"))

    assert denied.status_code == 403
    assert denied.json() == {"error": "Forbidden", "details": "Insufficient permissions"}
    assert client.get("/admin", headers=_bearer(codec, "admin")).status_code == 200


def test_get_current_actor_is_overridable():
    client, _ = _client()
    client.app.dependency_overrides[get_current_actor] = lambda: Actor("u-9", "root", Role.ADMIN)

    assert client.get("/admin").status_code == 200
