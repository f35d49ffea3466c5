from __future__ import annotations

import io
import logging

from fastapi import FastAPI
from fastapi.testclient import TestClient

from apps.helpdesk.core.logging import ActorFilter, bind_actor, reset_actor
from apps.helpdesk.middleware import AuthMiddleware
from apps.helpdesk.services.security import AccessTokenCodec, TokenClaims


def _stamped_actor() -> str:
    record = logging.LogRecord("helpdesk", logging.INFO, __file__, 1, "msg", None, None)
    ActorFilter().filter(record)
    return record.actor


def test_actor_filter_defaults_to_dash_and_follows_binding():
    assert _stamped_actor() == "-"

    token = bind_actor("alice")
    try:
        assert _stamped_actor() == "alice"
    finally:
        reset_actor(token)

    assert _stamped_actor() == "-"


def test_actor_appears_in_formatted_records():
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.addFilter(ActorFilter())
    handler.setFormatter(logging.Formatter("[%(actor)s] %(message)s"))
    logger = logging.getLogger("apps.helpdesk.tests.actor")
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    logger.propagate = False

    token = bind_actor("bob")
    try:
        logger.info("ticket updated")
    finally:
        reset_actor(token)
        logger.removeHandler(handler)

    assert stream.getvalue().strip() == "[bob] ticket updated"


def test_middleware_binds_the_caller_for_the_request():
    codec = AccessTokenCodec("test-secret")
    app = FastAPI()
    app.state.token_codec = codec
    app.add_middleware(AuthMiddleware)

    @app.get("/who")
    async def who() -> dict[str, str]:
        return {"actor": _stamped_actor()}

    client = TestClient(app)
    token = codec.issue(TokenClaims(user_id="u-1", username="carol", role="agent"))

    assert client.get("/who", headers={"Authorization": f"Bearer {token}"}).json() == {"actor": "carol"}
    assert client.get("/who").json() == {"actor": "-"}
