from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from apps.helpdesk.core.errors import AuthenticationError
from apps.helpdesk.services.security import AccessTokenCodec, PasswordHasher, TokenClaims


def test_password_hasher_round_trip():
    hasher = PasswordHasher()
    hashed = hasher.hash("correct horse")

    assert hashed != "correct horse"
    assert hasher.verify("correct horse", hashed)
    assert not hasher.verify("battery staple", hashed)
    assert not hasher.verify("correct horse", "not-a-hash")


def test_access_token_carries_identity():
    codec = AccessTokenCodec("secret", expire_minutes=5)
    claims = TokenClaims(user_id="u-1", username="alice", role="agent")

    assert codec.decode(codec.issue(claims)) == claims


def test_expired_token_is_rejected():
    codec = AccessTokenCodec("secret", expire_minutes=5)
    token = codec.issue(
        TokenClaims(user_id="u-1", username="alice", role="agent"),
        now=datetime.now(timezone.utc) - timedelta(hours=1),
    )

    with pytest.raises(AuthenticationError):
        codec.decode(token)


def test_token_signed_with_other_secret_is_rejected():
    token = AccessTokenCodec("other").issue(TokenClaims(user_id="u-1", username="alice", role="agent"))

    with pytest.raises(AuthenticationError):
        AccessTokenCodec("secret").decode(token)
