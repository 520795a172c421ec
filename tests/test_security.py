import datetime as dt
from types import SimpleNamespace

import jwt
import pytest

from streak.errors import InvalidSessionToken
from streak.security import PasswordHasher, SessionTokens, mint_random_secret


def test_hash_and_verify():
    hasher = PasswordHasher()
    hashed = hasher.hash("correct horse")
    assert hashed != "correct horse"
    assert hasher.verify("correct horse", hashed)
    assert not hasher.verify("battery staple", hashed)


def test_verify_tolerates_garbage_hash():
    hasher = PasswordHasher()
    assert not hasher.verify("pw", "not-a-hash")
    assert not hasher.verify("pw", None)


def test_session_token_carries_subject_and_version():
    tokens = SessionTokens("secret")
    token = tokens.mint(SimpleNamespace(id=7, token_version=3))
    claims = tokens.verify(token)
    assert claims.account_id == 7
    assert claims.version == 3


def test_session_token_signed_with_other_secret_is_rejected():
    token = SessionTokens("secret").mint(SimpleNamespace(id=7, token_version=1))
    with pytest.raises(InvalidSessionToken):
        SessionTokens("another").verify(token)


def test_expired_session_token_is_rejected():
    past = dt.datetime.now(dt.timezone.utc) - dt.timedelta(days=2)
    token = jwt.encode(
        {"sub": "7", "iat": past, "exp": past + dt.timedelta(hours=1), "ver": 1},
        "secret",
        algorithm="HS256",
    )
    with pytest.raises(InvalidSessionToken):
        SessionTokens("secret").verify(token)


def test_garbage_session_token_is_rejected():
    with pytest.raises(InvalidSessionToken):
        SessionTokens("secret").verify("abc.def.ghi")


def test_random_secret_is_hex_of_requested_length():
    secret = mint_random_secret(20)
    assert len(secret) == 40
    int(secret, 16)
    assert mint_random_secret() != mint_random_secret()
