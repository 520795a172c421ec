"""Password hashing, session tokens and one-time secrets."""

from dataclasses import dataclass
import datetime as dt
import secrets

import jwt
from passlib.context import CryptContext

from .errors import InvalidSessionToken

RESET_TOKEN_TTL = dt.timedelta(hours=1)
RESET_TOKEN_BYTES = 20


class PasswordHasher:
    def __init__(self, context: CryptContext = None):
        self.context = context or CryptContext(
            schemes=["pbkdf2_sha256", "bcrypt_sha256", "bcrypt"],
            default="pbkdf2_sha256",
            deprecated="auto",
        )

    def hash(self, plaintext: str) -> str:
        return self.context.hash(plaintext[:72])

    def verify(self, plaintext: str, password_hash: str) -> bool:
        if not plaintext or not password_hash:
            return False
        try:
            return self.context.verify(plaintext[:72], password_hash)
        except (ValueError, TypeError):
            # unrecognised or corrupt hash
            return False


@dataclass(frozen=True)
class SessionClaims:
    account_id: int
    version: int
    issued_at: dt.datetime


class SessionTokens:
    """Stateless signed session tokens.

    A token carries the account id, its issue time, an expiry and the
    account's ``token_version``; bumping the version on the account revokes
    every token minted before.
    """

    algorithm = "HS256"

    def __init__(self, secret: str, ttl: dt.timedelta = dt.timedelta(hours=12)):
        self.secret = secret
        self.ttl = ttl

    def mint(self, account) -> str:
        now = dt.datetime.now(dt.timezone.utc)
        payload = {
            "sub": str(account.id),
            "iat": now,
            "exp": now + self.ttl,
            "ver": account.token_version,
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def verify(self, token: str) -> SessionClaims:
        try:
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                options={"require": ["sub", "iat", "exp"]},
            )
            return SessionClaims(
                account_id=int(payload["sub"]),
                version=int(payload.get("ver", 1)),
                issued_at=dt.datetime.fromtimestamp(payload["iat"], dt.timezone.utc),
            )
        except (jwt.PyJWTError, ValueError, TypeError) as exc:
            raise InvalidSessionToken() from exc


def mint_random_secret(byte_length: int = RESET_TOKEN_BYTES) -> str:
    return secrets.token_hex(byte_length)
