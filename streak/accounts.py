"""Account lifecycle: signup, login, federated login and password reset."""

from dataclasses import dataclass
import datetime as dt
from typing import Callable, Optional

from .config import Settings
from .errors import (
    ConcurrentUpdate,
    FederatedOnly,
    InvalidOrExpiredToken,
    MissingCredentials,
    Mismatch,
    NotFound,
    ValidationError,
)
from .log import get_logger
from .mail import Mailer, Message, new_user_message, reset_password_message
from .models import Account, utcnow
from .security import RESET_TOKEN_TTL, PasswordHasher, SessionTokens, mint_random_secret
from .store import AccountStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class FederatedIdentity:
    """An identity already verified by the external provider."""

    subject: str
    email: str


@dataclass(frozen=True)
class AuthResult:
    token: str
    account: Account

    def to_response(self) -> dict:
        return {"token": self.token, **self.account.public_fields()}


async def notify(mailer: Mailer, message: Message):
    """Send a notification; failures are logged, never raised."""
    try:
        await mailer.send(message)
    except Exception:
        logger.exception("notification_failed", to=message.to, subject=message.subject)


class AccountLifecycleManager:
    def __init__(
        self,
        store: AccountStore,
        hasher: PasswordHasher,
        tokens: SessionTokens,
        mailer: Mailer,
        settings: Settings,
        clock: Callable[[], dt.datetime] = utcnow,
    ):
        self.store = store
        self.hasher = hasher
        self.tokens = tokens
        self.mailer = mailer
        self.settings = settings
        self.clock = clock

    def _issue(self, account: Account) -> AuthResult:
        return AuthResult(token=self.tokens.mint(account), account=account)

    async def signup(self, email: Optional[str], password: Optional[str], source: Optional[str] = None) -> AuthResult:
        if not email or not password:
            raise MissingCredentials()
        account = self.store.create(
            email,
            password_hash=self.hasher.hash(password),
            source=source,
            last_logged_in=self.clock(),
        )
        logger.info("signup", account_id=account.id, source=source)
        await notify(self.mailer, new_user_message(self.settings.admin_email, account.email, source))
        return self._issue(account)

    async def login(self, email: Optional[str], password: Optional[str]) -> AuthResult:
        if not email or not password:
            raise MissingCredentials()
        account = self.store.find_by_email(email)
        if account is None:
            raise NotFound()
        if account.federated_id and not account.password_hash:
            raise FederatedOnly()
        if not self.hasher.verify(password, account.password_hash):
            logger.info("login_mismatch", account_id=account.id)
            raise Mismatch()
        account = self.store.atomic_update(account.id, {"last_logged_in": self._touch(account)})
        logger.info("login", account_id=account.id)
        return self._issue(account)

    async def federated_login(self, identity: FederatedIdentity) -> AuthResult:
        """Log in (creating or linking the account) after an upstream provider
        has verified ``identity``. The caller hands the token back through a
        redirect, not a response body."""
        if not identity.subject or not identity.email:
            raise ValidationError("Federated identity is incomplete")
        account = self.store.find_by_federated_id(identity.subject)
        if account is None:
            account = self.store.find_by_email(identity.email)
            if account is not None:
                account = self.store.atomic_update(account.id, {"federated_id": identity.subject})
                logger.info("federated_identity_linked", account_id=account.id)
            else:
                account = self.store.create(identity.email, federated_id=identity.subject, source="google")
                await notify(self.mailer, new_user_message(self.settings.admin_email, account.email, "google"))
        account = self.store.atomic_update(account.id, {"last_logged_in": self._touch(account)})
        logger.info("federated_login", account_id=account.id)
        return self._issue(account)

    async def request_password_reset(self, email: Optional[str]) -> Account:
        if not email:
            raise ValidationError("Provide email.")
        account = self.store.find_by_email(email)
        if account is None:
            raise NotFound()
        token = mint_random_secret()
        account = self.store.atomic_update(
            account.id,
            {"reset_token": token, "reset_token_expiry": self.clock() + RESET_TOKEN_TTL},
        )
        logger.info("password_reset_requested", account_id=account.id)
        await notify(self.mailer, reset_password_message(account.email, self.settings.public_url, token))
        return account

    async def reset_password(self, token: Optional[str], new_password: Optional[str]) -> AuthResult:
        if not new_password:
            raise MissingCredentials("Provide a new password.")
        now = self.clock()
        account = self.store.find_by_reset_token(token, now)
        if account is None:
            raise InvalidOrExpiredToken()
        try:
            account = self.store.atomic_update(
                account.id,
                {
                    "password_hash": self.hasher.hash(new_password),
                    "reset_token": None,
                    "reset_token_expiry": None,
                    "token_version": account.token_version + 1,
                    "last_logged_in": self._touch(account, now),
                },
                expected_version=account.version,
            )
        except ConcurrentUpdate:
            # another request consumed or replaced the token first
            logger.info("password_reset_raced", account_id=account.id)
            raise InvalidOrExpiredToken()
        logger.info("password_reset", account_id=account.id)
        return self._issue(account)

    async def get_profile(self, account: Account) -> Account:
        return self.store.atomic_update(account.id, {"last_logged_in": self._touch(account)})

    async def update_profile(self, account: Account, email: Optional[str] = None, prefs: Optional[dict] = None) -> Account:
        fields = {}
        if email is not None:
            if not email.strip():
                raise ValidationError("Email can't be empty.")
            fields["email"] = email
        if prefs is not None:
            fields["prefs"] = prefs
        if not fields:
            return account
        return self.store.atomic_update(account.id, fields)

    def _touch(self, account: Account, now: dt.datetime = None) -> dt.datetime:
        # lastLoggedIn never moves backwards
        now = now or self.clock()
        if account.last_logged_in and account.last_logged_in > now:
            return account.last_logged_in
        return now
