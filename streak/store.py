"""Persistence for accounts and processed webhook events."""

import datetime as dt
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import ConcurrentUpdate, EmailInUse, InvariantViolation, NotFound
from .log import get_logger
from .models import Account, ProcessedWebhookEvent, FREE, check_invariants, utcnow

logger = get_logger(__name__)


def normalize_email(email: str) -> str:
    return email.strip().lower()


class AccountStore:
    """Owns every read and write of persisted account state.

    Writes go through ``atomic_update``: one UPDATE statement covering all
    touched columns, guarded by the account's ``version`` when the caller
    passes the version it read.
    """

    def __init__(self, db: Session):
        self.db = db

    def get(self, account_id: int) -> Optional[Account]:
        return self.db.get(Account, account_id, populate_existing=True)

    def find_by_email(self, email: str) -> Optional[Account]:
        if not email:
            return None
        return self.db.query(Account).filter(Account.email == normalize_email(email)).first()

    def find_by_federated_id(self, subject: str) -> Optional[Account]:
        return self.db.query(Account).filter(Account.federated_id == subject).first()

    def find_by_reset_token(self, token: str, now: dt.datetime) -> Optional[Account]:
        """Exact token match that has not yet expired."""
        if not token:
            return None
        return (
            self.db.query(Account)
            .filter(Account.reset_token == token)
            .filter(Account.reset_token_expiry > now)
            .first()
        )

    def find_by_billing_customer_id(self, customer_id: str) -> Optional[Account]:
        return self.db.query(Account).filter(Account.billing_customer_id == customer_id).first()

    def find_by_subscription_id(self, subscription_id: str) -> Optional[Account]:
        return self.db.query(Account).filter(Account.billing_subscription_id == subscription_id).first()

    def create(self, email: str, **fields) -> Account:
        email = normalize_email(email)
        if self.find_by_email(email):
            raise EmailInUse()
        fields.setdefault("plan", FREE)
        fields.setdefault("prefs", {})
        fields.setdefault("token_version", 1)
        account = Account(email=email, version=1, created_at=utcnow(), **fields)
        problems = account.check_invariants()
        if problems:
            raise InvariantViolation(details={"problems": problems})
        self.db.add(account)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise EmailInUse()
        self.db.refresh(account)
        logger.info("account_created", account_id=account.id)
        return account

    def atomic_update(self, account_id: int, fields: dict, expected_version: Optional[int] = None) -> Account:
        """Write ``fields`` in a single statement and bump the revision.

        Raises ConcurrentUpdate when ``expected_version`` no longer matches.
        """
        current = self.get(account_id)
        if current is None:
            raise NotFound()
        if expected_version is not None and current.version != expected_version:
            raise ConcurrentUpdate()

        fields = dict(fields)
        if "email" in fields:
            fields["email"] = normalize_email(fields["email"])
            other = self.find_by_email(fields["email"])
            if other is not None and other.id != account_id:
                raise EmailInUse()

        merged = current.column_values()
        merged.update(fields)
        problems = check_invariants(merged)
        if problems:
            logger.error("invariant_violation", account_id=account_id, problems=problems)
            raise InvariantViolation(details={"problems": problems})

        query = self.db.query(Account).filter(Account.id == account_id)
        if expected_version is not None:
            query = query.filter(Account.version == expected_version)
        values = {getattr(Account, name): value for name, value in fields.items()}
        values[Account.version] = Account.version + 1
        try:
            matched = query.update(values, synchronize_session=False)
            if not matched:
                self.db.rollback()
                raise ConcurrentUpdate()
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise EmailInUse()
        return self.get(account_id)

    def record_webhook_event(self, event_id: str, event_type: str, now: Optional[dt.datetime] = None) -> bool:
        """Claim an event id. False means it was already processed."""
        self.db.add(ProcessedWebhookEvent(event_id=event_id, event_type=event_type, received_at=now or utcnow()))
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return False
        return True

    def forget_webhook_event(self, event_id: str):
        self.db.query(ProcessedWebhookEvent).filter(ProcessedWebhookEvent.event_id == event_id).delete()
        self.db.commit()

    def prune_webhook_events(self, older_than: dt.datetime) -> int:
        deleted = (
            self.db.query(ProcessedWebhookEvent)
            .filter(ProcessedWebhookEvent.received_at < older_than)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return deleted
