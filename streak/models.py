import datetime as dt

from sqlalchemy.orm import declarative_base
from sqlalchemy import Column, Integer, String, DateTime, JSON

Base = declarative_base()

FREE = "free"
PREMIUM = "premium"
PLANS = (FREE, PREMIUM)


def utcnow() -> dt.datetime:
    """Naive UTC timestamp, the form stored in the database."""
    return dt.datetime.now(dt.timezone.utc).replace(tzinfo=None)


class Account(Base):
    __tablename__ = "accounts"
    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String, unique=True, nullable=False, index=True)
    federated_id = Column(String, unique=True, nullable=True, index=True)
    password_hash = Column(String, nullable=True)
    source = Column(String, nullable=True)
    prefs = Column(JSON, nullable=False, default=dict)

    reset_token = Column(String, nullable=True, index=True)
    reset_token_expiry = Column(DateTime, nullable=True)

    plan = Column(String, nullable=False, default=FREE)
    billing_customer_id = Column(String, nullable=True, index=True)
    billing_subscription_id = Column(String, nullable=True, index=True)
    billing_source_id = Column(String, nullable=True)
    billing_source_last4 = Column(String, nullable=True)
    billing_source_brand = Column(String, nullable=True)
    billing_reconciled_at = Column(DateTime, nullable=True)

    token_version = Column(Integer, nullable=False, default=1)
    version = Column(Integer, nullable=False, default=1)
    last_logged_in = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    def check_invariants(self) -> list[str]:
        return check_invariants(self.column_values())

    def column_values(self) -> dict:
        return {c.name: getattr(self, c.name) for c in self.__table__.columns}

    def public_fields(self) -> dict:
        """The account as it may be shown to its owner."""
        return {
            "id": self.id,
            "email": self.email,
            "plan": self.plan,
            "prefs": self.prefs or {},
            "source": self.source,
            "has_password": self.password_hash is not None,
            "federated": self.federated_id is not None,
            "last_logged_in": self.last_logged_in.isoformat() if self.last_logged_in else None,
            "billing": {
                "source_last4": self.billing_source_last4,
                "source_brand": self.billing_source_brand,
            },
        }


def check_invariants(fields: dict) -> list[str]:
    """Return the account invariants violated by a set of column values."""
    problems = []
    if not fields.get("password_hash") and not fields.get("federated_id"):
        problems.append("account has neither a password nor a federated identity")
    if (fields.get("reset_token") is None) != (fields.get("reset_token_expiry") is None):
        problems.append("reset token and expiry must be set together")
    plan = fields.get("plan")
    if plan not in PLANS:
        problems.append(f"unknown plan {plan!r}")
    elif plan == PREMIUM and not fields.get("billing_subscription_id"):
        problems.append("premium account without a subscription")
    elif plan == FREE and fields.get("billing_subscription_id"):
        problems.append("free account with a subscription")
    return problems


class ProcessedWebhookEvent(Base):
    __tablename__ = "processed_webhook_events"
    event_id = Column(String, primary_key=True)
    event_type = Column(String, nullable=False)
    received_at = Column(DateTime, nullable=False, default=utcnow, index=True)
