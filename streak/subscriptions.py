"""Subscription state machine.

    free    --upgrade-->                premium
    premium --cancel-->                 free
    premium --update_payment_method-->  premium

Every transition talks to the billing processor first and only then writes
the account, in one atomic update. The processor is the source of truth for
subscriptions; ``billing_*`` columns are a projection of it, reconciled from
webhook events.
"""

import asyncio
import datetime as dt
import weakref
from dataclasses import dataclass, field
from typing import Callable, Optional

from .accounts import notify
from .config import Settings
from .errors import (
    AlreadySubscribed,
    BillingGatewayError,
    CancelFailed,
    ConcurrentUpdate,
    InvalidSignature,
    NoActiveCustomer,
    NoActiveSubscription,
    PaymentUpdateFailed,
    UpgradeFailed,
    ValidationError,
)
from .gateway import PaymentSource, StripeGateway, WebhookEvent
from .log import get_logger
from .mail import Mailer, cancelled_message, payment_failed_message, upgraded_message
from .models import Account, FREE, PREMIUM, utcnow
from .store import AccountStore

logger = get_logger(__name__)

PAYMENT_FAILED = "invoice.payment_failed"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"

BILLING_FIELDS = ("plan", "billing_customer_id", "billing_subscription_id", "billing_source_id")
PAID_STATUSES = ("active", "trialing")


@dataclass(frozen=True)
class Card:
    id: Optional[str] = None
    last4: Optional[str] = None
    brand: Optional[str] = None


@dataclass(frozen=True)
class PaymentToken:
    """A card token produced client-side by Stripe.js."""

    id: str
    card: Card = field(default_factory=Card)


@dataclass(frozen=True)
class WebhookOutcome:
    event_id: str
    event_type: str
    status: str  # processed | duplicate | ignored


class AccountLocks:
    """One asyncio.Lock per account id, dropped once nobody holds it."""

    def __init__(self):
        self._locks = weakref.WeakValueDictionary()

    def get(self, account_id: int) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[account_id] = lock
        return lock


class SubscriptionManager:
    def __init__(
        self,
        store: AccountStore,
        gateway: StripeGateway,
        mailer: Mailer,
        settings: Settings,
        locks: AccountLocks = None,
        clock: Callable[[], dt.datetime] = utcnow,
    ):
        self.store = store
        self.gateway = gateway
        self.mailer = mailer
        self.settings = settings
        self.locks = locks or AccountLocks()
        self.clock = clock

    async def _exclusive(self, account_id: int, operation, *args):
        # shielded so a dropped client connection can't abandon a processor call
        async def run():
            async with self.locks.get(account_id):
                return await operation(account_id, *args)

        return await asyncio.shield(run())

    # -------------------------------------------------------------------------
    # Upgrade
    # -------------------------------------------------------------------------

    async def upgrade(self, account: Account, payment_token: PaymentToken) -> Account:
        if payment_token is None or not payment_token.id:
            raise ValidationError("Provide a payment token.")
        return await self._exclusive(account.id, self._upgrade, payment_token)

    async def _upgrade(self, account_id: int, payment_token: PaymentToken) -> Account:
        account = self.store.get(account_id)
        if account.plan == PREMIUM:
            raise AlreadySubscribed()
        if not self.settings.stripe_price_id:
            logger.error("billing_plan_not_configured")
            raise UpgradeFailed()

        try:
            account, source = await self._customer_for_upgrade(account, payment_token)
            subscription = await self.gateway.create_subscription(
                account.billing_customer_id,
                self.settings.stripe_price_id,
                idempotency_key=f"subscription-{account.id}-{account.billing_customer_id}-{payment_token.id}",
            )
        except BillingGatewayError as exc:
            logger.warning("upgrade_failed", account_id=account.id, error=exc.message)
            raise UpgradeFailed() from exc

        if subscription.status not in PAID_STATUSES:
            logger.warning(
                "upgrade_not_paid",
                account_id=account.id,
                subscription_id=subscription.id,
                status=subscription.status,
            )
            await self._abandon(account, subscription.id)
            raise UpgradeFailed()

        account = self._write_billing(
            account,
            {
                "plan": PREMIUM,
                "billing_subscription_id": subscription.id,
                "billing_source_id": source.id,
                "billing_source_last4": source.last4,
                "billing_source_brand": source.brand,
                "billing_reconciled_at": self.clock(),
            },
        )
        logger.info("upgraded", account_id=account.id, subscription_id=subscription.id)
        await notify(self.mailer, upgraded_message(self.settings.admin_email, account.email))
        return account

    async def _customer_for_upgrade(self, account: Account, payment_token: PaymentToken):
        """Reuse the account's processor customer or create one.

        A newly created customer id is written before the subscription is
        attempted, so a failure there leaves a record the next upgrade reuses.
        """
        if account.billing_customer_id:
            customer = await self.gateway.retrieve_customer(account.billing_customer_id)
            if not customer.deleted:
                source = await self.gateway.attach_source(customer.id, payment_token.id)
                await self.gateway.set_default_source(customer.id, source.id)
                return account, source
            logger.info("billing_customer_deleted", account_id=account.id, customer_id=customer.id)

        customer = await self.gateway.create_customer(
            account.email,
            payment_token.id,
            idempotency_key=f"customer-{account.id}-{payment_token.id}",
        )
        account = self._write_billing(account, {"billing_customer_id": customer.id})
        card = payment_token.card
        source = PaymentSource(id=card.id or payment_token.id, last4=card.last4, brand=card.brand)
        return account, source

    async def _abandon(self, account: Account, subscription_id: str) -> None:
        """Cancel a subscription the processor created but could not charge."""
        try:
            await self.gateway.cancel_subscription(subscription_id)
        except BillingGatewayError as exc:
            logger.error(
                "unpaid_subscription_not_cancelled",
                account_id=account.id,
                subscription_id=subscription_id,
                error=exc.message,
            )

    # -------------------------------------------------------------------------
    # Payment method
    # -------------------------------------------------------------------------

    async def update_payment_method(self, account: Account, payment_token: PaymentToken) -> Account:
        if payment_token is None or not payment_token.id:
            raise ValidationError("Provide a payment token.")
        return await self._exclusive(account.id, self._update_payment_method, payment_token)

    async def _update_payment_method(self, account_id: int, payment_token: PaymentToken) -> Account:
        account = self.store.get(account_id)
        customer_id = account.billing_customer_id
        if not customer_id:
            raise NoActiveCustomer()
        try:
            source = await self.gateway.attach_source(customer_id, payment_token.id)
            await self.gateway.set_default_source(customer_id, source.id)
        except BillingGatewayError as exc:
            logger.warning("payment_update_failed", account_id=account.id, error=exc.message)
            raise PaymentUpdateFailed() from exc

        account = self._write_billing(
            account,
            {
                "billing_source_id": source.id,
                "billing_source_last4": source.last4,
                "billing_source_brand": source.brand,
                "billing_reconciled_at": self.clock(),
            },
        )
        logger.info("payment_method_updated", account_id=account.id)
        return account

    # -------------------------------------------------------------------------
    # Cancel
    # -------------------------------------------------------------------------

    async def cancel_subscription(self, account: Account) -> Account:
        return await self._exclusive(account.id, self._cancel_subscription)

    async def _cancel_subscription(self, account_id: int) -> Account:
        account = self.store.get(account_id)
        subscription_id = account.billing_subscription_id
        if not subscription_id:
            raise NoActiveSubscription()
        try:
            await self.gateway.cancel_subscription(subscription_id)
        except BillingGatewayError as exc:
            logger.warning("cancel_failed", account_id=account.id, error=exc.message)
            raise CancelFailed() from exc

        account = self._write_billing(
            account,
            {"plan": FREE, "billing_subscription_id": None, "billing_reconciled_at": self.clock()},
        )
        logger.info("subscription_cancelled", account_id=account.id, subscription_id=subscription_id)
        await notify(self.mailer, cancelled_message(self.settings.admin_email, account.email))
        return account

    # -------------------------------------------------------------------------
    # Webhooks
    # -------------------------------------------------------------------------

    async def handle_webhook(self, raw_body: bytes, signature: Optional[str]) -> WebhookOutcome:
        """Verify and process one processor event.

        Events are delivered at least once; an event id seen before is
        acknowledged without acting on it again.
        """
        event = self.gateway.verify_webhook(raw_body, signature, self.settings.stripe_webhook_secret)
        if not event.id:
            raise InvalidSignature("Invalid payload")

        now = self.clock()
        self.store.prune_webhook_events(now - dt.timedelta(days=self.settings.webhook_retention_days))
        if not self.store.record_webhook_event(event.id, event.type, now):
            logger.info("webhook_duplicate", event_id=event.id, event_type=event.type)
            return WebhookOutcome(event.id, event.type, "duplicate")

        try:
            status = await self._dispatch(event)
        except Exception:
            # let the processor redeliver it
            self.store.forget_webhook_event(event.id)
            raise
        logger.info("webhook_handled", event_id=event.id, event_type=event.type, status=status)
        return WebhookOutcome(event.id, event.type, status)

    async def _dispatch(self, event: WebhookEvent) -> str:
        if event.type == PAYMENT_FAILED:
            await notify(self.mailer, payment_failed_message(self.settings.admin_email, event.payload))
            return "processed"
        if event.type == SUBSCRIPTION_DELETED:
            return await self._reconcile_deleted_subscription(event)
        return "ignored"

    async def _reconcile_deleted_subscription(self, event: WebhookEvent) -> str:
        subscription_id = event.data.get("id")
        account = self.store.find_by_subscription_id(subscription_id) if subscription_id else None
        if account is None:
            return "ignored"

        async def downgrade(account_id: int) -> Account:
            current = self.store.get(account_id)
            if current.billing_subscription_id != subscription_id:
                return current
            return self._write_billing(
                current,
                {"plan": FREE, "billing_subscription_id": None, "billing_reconciled_at": self.clock()},
            )

        await self._exclusive(account.id, downgrade)
        logger.info("subscription_reconciled", account_id=account.id, subscription_id=subscription_id)
        return "processed"

    def _write_billing(self, account: Account, fields: dict) -> Account:
        """Atomically write billing fields, tolerating unrelated concurrent edits."""
        expected = {name: getattr(account, name) for name in BILLING_FIELDS}
        try:
            return self.store.atomic_update(account.id, fields, expected_version=account.version)
        except ConcurrentUpdate:
            fresh = self.store.get(account.id)
            if fresh is None or any(getattr(fresh, name) != value for name, value in expected.items()):
                logger.error("billing_write_conflict", account_id=account.id, fields=sorted(fields))
                raise
            return self.store.atomic_update(fresh.id, fields, expected_version=fresh.version)
