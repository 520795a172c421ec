"""Stripe billing gateway.

Each call runs the blocking Stripe client in a worker thread and is bounded
by ``timeout``; every processor failure surfaces as BillingGatewayError.
The API key travels with each request rather than through ``stripe.api_key``.
"""

import asyncio
import json
from dataclasses import dataclass, field
from typing import Optional

import stripe

from .errors import BillingGatewayError, InvalidSignature
from .log import get_logger

logger = get_logger(__name__)

WEBHOOK_TOLERANCE_SECONDS = 300


def _idempotency(key: Optional[str]) -> dict:
    return {"idempotency_key": key} if key else {}


@dataclass(frozen=True)
class Customer:
    id: str
    deleted: bool = False


@dataclass(frozen=True)
class Subscription:
    id: str
    status: Optional[str] = None


@dataclass(frozen=True)
class PaymentSource:
    id: str
    last4: Optional[str] = None
    brand: Optional[str] = None


@dataclass(frozen=True)
class WebhookEvent:
    id: str
    type: str
    data: dict = field(default_factory=dict)
    payload: dict = field(default_factory=dict)


# Stripe objects are not dicts; read fields as attributes.
def _customer(obj) -> Customer:
    return Customer(id=obj.id, deleted=bool(getattr(obj, "deleted", False)))


def _subscription(obj) -> Subscription:
    return Subscription(id=obj.id, status=getattr(obj, "status", None))


def _payment_source(obj) -> PaymentSource:
    return PaymentSource(id=obj.id, last4=getattr(obj, "last4", None), brand=getattr(obj, "brand", None))


class StripeGateway:
    def __init__(self, api_key: Optional[str], timeout: float = 10.0):
        self.api_key = api_key
        self.timeout = timeout

    async def _call(self, operation: str, build, func, *args, **kwargs):
        """Run ``func`` and convert its response with ``build``."""
        if not self.api_key:
            raise BillingGatewayError("Stripe not configured")
        try:
            response = await asyncio.wait_for(
                asyncio.to_thread(func, *args, api_key=self.api_key, **kwargs),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as exc:
            logger.error("billing_call_timeout", operation=operation, timeout=self.timeout)
            raise BillingGatewayError(f"{operation} timed out") from exc
        except stripe.StripeError as exc:
            logger.error(
                "billing_call_failed",
                operation=operation,
                error=str(exc),
                code=getattr(exc, "code", None),
            )
            raise BillingGatewayError(f"{operation} failed") from exc
        try:
            return build(response)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            logger.error("billing_response_unreadable", operation=operation, error=str(exc))
            raise BillingGatewayError(f"{operation} returned an unreadable response") from exc

    async def create_customer(self, email: str, source_token: str, idempotency_key: str = None) -> Customer:
        return await self._call(
            "create_customer",
            _customer,
            stripe.Customer.create,
            email=email,
            source=source_token,
            **_idempotency(idempotency_key),
        )

    async def retrieve_customer(self, customer_id: str) -> Customer:
        return await self._call("retrieve_customer", _customer, stripe.Customer.retrieve, customer_id)

    async def create_subscription(self, customer_id: str, plan_id: str, idempotency_key: str = None) -> Subscription:
        # a declined first charge fails the call instead of leaving an incomplete subscription
        return await self._call(
            "create_subscription",
            _subscription,
            stripe.Subscription.create,
            customer=customer_id,
            items=[{"price": plan_id}],
            payment_behavior="error_if_incomplete",
            **_idempotency(idempotency_key),
        )

    async def cancel_subscription(self, subscription_id: str) -> Subscription:
        return await self._call("cancel_subscription", _subscription, stripe.Subscription.cancel, subscription_id)

    async def attach_source(self, customer_id: str, token: str) -> PaymentSource:
        return await self._call(
            "attach_source",
            _payment_source,
            stripe.Customer.create_source,
            customer_id,
            source=token,
        )

    async def set_default_source(self, customer_id: str, source_id: str) -> Customer:
        return await self._call(
            "set_default_source",
            _customer,
            stripe.Customer.modify,
            customer_id,
            default_source=source_id,
        )

    def verify_webhook(self, raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> WebhookEvent:
        """Check the Stripe-Signature header against the exact request bytes."""
        if not secret:
            logger.error("webhook_secret_not_configured")
            raise InvalidSignature("Webhook secret not configured")
        if not signature:
            raise InvalidSignature("Missing Stripe signature")
        try:
            stripe.Webhook.construct_event(raw_body, signature, secret, tolerance=WEBHOOK_TOLERANCE_SECONDS)
            payload = json.loads(raw_body)
        except stripe.SignatureVerificationError as exc:
            logger.warning("webhook_signature_invalid", error=str(exc))
            raise InvalidSignature() from exc
        except ValueError as exc:
            logger.warning("webhook_payload_invalid", error=str(exc))
            raise InvalidSignature("Invalid payload") from exc
        return WebhookEvent(
            id=payload.get("id", ""),
            type=payload.get("type", ""),
            data=(payload.get("data") or {}).get("object") or {},
            payload=payload,
        )
