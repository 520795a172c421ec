from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from .deps import get_current_account, get_subscription_manager
from .models import Account
from .subscriptions import Card, PaymentToken, SubscriptionManager

router = APIRouter(prefix="/billing", tags=["billing"])


class CardIn(BaseModel):
    id: Optional[str] = None
    last4: Optional[str] = None
    brand: Optional[str] = None


class TokenIn(BaseModel):
    id: str
    card: CardIn = CardIn()


class PaymentIn(BaseModel):
    token: TokenIn

    def payment_token(self) -> PaymentToken:
        card = self.token.card
        return PaymentToken(id=self.token.id, card=Card(id=card.id, last4=card.last4, brand=card.brand))


@router.get("/status")
def status(account: Account = Depends(get_current_account)):
    return {"plan": account.plan, "billing": account.public_fields()["billing"]}


@router.post("/upgrade")
async def upgrade(
    payload: PaymentIn,
    account: Account = Depends(get_current_account),
    manager: SubscriptionManager = Depends(get_subscription_manager),
):
    account = await manager.upgrade(account, payload.payment_token())
    return account.public_fields()


@router.post("/payment-method")
async def update_payment_method(
    payload: PaymentIn,
    account: Account = Depends(get_current_account),
    manager: SubscriptionManager = Depends(get_subscription_manager),
):
    account = await manager.update_payment_method(account, payload.payment_token())
    return account.public_fields()


@router.post("/cancel")
async def cancel_subscription(
    account: Account = Depends(get_current_account),
    manager: SubscriptionManager = Depends(get_subscription_manager),
):
    account = await manager.cancel_subscription(account)
    return account.public_fields()


@router.post("/webhook")
async def stripe_webhook(request: Request, manager: SubscriptionManager = Depends(get_subscription_manager)):
    # signature is computed over the exact bytes, so read the raw body
    payload = await request.body()
    outcome = await manager.handle_webhook(payload, request.headers.get("stripe-signature"))
    return {"received": True, "status": outcome.status}
