from fastapi import Depends, HTTPException, Request
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from .accounts import AccountLifecycleManager, FederatedIdentity
from .db import get_db
from .errors import InvalidSessionToken
from .models import Account
from .store import AccountStore
from .subscriptions import SubscriptionManager

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


def get_store(db: Session = Depends(get_db)) -> AccountStore:
    return AccountStore(db)


def get_lifecycle_manager(request: Request, store: AccountStore = Depends(get_store)) -> AccountLifecycleManager:
    state = request.app.state
    return AccountLifecycleManager(
        store=store,
        hasher=state.hasher,
        tokens=state.session_tokens,
        mailer=state.mailer,
        settings=state.settings,
    )


def get_subscription_manager(request: Request, store: AccountStore = Depends(get_store)) -> SubscriptionManager:
    state = request.app.state
    return SubscriptionManager(
        store=store,
        gateway=state.billing_gateway,
        mailer=state.mailer,
        settings=state.settings,
        locks=state.account_locks,
    )


def get_current_account(
    request: Request,
    token: str = Depends(oauth2_scheme),
    store: AccountStore = Depends(get_store),
) -> Account:
    try:
        claims = request.app.state.session_tokens.verify(token)
    except InvalidSessionToken:
        raise HTTPException(status_code=401, detail="Invalid token")
    account = store.get(claims.account_id)
    if not account:
        raise HTTPException(status_code=401, detail="User not found")
    if claims.version != account.token_version:
        # password changed since this token was issued
        raise HTTPException(status_code=401, detail="Invalid token")
    return account


def verified_identity() -> FederatedIdentity:
    """Identity handed over by the federated-login provider integration.

    The provider handshake lives outside this service; the integration
    replaces this dependency (``app.dependency_overrides``) with one that
    returns the identity it verified.
    """
    raise HTTPException(status_code=401, detail="Federated login is not configured")
