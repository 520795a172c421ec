from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, EmailStr

from .accounts import AccountLifecycleManager, FederatedIdentity
from .deps import get_lifecycle_manager, verified_identity
from .errors import Mismatch, NotFound
from .log import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


class SignupIn(BaseModel):
    email: Optional[EmailStr] = None
    password: Optional[str] = None
    source: Optional[str] = None


class LoginIn(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


class ResetRequestIn(BaseModel):
    email: Optional[str] = None


class ResetPasswordIn(BaseModel):
    token: Optional[str] = None
    password: Optional[str] = None


@router.post("/signup")
async def signup(payload: SignupIn, manager: AccountLifecycleManager = Depends(get_lifecycle_manager)):
    result = await manager.signup(payload.email, payload.password, payload.source)
    return result.to_response()


@router.post("/login")
async def login(payload: LoginIn, manager: AccountLifecycleManager = Depends(get_lifecycle_manager)):
    try:
        result = await manager.login(payload.email, payload.password)
    except (NotFound, Mismatch):
        # same answer for unknown email and wrong password
        raise Mismatch()
    return result.to_response()


@router.get("/federated/callback")
async def federated_callback(
    identity: FederatedIdentity = Depends(verified_identity),
    manager: AccountLifecycleManager = Depends(get_lifecycle_manager),
):
    result = await manager.federated_login(identity)
    logger.info("federated_redirect", account_id=result.account.id)
    return RedirectResponse(f"{manager.settings.public_url}/login/?token={result.token}", status_code=307)


@router.post("/request-reset")
async def request_reset(payload: ResetRequestIn, manager: AccountLifecycleManager = Depends(get_lifecycle_manager)):
    try:
        await manager.request_password_reset(payload.email)
    except NotFound:
        # don't reveal which emails are registered
        logger.info("password_reset_unknown_email")
    return "Check your email!"


@router.post("/reset-password")
async def reset_password(payload: ResetPasswordIn, manager: AccountLifecycleManager = Depends(get_lifecycle_manager)):
    result = await manager.reset_password(payload.token, payload.password)
    return result.to_response()
