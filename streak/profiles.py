from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, EmailStr

from .accounts import AccountLifecycleManager
from .deps import get_current_account, get_lifecycle_manager
from .models import Account

router = APIRouter(prefix="/profile", tags=["profile"])


class ProfileIn(BaseModel):
    email: Optional[EmailStr] = None
    prefs: Optional[dict] = None


@router.get("")
async def get_profile(
    account: Account = Depends(get_current_account),
    manager: AccountLifecycleManager = Depends(get_lifecycle_manager),
):
    account = await manager.get_profile(account)
    return account.public_fields()


@router.put("")
async def update_profile(
    payload: ProfileIn,
    account: Account = Depends(get_current_account),
    manager: AccountLifecycleManager = Depends(get_lifecycle_manager),
):
    account = await manager.update_profile(account, email=payload.email, prefs=payload.prefs)
    return account.public_fields()
