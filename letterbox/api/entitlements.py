"""Entitlements API: plan, caps and usage for the caller."""
from fastapi import APIRouter, Depends

from letterbox.core.auth import get_current_user_id
from letterbox.features.entitlements.service import get_entitlements
from letterbox.features.users.service import get_or_create_user


router = APIRouter(prefix="/api", tags=["entitlements"])


@router.get("/entitlements")
def read_entitlements(user_id: str = Depends(get_current_user_id)):
    get_or_create_user(user_id)
    return get_entitlements(user_id).model_dump(mode="json")
