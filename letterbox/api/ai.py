"""
AI summary API routes.

- POST /api/ai/summaries/{item_id}: generate (or return cached) summary
- GET  /api/ai/summaries/{item_id}: stored summary, if any

Admission failures surface as AppError codes: PRO_REQUIRED, AI_LIMIT_REACHED,
AI_COOLDOWN, AI_BUSY, AI_TIMEOUT.
"""
from typing import Optional
from fastapi import APIRouter, Depends
from pydantic import BaseModel

from letterbox.core.auth import get_current_user_id
from letterbox.features.ai.service import generate_summary, get_summary


router = APIRouter(prefix="/api/ai", tags=["ai"])


class GenerateSummaryRequest(BaseModel):
    force_regenerate: bool = False


@router.post("/summaries/{item_id}")
def create_summary(
    item_id: str,
    body: Optional[GenerateSummaryRequest] = None,
    user_id: str = Depends(get_current_user_id),
):
    force = body.force_regenerate if body else False
    result = generate_summary(user_id, item_id, force_regenerate=force)
    return result.model_dump(mode="json")


@router.get("/summaries/{item_id}")
def read_summary(item_id: str, user_id: str = Depends(get_current_user_id)):
    return get_summary(user_id, item_id).model_dump(mode="json")
