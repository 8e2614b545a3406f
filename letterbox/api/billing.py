"""
Billing API routes.

- POST /api/billing/webhook: Stripe webhooks (signature verified, idempotent)
- POST /api/billing/checkout: hosted checkout for Pro
- POST /api/billing/portal: customer portal
- POST /api/billing/sync: pull subscription state from Stripe
"""
from typing import Literal
from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel

from letterbox.core.auth import get_current_user_id
from letterbox.features.billing.service import (
    process_webhook_event,
    start_checkout,
    start_portal,
    sync_subscription_from_provider,
)


router = APIRouter(prefix="/api/billing", tags=["billing"])


class CheckoutRequest(BaseModel):
    interval: Literal["monthly", "annual"] = "monthly"


class UrlResponse(BaseModel):
    url: str


@router.post("/webhook")
async def handle_webhook(request: Request):
    """
    Handle Stripe webhook events.

    Returns:
        {"received": true, "event_id", "deduped", "ignored", "malformed"}

    Errors:
        400: Invalid signature or payload (Stripe redelivers)
    """
    # Raw body is required for signature verification
    body = await request.body()
    headers = dict(request.headers)

    outcome = await run_in_threadpool(process_webhook_event, headers, body)
    return {
        "received": True,
        "event_id": outcome.event_id,
        "deduped": outcome.deduped,
        "ignored": outcome.ignored,
        "malformed": outcome.malformed,
    }


@router.post("/checkout", response_model=UrlResponse)
def create_checkout(body: CheckoutRequest, user_id: str = Depends(get_current_user_id)):
    return {"url": start_checkout(user_id, body.interval)}


@router.post("/portal", response_model=UrlResponse)
def create_portal(user_id: str = Depends(get_current_user_id)):
    return {"url": start_portal(user_id)}


@router.post("/sync")
def sync_subscription(user_id: str = Depends(get_current_user_id)):
    return sync_subscription_from_provider(user_id).model_dump(mode="json")
