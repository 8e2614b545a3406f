"""
Newsletter API routes.

- POST /api/newsletters: store one delivered newsletter (mail pipeline, X-Ingest-Key)
- GET  /api/newsletters/{item_id}: item with its content status (owner)
"""
from fastapi import APIRouter, Depends

from letterbox.core.auth import get_current_user_id, require_ingest_key
from letterbox.features.content.service import get_user_item, store_newsletter
from letterbox.models.newsletter import StoreNewsletterRequest


router = APIRouter(prefix="/api/newsletters", tags=["newsletters"])


@router.post("", dependencies=[Depends(require_ingest_key)])
def ingest_newsletter(body: StoreNewsletterRequest):
    """
    Store a newsletter for a user.

    Returns either
        {"skipped": false, "user_item_id", "locked", ...}
    or
        {"skipped": true, "reason": "plan_limit" | "duplicate", ...}

    Skipped stores are normal outcomes and answer 200.
    """
    result = store_newsletter(body)
    return result.model_dump(mode="json")


@router.get("/{item_id}")
def read_newsletter(item_id: str, user_id: str = Depends(get_current_user_id)):
    view = get_user_item(user_id, item_id)
    payload = view.item.model_dump(mode="json")
    payload["content_status"] = view.content_status
    payload["content_url"] = view.content_url
    return payload
