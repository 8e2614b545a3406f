from typing import Optional
from pydantic import BaseModel, ConfigDict


class SubscriptionUpdateResult(BaseModel):
    """Outcome of applying one subscription state change to a user."""
    model_config = ConfigDict(frozen=True)

    user_id: Optional[str] = None
    became_pro: bool = False
    is_pro_now: bool = False


class WebhookOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: str
    event_type: str
    deduped: bool = False
    ignored: Optional[str] = None
    malformed: bool = False
    update: Optional[SubscriptionUpdateResult] = None
