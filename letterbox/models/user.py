from datetime import datetime
from typing import Literal, Optional
from pydantic import BaseModel, ConfigDict

PlanName = Literal["free", "pro"]


class User(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    created_at: datetime
    email: Optional[str] = None
    display_name: Optional[str] = None
    plan: PlanName = "free"
    pro_expires_at: Optional[datetime] = None
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
