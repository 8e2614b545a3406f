"""
Entitlement snapshot returned to callers.

Caps are None for unbounded plans.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict

from letterbox.models.user import PlanName


class UsageCounters(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_stored: int = 0
    unlocked_stored: int = 0
    locked_stored: int = 0


class Entitlements(BaseModel):
    model_config = ConfigDict(frozen=True)

    plan: PlanName
    is_pro: bool
    pro_expires_at: Optional[datetime] = None
    unlocked_cap: Optional[int]
    hard_cap: Optional[int]
    ai_daily_limit: int
    usage: Optional[UsageCounters] = None
