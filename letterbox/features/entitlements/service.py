"""
letterbox/features/entitlements/service.py

Entitlement gate.

Handles:
- Plan checks (pro is plan == "pro" with an unexpired paid period)
- Storage quota policy: unlocked up to the base cap, locked up to the
  hard cap, rejected beyond it
- Atomic counter bookkeeping for every accepted store
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional
import logging
from sqlalchemy import select, insert, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from letterbox.core.config import settings
from letterbox.core.database import get_db_session, usage_counters, user_items, as_utc, utc_now
from letterbox.core.errors import NotFoundError, ProRequiredError
from letterbox.features.users.service import get_user
from letterbox.models.entitlement import Entitlements, UsageCounters
from letterbox.models.user import User


logger = logging.getLogger(__name__)


class QuotaDecision(str, Enum):
    """Outcome of the storage quota policy for one store."""
    UNLOCKED = "UNLOCKED"
    LOCKED = "LOCKED"
    REJECT = "REJECT"


@dataclass(frozen=True)
class QuotaPolicy:
    """Caps for one plan; None means unbounded."""
    unlocked_cap: Optional[int]
    hard_cap: Optional[int]


UNBOUNDED = QuotaPolicy(unlocked_cap=None, hard_cap=None)


def _normalize_now(now: Optional[datetime]) -> datetime:
    return as_utc(now) if now is not None else utc_now()


def free_plan_policy() -> QuotaPolicy:
    return QuotaPolicy(
        unlocked_cap=settings.UNLOCKED_NEWSLETTERS_CAP,
        hard_cap=settings.HARD_NEWSLETTERS_CAP,
    )


def is_user_pro(user: Optional[User], now: Optional[datetime] = None) -> bool:
    """Pro only while the paid period is still running."""
    if user is None or user.plan != "pro" or user.pro_expires_at is None:
        return False
    return as_utc(user.pro_expires_at) > _normalize_now(now)


def require_pro(user: Optional[User], now: Optional[datetime] = None) -> User:
    if not is_user_pro(user, now):
        raise ProRequiredError("Pro is required for this feature.")
    return user


def policy_for_user(user: Optional[User], now: Optional[datetime] = None) -> QuotaPolicy:
    return UNBOUNDED if is_user_pro(user, now) else free_plan_policy()


def decide_quota(counters: UsageCounters, policy: QuotaPolicy) -> QuotaDecision:
    """Pure form of the quota policy, evaluated against a counters snapshot."""
    if policy.unlocked_cap is None or counters.unlocked_stored < policy.unlocked_cap:
        return QuotaDecision.UNLOCKED
    if policy.hard_cap is None or counters.total_stored < policy.hard_cap:
        return QuotaDecision.LOCKED
    return QuotaDecision.REJECT


def apply_quota(session: Session, user_id: str, policy: QuotaPolicy) -> QuotaDecision:
    """
    Evaluate and apply the quota policy inside the caller's transaction.

    Each branch is a single conditional UPDATE, so the cap check and the
    increment happen atomically on the counters row. Concurrent stores for
    the same user serialize on that row and can never overshoot a cap.
    Rejection leaves the counters untouched.
    """
    now = utc_now()

    unlocked = update(usage_counters).where(usage_counters.c.user_id == user_id)
    if policy.unlocked_cap is not None:
        unlocked = unlocked.where(usage_counters.c.unlocked_stored < policy.unlocked_cap)
    result = session.execute(
        unlocked.values(
            unlocked_stored=usage_counters.c.unlocked_stored + 1,
            total_stored=usage_counters.c.total_stored + 1,
            updated_at=now,
        )
    )
    if result.rowcount == 1:
        return QuotaDecision.UNLOCKED

    locked = update(usage_counters).where(usage_counters.c.user_id == user_id)
    if policy.hard_cap is not None:
        locked = locked.where(usage_counters.c.total_stored < policy.hard_cap)
    result = session.execute(
        locked.values(
            locked_stored=usage_counters.c.locked_stored + 1,
            total_stored=usage_counters.c.total_stored + 1,
            updated_at=now,
        )
    )
    if result.rowcount == 1:
        return QuotaDecision.LOCKED

    return QuotaDecision.REJECT


def get_usage_counters(user_id: str) -> Optional[UsageCounters]:
    with get_db_session() as session:
        row = session.execute(
            select(usage_counters).where(usage_counters.c.user_id == user_id)
        ).first()
        if not row:
            return None
        return UsageCounters(
            total_stored=row.total_stored,
            unlocked_stored=row.unlocked_stored,
            locked_stored=row.locked_stored,
        )


def recompute_usage_counters(user_id: str) -> UsageCounters:
    """Count the user's stored items by lock state."""
    with get_db_session() as session:
        rows = session.execute(
            select(user_items.c.is_locked_by_plan, func.count())
            .where(user_items.c.user_id == user_id)
            .group_by(user_items.c.is_locked_by_plan)
        ).all()
    locked = sum(count for is_locked, count in rows if is_locked)
    unlocked = sum(count for is_locked, count in rows if not is_locked)
    return UsageCounters(total_stored=locked + unlocked, unlocked_stored=unlocked, locked_stored=locked)


def ensure_usage_counters(user_id: str) -> UsageCounters:
    """
    Return the counters row, seeding it from stored items when missing.

    Users created through get_or_create_user already have a row; this
    covers rows lost to manual cleanup or older data.
    """
    existing = get_usage_counters(user_id)
    if existing is not None:
        return existing

    rebuilt = recompute_usage_counters(user_id)
    try:
        with get_db_session() as session:
            session.execute(
                insert(usage_counters).values(
                    user_id=user_id,
                    total_stored=rebuilt.total_stored,
                    unlocked_stored=rebuilt.unlocked_stored,
                    locked_stored=rebuilt.locked_stored,
                    updated_at=utc_now(),
                )
            )
        logger.warning(
            "[entitlements] usage counters rebuilt from items",
            extra={"user_id": user_id, "outcome": "rebuilt"},
        )
    except IntegrityError:
        # Seeded concurrently
        pass
    return get_usage_counters(user_id)


def get_entitlements(user_id: str, now: Optional[datetime] = None) -> Entitlements:
    """Plan, caps and usage for a user."""
    user = get_user(user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")

    pro = is_user_pro(user, now)
    policy = UNBOUNDED if pro else free_plan_policy()
    return Entitlements(
        plan=user.plan,
        is_pro=pro,
        pro_expires_at=user.pro_expires_at,
        unlocked_cap=policy.unlocked_cap,
        hard_cap=policy.hard_cap,
        ai_daily_limit=settings.AI_DAILY_LIMIT,
        usage=get_usage_counters(user_id),
    )
