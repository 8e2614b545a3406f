"""
Scheduled plan expiry sweep.

Plan gates already treat a lapsed pro_expires_at as free at read time.
This job makes the stored plan agree for users whose provider stopped
sending events after the paid period ended.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional
import logging
from sqlalchemy import or_, select, update

from letterbox.core.database import get_db_session, users, as_utc, utc_now

logger = logging.getLogger(__name__)


def _lapsed(now: datetime):
    # A pro row without an expiry is treated as lapsed too
    return or_(users.c.pro_expires_at <= now, users.c.pro_expires_at.is_(None))


def expire_lapsed_plans(now: Optional[datetime] = None, limit: int = 500) -> Dict[str, Any]:
    """Revert up to `limit` lapsed pro users to free. Returns a run summary."""
    now = as_utc(now) if now is not None else utc_now()

    with get_db_session() as session:
        rows = session.execute(
            select(users.c.user_id)
            .where(users.c.plan == "pro", _lapsed(now))
            .order_by(users.c.pro_expires_at)
            .limit(limit)
        ).fetchall()
        expired = [row.user_id for row in rows]

        if expired:
            # Re-check the expiry so a renewal applied since the select wins
            session.execute(
                update(users)
                .where(
                    users.c.user_id.in_(expired),
                    users.c.plan == "pro",
                    _lapsed(now),
                )
                .values(plan="free", pro_expires_at=None)
            )

    if expired:
        logger.info(f"[billing] expired {len(expired)} lapsed pro plans")
    return {"ran_at": now.isoformat(), "expired": len(expired), "user_ids": expired}


