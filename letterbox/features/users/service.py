"""
User domain service.
- get_or_create_user(user_id)
- get_user(user_id)
- get_user_by_customer_id(stripe_customer_id)
"""

from typing import Optional
from sqlalchemy import select, insert
from sqlalchemy.exc import IntegrityError

from letterbox.core.database import get_db_session, users, usage_counters, as_utc, utc_now
from letterbox.models.user import User


def _row_to_user(row) -> User:
    return User(
        user_id=row.user_id,
        created_at=as_utc(row.created_at),
        email=row.email,
        display_name=row.display_name,
        plan=row.plan,
        pro_expires_at=as_utc(row.pro_expires_at),
        stripe_customer_id=row.stripe_customer_id,
        stripe_subscription_id=row.stripe_subscription_id,
    )


def get_user(user_id: str) -> Optional[User]:
    with get_db_session() as session:
        row = session.execute(select(users).where(users.c.user_id == user_id)).first()
        return _row_to_user(row) if row else None


def get_user_by_customer_id(stripe_customer_id: str) -> Optional[User]:
    with get_db_session() as session:
        row = session.execute(
            select(users).where(users.c.stripe_customer_id == stripe_customer_id)
        ).first()
        return _row_to_user(row) if row else None


def get_or_create_user(
    user_id: str,
    email: Optional[str] = None,
    display_name: Optional[str] = None,
) -> User:
    """Create the user on the free plan together with zeroed usage counters."""
    existing = get_user(user_id)
    if existing:
        return existing

    try:
        with get_db_session() as session:
            session.execute(
                insert(users).values(
                    user_id=user_id,
                    email=email,
                    display_name=display_name,
                    plan="free",
                    created_at=utc_now(),
                )
            )
            session.execute(insert(usage_counters).values(user_id=user_id, updated_at=utc_now()))
    except IntegrityError:
        # Concurrent signup for the same id; the other insert won
        pass

    return get_user(user_id)
