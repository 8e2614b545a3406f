"""
Single-flight locks for AI generation.

A lock is a row in ai_generation_locks keyed by lock_key and owned by a
random token. Acquisition is one INSERT under the primary key, so exactly
one caller wins. Expired rows (crashed holders) are taken over with a
conditional UPDATE. Release deletes only the caller's own row.
"""
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterator, Optional
from uuid import uuid4
import logging
from sqlalchemy import delete, insert, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from letterbox.core.database import get_db_session, ai_generation_locks, as_utc, utc_now
from letterbox.core.errors import AiBusyError

logger = logging.getLogger(__name__)


def user_lock_key(user_id: str) -> str:
    return f"ai:user:{user_id}"


def acquire_lock(lock_key: str, ttl_seconds: int, now: Optional[datetime] = None) -> Optional[str]:
    """Try to take the lock without waiting. Returns the owner token, or None if held."""
    now = as_utc(now) if now is not None else utc_now()
    expires_at = now + timedelta(seconds=ttl_seconds)
    token = str(uuid4())

    try:
        with get_db_session() as session:
            session.execute(
                insert(ai_generation_locks).values(
                    lock_key=lock_key,
                    owner_token=token,
                    acquired_at=now,
                    expires_at=expires_at,
                )
            )
        return token
    except IntegrityError:
        pass

    with get_db_session() as session:
        result = session.execute(
            update(ai_generation_locks)
            .where(
                ai_generation_locks.c.lock_key == lock_key,
                ai_generation_locks.c.expires_at <= now,
            )
            .values(owner_token=token, acquired_at=now, expires_at=expires_at)
        )
    if result.rowcount == 1:
        logger.warning(f"[ai] took over expired lock {lock_key}")
        return token
    return None


def release_lock(lock_key: str, token: str) -> bool:
    with get_db_session() as session:
        result = session.execute(
            delete(ai_generation_locks).where(
                ai_generation_locks.c.lock_key == lock_key,
                ai_generation_locks.c.owner_token == token,
            )
        )
    return result.rowcount == 1


@contextmanager
def single_flight(lock_key: str, ttl_seconds: int, now: Optional[datetime] = None) -> Iterator[str]:
    """
    Hold lock_key for the duration of the block.

    Raises:
        AiBusyError: Lock is held by another caller
    """
    token = acquire_lock(lock_key, ttl_seconds, now)
    if token is None:
        raise AiBusyError("A summary is already being generated. Try again shortly.")
    try:
        yield token
    finally:
        try:
            release_lock(lock_key, token)
        except SQLAlchemyError as e:
            # Row expires after ttl_seconds
            logger.error(f"[ai] failed to release lock {lock_key}: {e}")
