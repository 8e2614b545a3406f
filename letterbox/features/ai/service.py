"""
letterbox/features/ai/service.py

AI summary generation controller.

Admission, in order:
1. Plan (pro required)
2. Ownership
3. Cached summary short-circuit (unless force_regenerate)
4. Daily limit per user (UTC day bucket)
5. Cooldown since the item's last summary
6. Single-flight lock per user, then the daily limit again under the lock

The provider call happens while the lock is held and the lock is released
on every exit path. Counters and summaries change only on success.
"""

from datetime import datetime, timedelta
from typing import Optional
import logging
from sqlalchemy import select, insert, update

from letterbox.core.config import settings
from letterbox.core.database import get_db_session, ai_usage_daily, shared_contents, user_items, as_utc, utc_now
from letterbox.core.errors import (
    AiCooldownError,
    AiLimitReachedError,
    AiTimeoutError,
    AiUnavailableError,
)
from letterbox.core.logging import log_event
from letterbox.core.metrics import ai_generation_total
from letterbox.features.ai.locks import single_flight, user_lock_key
from letterbox.features.ai.prompts import SUMMARY_SYSTEM_PROMPT, summary_user_prompt
from letterbox.features.ai.provider import CompletionProvider, ProviderError, ProviderTimeoutError, get_provider
from letterbox.features.content.normalization import strip_html_to_text
from letterbox.features.content.service import get_owned_item, get_shared_content, load_item_body
from letterbox.features.entitlements.service import require_pro
from letterbox.features.storage.blob_store import BlobStore
from letterbox.features.users.service import get_user
from letterbox.models.newsletter import SharedContent, SummaryResult, UserItem


logger = logging.getLogger(__name__)


def day_bucket(now: datetime) -> str:
    """UTC calendar day as YYYY-MM-DD."""
    return as_utc(now).strftime("%Y-%m-%d")


def _normalize_now(now: Optional[datetime]) -> datetime:
    return as_utc(now) if now is not None else utc_now()


def get_daily_usage(user_id: str, now: Optional[datetime] = None) -> int:
    day = day_bucket(_normalize_now(now))
    with get_db_session() as session:
        row = session.execute(
            select(ai_usage_daily.c.count).where(
                ai_usage_daily.c.user_id == user_id,
                ai_usage_daily.c.day == day,
            )
        ).first()
    return row.count if row else 0


def _increment_daily_usage(session, user_id: str, now: datetime) -> None:
    # Runs under the per-user generation lock, so the first-of-day insert cannot race
    day = day_bucket(now)
    result = session.execute(
        update(ai_usage_daily)
        .where(ai_usage_daily.c.user_id == user_id, ai_usage_daily.c.day == day)
        .values(count=ai_usage_daily.c.count + 1, updated_at=now)
    )
    if result.rowcount == 0:
        session.execute(
            insert(ai_usage_daily).values(user_id=user_id, day=day, count=1, updated_at=now)
        )


def _check_daily_limit(user_id: str, now: datetime) -> None:
    used = get_daily_usage(user_id, now)
    if used >= settings.AI_DAILY_LIMIT:
        raise AiLimitReachedError(
            f"Daily AI summary limit reached ({settings.AI_DAILY_LIMIT}). Try again tomorrow."
        )


def _resolve_summary(item: UserItem, shared: Optional[SharedContent]) -> Optional[SummaryResult]:
    """Personal summary first, then the shared one."""
    if item.summary:
        return SummaryResult(summary=item.summary, is_shared=False, generated_at=item.summary_generated_at, cached=True)
    if shared is not None and shared.summary:
        return SummaryResult(summary=shared.summary, is_shared=True, generated_at=shared.summary_generated_at, cached=True)
    return None


def _last_generated_at(item: UserItem, shared: Optional[SharedContent]) -> Optional[datetime]:
    stamps = [item.summary_generated_at]
    if shared is not None:
        stamps.append(shared.summary_generated_at)
    stamps = [as_utc(s) for s in stamps if s is not None]
    return max(stamps) if stamps else None


def _check_cooldown(item: UserItem, shared: Optional[SharedContent], now: datetime) -> None:
    last = _last_generated_at(item, shared)
    if last is None:
        return
    ready_at = last + timedelta(seconds=settings.AI_COOLDOWN_SECONDS)
    if now < ready_at:
        wait = int((ready_at - now).total_seconds()) + 1
        raise AiCooldownError(f"Please wait {wait} seconds before regenerating this summary.")


def _store_summary(user_id: str, item: UserItem, summary: str, on_shared: bool, now: datetime) -> None:
    with get_db_session() as session:
        if on_shared:
            session.execute(
                update(shared_contents)
                .where(shared_contents.c.id == item.shared_content_id)
                .values(summary=summary, summary_generated_at=now)
            )
        else:
            session.execute(
                update(user_items)
                .where(user_items.c.id == item.id)
                .values(summary=summary, summary_generated_at=now)
            )
        _increment_daily_usage(session, user_id, now)


def _fail(outcome: str, user_id: str, item_id: str, error):
    ai_generation_total.inc({"outcome": outcome})
    log_event("warning", "ai.summary.failed", user_id=user_id, item_id=item_id, error_code=outcome)
    return error


def generate_summary(
    user_id: str,
    item_id: str,
    force_regenerate: bool = False,
    provider: Optional[CompletionProvider] = None,
    blob_store: Optional[BlobStore] = None,
    now: Optional[datetime] = None,
) -> SummaryResult:
    """
    Generate (or return the cached) summary for one of the user's newsletters.

    Raises:
        ProRequiredError, NotFoundError, PermissionError,
        AiLimitReachedError, AiCooldownError, AiBusyError,
        AiTimeoutError, AiUnavailableError, ContentUnavailableError,
        ConfigError
    """
    now = _normalize_now(now)

    require_pro(get_user(user_id), now)
    item = get_owned_item(user_id, item_id)
    shared = get_shared_content(item.shared_content_id) if item.shared_content_id else None

    if not force_regenerate:
        cached = _resolve_summary(item, shared)
        if cached is not None:
            ai_generation_total.inc({"outcome": "cached"})
            return cached

    _check_daily_limit(user_id, now)
    _check_cooldown(item, shared, now)

    completion = provider or get_provider()

    with single_flight(user_lock_key(user_id), settings.AI_LOCK_TTL_SECONDS, now):
        _check_daily_limit(user_id, now)

        text = strip_html_to_text(load_item_body(item, blob_store))
        text = text[: settings.AI_MAX_CONTENT_CHARS]

        try:
            summary = completion.complete(
                SUMMARY_SYSTEM_PROMPT,
                summary_user_prompt(text),
                settings.AI_TIMEOUT_MS,
            )
        except ProviderTimeoutError:
            raise _fail("AI_TIMEOUT", user_id, item_id, AiTimeoutError("Summary generation timed out. Please try again."))
        except ProviderError as e:
            logger.error(f"[ai] provider failure for item {item_id}: {e}")
            raise _fail("AI_UNAVAILABLE", user_id, item_id, AiUnavailableError("Summary service is unavailable. Please try again."))

        # First summary of a public item benefits every reader
        on_shared = not force_regenerate and not item.is_private and item.shared_content_id is not None
        _store_summary(user_id, item, summary, on_shared, now)

    ai_generation_total.inc({"outcome": "generated"})
    log_event(
        "info",
        "ai.summary.generated",
        user_id=user_id,
        item_id=item_id,
        extra={"outcome": "shared" if on_shared else "personal"},
    )
    return SummaryResult(summary=summary, is_shared=on_shared, generated_at=now, cached=False)


def get_summary(user_id: str, item_id: str, now: Optional[datetime] = None) -> SummaryResult:
    """Stored summary for the item: personal, then shared, else empty."""
    require_pro(get_user(user_id), now)
    item = get_owned_item(user_id, item_id)
    shared = get_shared_content(item.shared_content_id) if item.shared_content_id else None
    return _resolve_summary(item, shared) or SummaryResult()
