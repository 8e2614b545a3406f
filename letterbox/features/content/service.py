"""
letterbox/features/content/service.py

Content store: the newsletter write path.

Handles:
- Privacy split (private per-user blobs vs the shared, hash-deduplicated pool)
- Per-user duplicate detection (message id, content hash)
- Quota outcome resolved in the same transaction that creates the item
- Owner reads with locked/missing content resolution
"""

from datetime import datetime
from typing import Optional, Tuple
from uuid import uuid4
import logging
from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from letterbox.core.database import get_db_session, shared_contents, user_items, as_utc, utc_now
from letterbox.core.errors import BlobStoreError, ContentUnavailableError, NotFoundError, PermissionError
from letterbox.core.metrics import newsletter_store_total, shared_pool_lookups_total
from letterbox.features.content.normalization import compute_content_hash, effective_content, normalize_for_hash
from letterbox.features.entitlements.service import (
    QuotaDecision,
    apply_quota,
    decide_quota,
    ensure_usage_counters,
    is_user_pro,
    policy_for_user,
)
from letterbox.features.storage.blob_store import BlobStore, get_blob_store
from letterbox.features.users.service import get_or_create_user, get_user
from letterbox.models.newsletter import (
    SharedContent,
    SkippedResult,
    StoredResult,
    StoreNewsletterRequest,
    StoreResult,
    UserItem,
    UserItemView,
)


logger = logging.getLogger(__name__)

# A lost shared-pool insert race costs one retry; the bound only guards
# against a constraint that keeps failing for another reason.
MAX_STORE_ATTEMPTS = 3


class _QuotaRejected(Exception):
    """Raised inside the store transaction so nothing it wrote is committed."""


def _row_to_item(row) -> UserItem:
    return UserItem(
        id=row.id,
        user_id=row.user_id,
        sender_id=row.sender_id,
        folder_id=row.folder_id,
        subject=row.subject,
        sender_email=row.sender_email,
        sender_name=row.sender_name,
        received_at=as_utc(row.received_at),
        is_private=row.is_private,
        shared_content_id=row.shared_content_id,
        private_blob_key=row.private_blob_key,
        content_hash=row.content_hash,
        message_id=row.message_id,
        source=row.source,
        is_locked_by_plan=row.is_locked_by_plan,
        summary=row.summary,
        summary_generated_at=as_utc(row.summary_generated_at),
    )


def _row_to_shared(row) -> SharedContent:
    return SharedContent(
        id=row.id,
        content_hash=row.content_hash,
        blob_key=row.blob_key,
        subject=row.subject,
        sender_email=row.sender_email,
        sender_name=row.sender_name,
        first_received_at=as_utc(row.first_received_at),
        reader_count=row.reader_count,
        summary=row.summary,
        summary_generated_at=as_utc(row.summary_generated_at),
    )


def private_blob_key(user_id: str, now: datetime, is_html: bool) -> str:
    epoch_ms = int(now.timestamp() * 1000)
    extension = "html" if is_html else "txt"
    return f"private/{user_id}/{epoch_ms}-{uuid4()}.{extension}"


def shared_blob_key(content_hash: str) -> str:
    return f"shared/{content_hash}.html"


def _find_duplicate(user_id: str, message_id: Optional[str], content_hash: str) -> Optional[Tuple[str, str]]:
    """Return (duplicate_reason, existing_item_id) when the user already has this newsletter."""
    with get_db_session() as session:
        if message_id:
            row = session.execute(
                select(user_items.c.id).where(
                    user_items.c.user_id == user_id,
                    user_items.c.message_id == message_id,
                )
            ).first()
            if row:
                return "message_id", row.id

        row = session.execute(
            select(user_items.c.id).where(
                user_items.c.user_id == user_id,
                user_items.c.content_hash == content_hash,
            )
        ).first()
        if row:
            return "content_hash", row.id
    return None


def get_shared_content(shared_content_id: str) -> Optional[SharedContent]:
    with get_db_session() as session:
        row = session.execute(
            select(shared_contents).where(shared_contents.c.id == shared_content_id)
        ).first()
        return _row_to_shared(row) if row else None


def get_shared_content_by_hash(content_hash: str) -> Optional[SharedContent]:
    with get_db_session() as session:
        row = session.execute(
            select(shared_contents).where(shared_contents.c.content_hash == content_hash)
        ).first()
        return _row_to_shared(row) if row else None


def _claim_shared_content(session, request: StoreNewsletterRequest, content_hash: str, blob_key: str, now: datetime) -> Tuple[str, str, bool]:
    """
    Join the shared pool entry for content_hash, creating it when absent.

    Returns (shared_content_id, blob_key, hit). The increment is a single
    UPDATE so readers never race on reader_count. A concurrent first
    insert of the same hash surfaces as IntegrityError and the caller
    retries the whole transaction, which then lands on the UPDATE path.
    """
    result = session.execute(
        update(shared_contents)
        .where(shared_contents.c.content_hash == content_hash)
        .values(reader_count=shared_contents.c.reader_count + 1)
    )
    if result.rowcount == 1:
        row = session.execute(
            select(shared_contents.c.id, shared_contents.c.blob_key)
            .where(shared_contents.c.content_hash == content_hash)
        ).first()
        return row.id, row.blob_key, True

    shared_id = str(uuid4())
    session.execute(
        insert(shared_contents).values(
            id=shared_id,
            content_hash=content_hash,
            blob_key=blob_key,
            subject=request.subject,
            sender_email=request.sender_email,
            sender_name=request.sender_name,
            first_received_at=as_utc(request.received_at),
            reader_count=1,
            is_hidden=False,
            created_at=now,
        )
    )
    return shared_id, blob_key, False


def _discard_blob(store: BlobStore, key: Optional[str]) -> None:
    if not key:
        return
    try:
        store.delete(key)
    except BlobStoreError as e:
        logger.warning(f"[content] orphaned private blob left behind: {e}")


def _plan_limit(user_id: str, hard_cap: Optional[int]) -> SkippedResult:
    newsletter_store_total.inc({"outcome": "plan_limit"})
    logger.info("[content] store skipped: plan limit", extra={"user_id": user_id, "outcome": "plan_limit"})
    return SkippedResult(reason="plan_limit", hard_cap=hard_cap)


def _duplicate(user_id: str, duplicate: Tuple[str, str]) -> SkippedResult:
    reason, existing_id = duplicate
    newsletter_store_total.inc({"outcome": "duplicate"})
    logger.info(
        "[content] store skipped: duplicate",
        extra={"user_id": user_id, "item_id": existing_id, "outcome": f"duplicate:{reason}"},
    )
    return SkippedResult(reason="duplicate", duplicate_reason=reason, existing_id=existing_id)


def store_newsletter(
    request: StoreNewsletterRequest,
    blob_store: Optional[BlobStore] = None,
    now: Optional[datetime] = None,
) -> StoreResult:
    """
    Store one delivered newsletter for a user.

    Flow:
    1. Duplicate and quota pre-checks (no writes)
    2. Blob write, outside any transaction
    3. One transaction: counters UPDATE, shared pool claim, item INSERT

    Returns:
        StoredResult, or SkippedResult with reason "plan_limit" / "duplicate"

    Raises:
        BlobStoreError: blob write failed (nothing was recorded)
    """
    store = blob_store or get_blob_store()
    now = as_utc(now) if now is not None else utc_now()
    user_id = request.user_id

    user = get_or_create_user(user_id)
    counters = ensure_usage_counters(user_id)
    policy = policy_for_user(user, now)

    content, is_html = effective_content(request.html_content, request.text_content, request.subject)
    content_hash = compute_content_hash(normalize_for_hash(content))

    duplicate = _find_duplicate(user_id, request.message_id, content_hash)
    if duplicate:
        return _duplicate(user_id, duplicate)

    # Optimistic: the authoritative check is the conditional UPDATE below
    if decide_quota(counters, policy) == QuotaDecision.REJECT:
        return _plan_limit(user_id, policy.hard_cap)

    written_private_key = None
    if request.is_private:
        written_private_key = store.put(
            private_blob_key(user_id, now, is_html),
            content.encode("utf-8"),
            "text/html; charset=utf-8" if is_html else "text/plain; charset=utf-8",
        )
        blob_key = written_private_key
    else:
        existing = get_shared_content_by_hash(content_hash)
        if existing:
            blob_key = existing.blob_key
        else:
            blob_key = store.put(shared_blob_key(content_hash), content.encode("utf-8"))

    last_error = None
    for attempt in range(1, MAX_STORE_ATTEMPTS + 1):
        item_id = str(uuid4())
        shared_id = None
        hit = False
        try:
            with get_db_session() as session:
                # Counters first: this statement takes the per-user row lock
                decision = apply_quota(session, user_id, policy)
                if decision == QuotaDecision.REJECT:
                    raise _QuotaRejected()

                if not request.is_private:
                    shared_id, blob_key, hit = _claim_shared_content(session, request, content_hash, blob_key, now)

                session.execute(
                    insert(user_items).values(
                        id=item_id,
                        user_id=user_id,
                        sender_id=request.sender_id,
                        folder_id=request.folder_id,
                        subject=request.subject,
                        sender_email=request.sender_email,
                        sender_name=request.sender_name,
                        received_at=as_utc(request.received_at),
                        is_private=request.is_private,
                        shared_content_id=shared_id,
                        private_blob_key=written_private_key,
                        content_hash=content_hash,
                        message_id=request.message_id,
                        source=request.source,
                        is_locked_by_plan=decision == QuotaDecision.LOCKED,
                        created_at=now,
                    )
                )
        except _QuotaRejected:
            # A shared blob written for a miss stays: its key is content-addressed,
            # a concurrent store of the same hash may already reference it, and the
            # next miss for the hash overwrites it in place.
            _discard_blob(store, written_private_key)
            return _plan_limit(user_id, policy.hard_cap)
        except IntegrityError as e:
            last_error = e
            duplicate = _find_duplicate(user_id, request.message_id, content_hash)
            if duplicate:
                _discard_blob(store, written_private_key)
                return _duplicate(user_id, duplicate)
            logger.info(
                f"[content] store conflict, retrying (attempt {attempt}/{MAX_STORE_ATTEMPTS})",
                extra={"user_id": user_id},
            )
            continue

        locked = decision == QuotaDecision.LOCKED
        if not request.is_private:
            shared_pool_lookups_total.inc({"result": "hit" if hit else "miss"})
        newsletter_store_total.inc({"outcome": "locked" if locked else "unlocked"})
        logger.info(
            "[content] newsletter stored",
            extra={"user_id": user_id, "item_id": item_id, "outcome": "locked" if locked else "unlocked"},
        )
        return StoredResult(
            user_item_id=item_id,
            locked=locked,
            blob_key=blob_key,
            shared_content_id=shared_id,
        )

    _discard_blob(store, written_private_key)
    raise last_error


def get_owned_item(user_id: str, item_id: str) -> UserItem:
    """
    Load an item and enforce ownership.

    Raises:
        NotFoundError: Unknown item id
        PermissionError: Item belongs to another user
    """
    with get_db_session() as session:
        row = session.execute(select(user_items).where(user_items.c.id == item_id)).first()
    if not row:
        raise NotFoundError(f"Newsletter {item_id} not found")
    if row.user_id != user_id:
        raise PermissionError("Newsletter belongs to another user")
    return _row_to_item(row)


def resolve_blob_key(item: UserItem) -> Optional[str]:
    """Blob key holding the item's body, or None when the shared entry is gone or hidden."""
    if item.private_blob_key:
        return item.private_blob_key
    with get_db_session() as session:
        row = session.execute(
            select(shared_contents.c.blob_key, shared_contents.c.is_hidden)
            .where(shared_contents.c.id == item.shared_content_id)
        ).first()
    if not row or row.is_hidden:
        return None
    return row.blob_key


def load_item_body(item: UserItem, blob_store: Optional[BlobStore] = None) -> str:
    """
    Read the stored body of an item.

    Raises:
        ContentUnavailableError: Pointer target or blob is gone
    """
    store = blob_store or get_blob_store()
    key = resolve_blob_key(item)
    if key is None:
        raise ContentUnavailableError("Newsletter content is no longer available")
    try:
        data = store.get(key)
    except NotFoundError:
        raise ContentUnavailableError("Newsletter content is no longer available")
    return data.decode("utf-8", errors="replace")


def get_user_item(
    user_id: str,
    item_id: str,
    blob_store: Optional[BlobStore] = None,
    now: Optional[datetime] = None,
) -> UserItemView:
    """Item with its content status resolved for the owner."""
    item = get_owned_item(user_id, item_id)

    if item.is_locked_by_plan and not is_user_pro(get_user(user_id), now):
        return UserItemView(item=item, content_status="locked")

    key = resolve_blob_key(item)
    if key is None:
        return UserItemView(item=item, content_status="missing")

    store = blob_store or get_blob_store()
    return UserItemView(item=item, content_status="available", content_url=store.get_url(key))


def get_item_content_url(
    user_id: str,
    item_id: str,
    blob_store: Optional[BlobStore] = None,
    now: Optional[datetime] = None,
) -> str:
    view = get_user_item(user_id, item_id, blob_store=blob_store, now=now)
    if view.content_status != "available":
        raise ContentUnavailableError(f"Newsletter content is {view.content_status}")
    return view.content_url
