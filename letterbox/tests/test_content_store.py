"""
Content store write path.

Covers shared-pool dedup, the private split, per-user duplicates and the
quota outcome recorded with each item.
"""
import threading
from uuid import uuid4

import pytest
from sqlalchemy import insert, select, update

from letterbox.core.database import get_db_session, shared_contents, user_items
from letterbox.core.errors import NotFoundError, PermissionError
from letterbox.core.metrics import newsletter_store_total, shared_pool_lookups_total
from letterbox.features.content import service as content_service
from letterbox.features.content.service import (
    get_item_content_url,
    get_user_item,
    load_item_body,
    store_newsletter,
)
from letterbox.features.entitlements.service import QuotaDecision, get_usage_counters
from letterbox.features.users.service import get_or_create_user
from letterbox.tests.mocks import make_pro, newsletter, seed_counters


def _shared_rows():
    with get_db_session() as session:
        return session.execute(select(shared_contents)).fetchall()


def _item_rows(user_id):
    with get_db_session() as session:
        return session.execute(select(user_items).where(user_items.c.user_id == user_id)).fetchall()


def test_identical_public_content_from_two_users_is_stored_once(blob_store):
    html = "<h1>Issue 42</h1><p>Rates are up.</p>"

    first = store_newsletter(newsletter("alice", html))
    second = store_newsletter(newsletter("bob", html))

    assert first.skipped is False and second.skipped is False
    assert len(blob_store.puts) == 1
    rows = _shared_rows()
    assert len(rows) == 1
    assert rows[0].reader_count == 2
    assert first.shared_content_id == second.shared_content_id == rows[0].id
    assert _item_rows("alice")[0].shared_content_id == rows[0].id
    assert _item_rows("bob")[0].shared_content_id == rows[0].id
    assert shared_pool_lookups_total.value({"result": "miss"}) == 1
    assert shared_pool_lookups_total.value({"result": "hit"}) == 1


def test_recipient_specific_noise_does_not_split_the_shared_pool(blob_store):
    alice_html = (
        "<p>Hi Alice,</p><p>Big news this week.</p>"
        '<img src="https://track.example.com/o.gif?u=1" width="1" height="1">'
        '<a href="https://news.example/unsubscribe?u=alice">unsubscribe</a>'
    )
    bob_html = (
        "<p>Hi Bob,</p><p>Big   news this week.</p>"
        '<img src="https://track.example.com/o.gif?u=2" width="1" height="1">'
        '<a href="https://news.example/unsubscribe?u=bob">unsubscribe</a>'
    )

    store_newsletter(newsletter("alice", alice_html))
    store_newsletter(newsletter("bob", bob_html))

    rows = _shared_rows()
    assert len(rows) == 1
    assert rows[0].reader_count == 2


def test_private_content_gets_a_per_user_blob_and_no_shared_row(blob_store):
    html = "<p>Your account statement</p>"

    a = store_newsletter(newsletter("alice", html, is_private=True))
    b = store_newsletter(newsletter("bob", html, is_private=True))

    assert a.shared_content_id is None and b.shared_content_id is None
    assert a.blob_key.startswith("private/alice/")
    assert b.blob_key.startswith("private/bob/")
    assert a.blob_key.endswith(".html")
    assert len(blob_store.puts) == 2
    assert _shared_rows() == []
    row = _item_rows("alice")[0]
    assert row.private_blob_key == a.blob_key
    assert row.shared_content_id is None


def test_text_only_private_content_uses_txt_key():
    result = store_newsletter(newsletter("alice", None, text_content="plain body", is_private=True))
    assert result.blob_key.endswith(".txt")


def test_empty_body_falls_back_to_subject(blob_store):
    result = store_newsletter(newsletter("alice", "", subject="Launch <day>"))
    assert blob_store.get(result.blob_key) == b"<p>Launch &lt;day&gt;</p>"


def test_store_just_below_unlocked_cap_is_unlocked():
    seed_counters("alice", total=999, unlocked=999, locked=0)

    result = store_newsletter(newsletter("alice", "<p>one more</p>"))

    assert result.skipped is False
    assert result.locked is False
    assert _item_rows("alice")[0].is_locked_by_plan is False
    counters = get_usage_counters("alice")
    assert (counters.total_stored, counters.unlocked_stored, counters.locked_stored) == (1000, 1000, 0)


def test_store_at_unlocked_cap_is_locked():
    seed_counters("alice", total=1000, unlocked=1000, locked=0)

    result = store_newsletter(newsletter("alice", "<p>over the base quota</p>"))

    assert result.skipped is False
    assert result.locked is True
    assert _item_rows("alice")[0].is_locked_by_plan is True
    counters = get_usage_counters("alice")
    assert (counters.total_stored, counters.unlocked_stored, counters.locked_stored) == (1001, 1000, 1)


def test_store_at_hard_cap_is_skipped_without_writes(blob_store):
    seed_counters("alice", total=2000, unlocked=1000, locked=1000)

    result = store_newsletter(newsletter("alice", "<p>too many</p>"))

    assert result.skipped is True
    assert result.reason == "plan_limit"
    assert result.hard_cap == 2000
    assert blob_store.puts == []
    assert _item_rows("alice") == []
    assert _shared_rows() == []
    counters = get_usage_counters("alice")
    assert (counters.total_stored, counters.unlocked_stored, counters.locked_stored) == (2000, 1000, 1000)
    assert newsletter_store_total.value({"outcome": "plan_limit"}) == 1


def test_store_sequence_fills_unlocked_then_locked_then_skips(small_caps):
    results = [store_newsletter(newsletter("alice", f"<p>issue {n}</p>")) for n in range(8)]

    outcomes = [
        "skipped" if r.skipped else ("locked" if r.locked else "unlocked")
        for r in results
    ]
    assert outcomes == ["unlocked"] * 3 + ["locked"] * 2 + ["skipped"] * 3
    assert all(r.reason == "plan_limit" for r in results if r.skipped)
    counters = get_usage_counters("alice")
    assert (counters.total_stored, counters.unlocked_stored, counters.locked_stored) == (5, 3, 2)


def test_pro_user_is_never_capped(now):
    make_pro("alice", now.replace(year=2027))
    seed_counters("alice", total=2000, unlocked=1000, locked=1000)

    result = store_newsletter(newsletter("alice", "<p>pro issue</p>"), now=now)

    assert result.skipped is False
    assert result.locked is False


def test_lapsed_pro_user_gets_free_caps(now):
    make_pro("alice", now.replace(year=2025))
    seed_counters("alice", total=2000, unlocked=1000, locked=1000)

    result = store_newsletter(newsletter("alice", "<p>lapsed</p>"), now=now)

    assert result.skipped is True
    assert result.reason == "plan_limit"


def test_same_message_id_is_a_duplicate(blob_store):
    first = store_newsletter(newsletter("alice", "<p>a</p>", message_id="<m1@mail>"))
    second = store_newsletter(newsletter("alice", "<p>different body</p>", message_id="<m1@mail>"))

    assert second.skipped is True
    assert second.reason == "duplicate"
    assert second.duplicate_reason == "message_id"
    assert second.existing_id == first.user_item_id
    assert len(blob_store.puts) == 1
    assert get_usage_counters("alice").total_stored == 1


def test_same_content_for_same_user_is_a_duplicate():
    first = store_newsletter(newsletter("alice", "<p>same</p>"))
    second = store_newsletter(newsletter("alice", "<p>same</p>"))

    assert second.skipped is True
    assert second.duplicate_reason == "content_hash"
    assert second.existing_id == first.user_item_id
    assert _shared_rows()[0].reader_count == 1
    assert get_usage_counters("alice").total_stored == 1


def test_rejection_after_optimistic_admit_removes_private_blob(blob_store, monkeypatch):
    seed_counters("alice", total=2000, unlocked=1000, locked=1000)
    # Pre-check sees room; the counters UPDATE is what actually decides
    monkeypatch.setattr(content_service, "decide_quota", lambda counters, policy: QuotaDecision.UNLOCKED)

    result = store_newsletter(newsletter("alice", "<p>private</p>", is_private=True))

    assert result.skipped is True
    assert result.reason == "plan_limit"
    assert len(blob_store.puts) == 1
    assert blob_store.deletes == blob_store.puts
    assert not blob_store.exists(blob_store.puts[0])
    assert _item_rows("alice") == []


def test_concurrent_stores_never_overshoot_caps(small_caps):
    get_or_create_user("alice")
    results = []
    errors = []
    lock = threading.Lock()

    def worker(n):
        try:
            r = store_newsletter(newsletter("alice", f"<p>parallel {n}</p>"))
            with lock:
                results.append(r)
        except Exception as e:  # surfaced below
            with lock:
                errors.append(e)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert errors == []
    stored = [r for r in results if not r.skipped]
    assert sum(1 for r in stored if not r.locked) == 3
    assert sum(1 for r in stored if r.locked) == 2
    assert sum(1 for r in results if r.skipped) == 3
    counters = get_usage_counters("alice")
    assert (counters.total_stored, counters.unlocked_stored, counters.locked_stored) == (5, 3, 2)
    assert len(_item_rows("alice")) == 5


def test_simultaneous_first_deliveries_of_public_content_both_land():
    for round_no in range(5):
        html = f"<h1>Launch day {round_no}</h1><p>{'x' * 200_000}</p>"
        readers = [f"reader-a{round_no}", f"reader-b{round_no}"]
        barrier = threading.Barrier(len(readers))
        results = []
        errors = []
        lock = threading.Lock()

        def worker(user_id):
            barrier.wait()
            try:
                r = store_newsletter(newsletter(user_id, html))
                with lock:
                    results.append(r)
            except Exception as e:  # surfaced below
                with lock:
                    errors.append(e)

        threads = [threading.Thread(target=worker, args=(u,)) for u in readers]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert errors == []
        assert len(results) == 2
        assert all(r.skipped is False for r in results)
        assert results[0].shared_content_id == results[1].shared_content_id

    rows = _shared_rows()
    assert len(rows) == 5
    assert all(row.reader_count == 2 for row in rows)


def test_lost_shared_insert_race_retries_as_a_hit(blob_store, monkeypatch):
    html = "<p>Breaking: the same issue for everyone</p>"
    store_newsletter(newsletter("alice", html))
    real_claim = content_service._claim_shared_content
    calls = []

    def claim_after_losing_insert(session, request, content_hash, blob_key, now):
        calls.append(content_hash)
        if len(calls) == 1:
            # Another writer created the row between the lookup and our insert
            session.execute(
                insert(shared_contents).values(
                    id=str(uuid4()),
                    content_hash=content_hash,
                    blob_key=blob_key,
                    subject=request.subject,
                    sender_email=request.sender_email,
                    first_received_at=now,
                    reader_count=1,
                    is_hidden=False,
                )
            )
        return real_claim(session, request, content_hash, blob_key, now)

    monkeypatch.setattr(content_service, "_claim_shared_content", claim_after_losing_insert)

    result = store_newsletter(newsletter("bob", html))

    assert result.skipped is False
    assert len(calls) == 2
    rows = _shared_rows()
    assert len(rows) == 1
    assert rows[0].reader_count == 2
    assert result.shared_content_id == rows[0].id
    counters = get_usage_counters("bob")
    assert (counters.total_stored, counters.unlocked_stored) == (1, 1)
    assert len(_item_rows("bob")) == 1
    assert shared_pool_lookups_total.value({"result": "hit"}) == 1
    assert len(blob_store.puts) == 1


def test_get_user_item_resolves_content_status(now, small_caps):
    seed_counters("alice", total=3, unlocked=3, locked=0)
    locked = store_newsletter(newsletter("alice", "<p>locked one</p>"))
    assert locked.locked is True

    view = get_user_item("alice", locked.user_item_id, now=now)
    assert view.content_status == "locked"
    assert view.content_url is None

    make_pro("alice", now.replace(year=2027))
    view = get_user_item("alice", locked.user_item_id, now=now)
    assert view.content_status == "available"
    assert view.content_url == f"https://cdn.test/blobs/{locked.blob_key}"
    assert get_item_content_url("alice", locked.user_item_id, now=now) == view.content_url


def test_hidden_shared_content_is_missing():
    result = store_newsletter(newsletter("alice", "<p>moderated</p>"))
    with get_db_session() as session:
        session.execute(update(shared_contents).values(is_hidden=True))

    view = get_user_item("alice", result.user_item_id)
    assert view.content_status == "missing"


def test_item_ownership_is_enforced():
    result = store_newsletter(newsletter("alice", "<p>mine</p>"))

    with pytest.raises(PermissionError):
        get_user_item("bob", result.user_item_id)
    with pytest.raises(NotFoundError):
        get_user_item("alice", "no-such-item")


def test_load_item_body_reads_stored_bytes():
    result = store_newsletter(newsletter("alice", "<p>body text</p>", is_private=True))
    item = get_user_item("alice", result.user_item_id).item
    assert load_item_body(item) == "<p>body text</p>"
