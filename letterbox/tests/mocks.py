"""Test doubles and small helpers shared by the test modules."""
import threading
from datetime import datetime
from typing import List, Optional

from sqlalchemy import update

from letterbox.core.database import get_db_session, usage_counters, users
from letterbox.features.ai.provider import ProviderError, ProviderTimeoutError
from letterbox.features.billing.provider import BillingWebhookResult, SubscriptionSnapshot
from letterbox.features.storage.blob_store import LocalBlobStore
from letterbox.features.users.service import get_or_create_user
from letterbox.models.newsletter import StoreNewsletterRequest


class CountingBlobStore:
    """LocalBlobStore that records every put and delete."""

    def __init__(self, root: str):
        self.inner = LocalBlobStore(root=root, public_base_url="https://cdn.test/blobs")
        self.puts: List[str] = []
        self.deletes: List[str] = []
        self._lock = threading.Lock()

    def put(self, key, data, content_type="text/html; charset=utf-8"):
        with self._lock:
            self.puts.append(key)
        return self.inner.put(key, data, content_type)

    def get(self, key):
        return self.inner.get(key)

    def get_url(self, key):
        return self.inner.get_url(key)

    def delete(self, key):
        with self._lock:
            self.deletes.append(key)
        self.inner.delete(key)

    def exists(self, key) -> bool:
        return self.inner._path(key).exists()


class FakeCompletionProvider:
    def __init__(self, text: str = "Intro.\n- point one\n- point two"):
        self.text = text
        self.calls = []

    def complete(self, system_prompt, user_prompt, timeout_ms):
        self.calls.append((system_prompt, user_prompt, timeout_ms))
        return self.text


class TimeoutCompletionProvider:
    def __init__(self):
        self.calls = 0

    def complete(self, system_prompt, user_prompt, timeout_ms):
        self.calls += 1
        raise ProviderTimeoutError(f"timed out after {timeout_ms}ms")


class FailingCompletionProvider:
    def complete(self, system_prompt, user_prompt, timeout_ms):
        raise ProviderError("upstream 503")


class BlockingCompletionProvider:
    """Holds the call open until release() so a second caller can observe the lock."""

    def __init__(self, text: str = "slow summary"):
        self.text = text
        self.started = threading.Event()
        self._release = threading.Event()
        self.calls = 0

    def release(self):
        self._release.set()

    def complete(self, system_prompt, user_prompt, timeout_ms):
        self.calls += 1
        self.started.set()
        self._release.wait(timeout=10)
        return self.text


class FakeBillingProvider:
    def __init__(self, event: Optional[BillingWebhookResult] = None):
        self.event = event
        self.webhook_error: Optional[Exception] = None
        self.subscriptions: List[SubscriptionSnapshot] = []
        self.retrieve_error: Optional[Exception] = None
        self.customers_created: List[str] = []
        self.checkout_calls = []

    def create_customer(self, user_id, email=None):
        self.customers_created.append(user_id)
        return f"cus_{user_id}"

    def create_checkout_session(self, customer_id, price_id, success_url, cancel_url, metadata=None):
        self.checkout_calls.append((customer_id, price_id, metadata))
        return f"https://checkout.test/{customer_id}/{price_id}"

    def create_portal_session(self, customer_id, return_url):
        return f"https://portal.test/{customer_id}"

    def handle_webhook(self, headers, body):
        if self.webhook_error:
            raise self.webhook_error
        return self.event

    def retrieve_subscription(self, subscription_id):
        if self.retrieve_error:
            raise self.retrieve_error
        for sub in self.subscriptions:
            if sub.subscription_id == subscription_id:
                return sub
        raise LookupError(subscription_id)

    def list_subscriptions(self, customer_id):
        return [s for s in self.subscriptions if s.customer_id == customer_id]


def newsletter(user_id: str, html: str, **overrides) -> StoreNewsletterRequest:
    fields = dict(
        user_id=user_id,
        sender_id="sender-1",
        subject="Weekly Digest",
        sender_email="digest@news.example",
        sender_name="The Digest",
        received_at=datetime(2026, 3, 10, 8, 0),
        html_content=html,
    )
    fields.update(overrides)
    return StoreNewsletterRequest(**fields)


def seed_counters(user_id: str, total: int, unlocked: int, locked: int) -> None:
    get_or_create_user(user_id)
    with get_db_session() as session:
        session.execute(
            update(usage_counters)
            .where(usage_counters.c.user_id == user_id)
            .values(total_stored=total, unlocked_stored=unlocked, locked_stored=locked)
        )


def make_pro(user_id: str, expires_at: datetime) -> None:
    get_or_create_user(user_id)
    with get_db_session() as session:
        session.execute(
            update(users).where(users.c.user_id == user_id).values(plan="pro", pro_expires_at=expires_at)
        )
