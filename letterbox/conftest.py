# letterbox/conftest.py
from datetime import datetime, timezone

import pytest

from letterbox.core import database
from letterbox.core.config import settings
from letterbox.core.metrics import METRICS
from letterbox.features.ai.provider import set_provider
from letterbox.features.billing.service import set_billing_provider
from letterbox.features.storage.blob_store import set_blob_store
from letterbox.tests.mocks import CountingBlobStore


@pytest.fixture
def now():
    """Fixed processing time shared by time-sensitive tests."""
    return datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="function", autouse=True)
def db(tmp_path):
    """
    Fresh SQLite database file per test.

    Every table is created up front so services can run unmodified.
    """
    engine = database.init_engine(f"sqlite:///{tmp_path / 'letterbox.db'}")
    database.create_all_tables()
    yield engine
    engine.dispose()


@pytest.fixture(scope="function", autouse=True)
def blob_store(tmp_path):
    store = CountingBlobStore(str(tmp_path / "blobs"))
    set_blob_store(store)
    yield store
    set_blob_store(None)


@pytest.fixture(scope="function", autouse=True)
def isolate_process_state(monkeypatch):
    """Reset module-level providers, metrics and auth-related settings."""
    monkeypatch.setattr(settings, "CLERK_SECRET_KEY", None)
    METRICS.reset()
    set_provider(None)
    set_billing_provider(None)
    yield
    set_provider(None)
    set_billing_provider(None)


@pytest.fixture
def small_caps(monkeypatch):
    """Free plan with 3 unlocked / 5 total so cap sequences stay short."""
    monkeypatch.setattr(settings, "UNLOCKED_NEWSLETTERS_CAP", 3)
    monkeypatch.setattr(settings, "HARD_NEWSLETTERS_CAP", 5)
