"""
Billing webhook ledger and processing.

Verifies duplicate webhook events are not reprocessed.
"""
import json
from datetime import timedelta
from unittest.mock import patch

import pytest
import stripe
from sqlalchemy import select

from letterbox.core.database import get_db_session, billing_webhook_events
from letterbox.core.metrics import billing_webhook_total
from letterbox.features.billing.provider import BillingWebhookError, BillingWebhookResult, SubscriptionSnapshot
from letterbox.features.billing.service import process_webhook_event, record_webhook_event_if_new
from letterbox.features.billing.stripe_provider import StripeProvider
from letterbox.features.users.service import get_or_create_user, get_user
from letterbox.tests.mocks import FakeBillingProvider


def _ledger():
    with get_db_session() as session:
        return session.execute(select(billing_webhook_events)).fetchall()


def test_record_if_new_is_true_once():
    assert record_webhook_event_if_new("evt_123") is True
    assert record_webhook_event_if_new("evt_123") is False
    assert record_webhook_event_if_new("evt_123") is False
    assert len(_ledger()) == 1


def test_webhook_applies_once_and_dedupes_redelivery(now):
    get_or_create_user("alice")
    period_end = int((now + timedelta(days=30)).timestamp())
    provider = FakeBillingProvider(
        BillingWebhookResult(
            event_id="evt_sub_1",
            event_type="customer.subscription.updated",
            customer_id="cus_alice",
            user_id="alice",
            subscription_id="sub_1",
            status="active",
            current_period_end=period_end,
        )
    )

    first = process_webhook_event({}, b"{}", provider=provider, now=now)
    second = process_webhook_event({}, b"{}", provider=provider, now=now)

    assert first.deduped is False
    assert first.update.became_pro is True
    assert second.deduped is True
    assert second.update is None
    user = get_user("alice")
    assert user.plan == "pro"
    assert user.stripe_customer_id == "cus_alice"
    assert user.stripe_subscription_id == "sub_1"
    assert billing_webhook_total.value({"outcome": "applied"}) == 1
    assert billing_webhook_total.value({"outcome": "deduped"}) == 1


def test_unhandled_event_types_are_acknowledged_and_ignored(now):
    provider = FakeBillingProvider(BillingWebhookResult(event_id="evt_inv", event_type="invoice.paid"))

    outcome = process_webhook_event({}, b"{}", provider=provider, now=now)

    assert outcome.ignored == "invoice.paid"
    assert _ledger() == []


def test_checkout_completed_applies_the_subscription(now):
    get_or_create_user("alice")
    provider = FakeBillingProvider(
        BillingWebhookResult(
            event_id="evt_checkout",
            event_type="checkout.session.completed",
            customer_id="cus_alice",
            user_id="alice",
            subscription_id="sub_9",
        )
    )
    provider.subscriptions = [
        SubscriptionSnapshot("sub_9", "cus_alice", "active", int((now + timedelta(days=365)).timestamp())),
    ]

    outcome = process_webhook_event({}, b"{}", provider=provider, now=now)

    assert outcome.update.is_pro_now is True
    assert get_user("alice").stripe_subscription_id == "sub_9"


def test_failed_apply_forgets_the_event_so_redelivery_retries(now):
    get_or_create_user("alice")
    provider = FakeBillingProvider(
        BillingWebhookResult(
            event_id="evt_flaky",
            event_type="checkout.session.completed",
            customer_id="cus_alice",
            user_id="alice",
            subscription_id="sub_x",
        )
    )
    provider.retrieve_error = RuntimeError("stripe down")

    with pytest.raises(RuntimeError):
        process_webhook_event({}, b"{}", provider=provider, now=now)
    assert _ledger() == []

    provider.retrieve_error = None
    provider.subscriptions = [
        SubscriptionSnapshot("sub_x", "cus_alice", "active", int((now + timedelta(days=3)).timestamp())),
    ]
    outcome = process_webhook_event({}, b"{}", provider=provider, now=now)
    assert outcome.deduped is False
    assert outcome.update.is_pro_now is True
    assert len(_ledger()) == 1


def test_malformed_period_end_is_dropped_and_not_redelivered_forever(now):
    get_or_create_user("alice")
    provider = FakeBillingProvider(
        BillingWebhookResult(
            event_id="evt_garbled",
            event_type="customer.subscription.updated",
            customer_id="cus_alice",
            user_id="alice",
            subscription_id="sub_g",
            status="active",
            current_period_end="next tuesday",
        )
    )

    outcome = process_webhook_event({}, b"{}", provider=provider, now=now)

    assert outcome.malformed is True
    assert outcome.update is None
    assert len(_ledger()) == 1
    assert get_user("alice").plan == "free"
    assert billing_webhook_total.value({"outcome": "malformed"}) == 1

    redelivered = process_webhook_event({}, b"{}", provider=provider, now=now)
    assert redelivered.deduped is True


def test_invalid_signature_propagates():
    provider = FakeBillingProvider()
    provider.webhook_error = BillingWebhookError("Invalid signature")

    with pytest.raises(BillingWebhookError) as exc:
        process_webhook_event({}, b"{}", provider=provider)
    assert exc.value.status_code == 400


def _stripe_provider():
    return StripeProvider(secret_key="sk_test_123", webhook_secret="whsec_test")


def test_stripe_provider_requires_signature_header():
    with pytest.raises(BillingWebhookError):
        _stripe_provider().handle_webhook({}, b"{}")


def test_stripe_provider_rejects_bad_signature():
    with patch(
        "letterbox.features.billing.stripe_provider.stripe.Webhook.construct_event",
        side_effect=stripe.SignatureVerificationError("bad", "t=1,v1=x"),
    ):
        with pytest.raises(BillingWebhookError):
            _stripe_provider().handle_webhook({"stripe-signature": "t=1,v1=x"}, b"{}")


def test_stripe_provider_parses_subscription_event():
    body = json.dumps({
        "id": "evt_1",
        "type": "customer.subscription.updated",
        "data": {"object": {
            "id": "sub_1",
            "customer": "cus_1",
            "status": "canceled",
            "cancel_at_period_end": True,
            "metadata": {"user_id": "alice"},
            "items": {"data": [{"current_period_end": 1900000000}]},
        }},
    }).encode()

    with patch("letterbox.features.billing.stripe_provider.stripe.Webhook.construct_event"):
        result = _stripe_provider().handle_webhook({"stripe-signature": "t=1,v1=x"}, body)

    assert result.event_id == "evt_1"
    assert result.user_id == "alice"
    assert result.customer_id == "cus_1"
    assert result.subscription_id == "sub_1"
    assert result.status == "canceled"
    assert result.current_period_end == 1900000000
    assert result.cancel_at_period_end is True


def test_stripe_provider_parses_checkout_event():
    event = {
        "id": "evt_2",
        "type": "checkout.session.completed",
        "data": {"object": {"customer": "cus_2", "subscription": "sub_2", "client_reference_id": "bob"}},
    }

    result = _stripe_provider()._parse_event(event)

    assert result.user_id == "bob"
    assert result.subscription_id == "sub_2"
    assert result.status is None
