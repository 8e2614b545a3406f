"""
Stripe billing provider implementation.

Implements BillingProvider using the Stripe API.
Handles webhook signature verification and event parsing.
"""
import json
import logging
from typing import Dict, Any, List, Optional
import stripe

from letterbox.core.config import settings
from letterbox.core.errors import ConfigError
from letterbox.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
    BillingWebhookResult,
    PeriodEnd,
    SubscriptionSnapshot,
)

logger = logging.getLogger(__name__)


def _period_end(subscription: Dict[str, Any]) -> PeriodEnd:
    """
    Period end of a subscription object.

    Newer API versions report it per subscription item instead of on the
    subscription itself.
    """
    value = subscription.get("current_period_end")
    if value:
        return value
    items = (subscription.get("items") or {}).get("data") or []
    ends = [item.get("current_period_end") for item in items if item.get("current_period_end")]
    return max(ends) if ends else None


def _as_dict(obj: Any) -> Dict[str, Any]:
    if isinstance(obj, dict):
        return obj
    return json.loads(str(obj))


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET)
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET

        if not self.secret_key:
            raise ConfigError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key

    def create_customer(self, user_id: str, email: Optional[str] = None) -> str:
        """Create a Stripe customer whose metadata carries the user id."""
        customer_data: Dict[str, Any] = {"metadata": {"user_id": user_id}}
        if email:
            customer_data["email"] = email
        try:
            customer = stripe.Customer.create(**customer_data)
            return customer.id
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe customer creation failed: {e}")

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> str:
        """Create Stripe checkout session."""
        metadata = metadata or {}
        try:
            session = stripe.checkout.Session.create(
                customer=customer_id,
                line_items=[{"price": price_id, "quantity": 1}],
                mode="subscription",
                success_url=success_url,
                cancel_url=cancel_url,
                client_reference_id=metadata.get("user_id"),
                metadata=metadata,
                subscription_data={"metadata": metadata},
            )
            return session.url
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session creation failed: {e}")

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """Create Stripe billing portal session."""
        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url,
            )
            return session.url
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe portal session creation failed: {e}")

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise ConfigError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            stripe.Webhook.construct_event(body, sig_header, self.webhook_secret)
            event = json.loads(body)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}")

        return self._parse_event(event)

    def _parse_event(self, event: Dict[str, Any]) -> BillingWebhookResult:
        """Parse Stripe event into normalized BillingWebhookResult."""
        try:
            event_type = event["type"]
            event_id = event["id"]
        except (KeyError, TypeError):
            raise BillingWebhookError("Event is missing id or type")
        data = (event.get("data") or {}).get("object") or {}
        metadata = data.get("metadata") or {}

        result = BillingWebhookResult(
            event_id=event_id,
            event_type=event_type,
            customer_id=data.get("customer"),
            user_id=metadata.get("user_id"),
            metadata=metadata,
        )

        if event_type.startswith("customer.subscription."):
            result.subscription_id = data.get("id")
            result.status = data.get("status")
            result.current_period_end = _period_end(data)
            result.cancel_at_period_end = data.get("cancel_at_period_end")
        elif event_type == "checkout.session.completed":
            result.subscription_id = data.get("subscription")
            result.user_id = result.user_id or data.get("client_reference_id")

        return result

    def retrieve_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        try:
            sub = _as_dict(stripe.Subscription.retrieve(subscription_id))
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription lookup failed: {e}")
        return self._snapshot(sub)

    def list_subscriptions(self, customer_id: str) -> List[SubscriptionSnapshot]:
        try:
            page = stripe.Subscription.list(customer=customer_id, status="all", limit=20)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription listing failed: {e}")
        return [self._snapshot(_as_dict(sub)) for sub in page.data]

    @staticmethod
    def _snapshot(sub: Dict[str, Any]) -> SubscriptionSnapshot:
        return SubscriptionSnapshot(
            subscription_id=sub["id"],
            customer_id=sub.get("customer"),
            status=sub.get("status") or "",
            current_period_end=_period_end(sub),
            cancel_at_period_end=bool(sub.get("cancel_at_period_end")),
        )
