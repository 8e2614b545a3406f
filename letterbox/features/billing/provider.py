"""
Billing provider protocol.

Defines the interface for billing providers (Stripe, etc.).
The reconciler only consumes the normalized BillingWebhookResult, so the
provider can be swapped without touching plan logic.
"""
from typing import Protocol, Dict, Any, List, Optional, Union
from dataclasses import dataclass, field
from datetime import datetime

from letterbox.core.errors import BillingError

# Epoch seconds/milliseconds or an already-parsed datetime
PeriodEnd = Union[int, float, datetime, None]


@dataclass
class BillingWebhookResult:
    """Result of verifying and parsing a billing webhook."""
    event_id: str
    event_type: str
    customer_id: Optional[str] = None
    user_id: Optional[str] = None
    subscription_id: Optional[str] = None
    status: Optional[str] = None  # active, trialing, past_due, canceled, ...
    current_period_end: PeriodEnd = None
    cancel_at_period_end: Optional[bool] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SubscriptionSnapshot:
    """Current state of one provider subscription."""
    subscription_id: str
    customer_id: Optional[str]
    status: str
    current_period_end: PeriodEnd
    cancel_at_period_end: bool = False


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Customer creation
    - Checkout and portal session creation
    - Webhook signature verification and parsing
    - Listing a customer's subscriptions
    """

    def create_customer(self, user_id: str, email: Optional[str] = None) -> str:
        """
        Create a billing customer tagged with the internal user id.

        Returns:
            Provider customer ID

        Raises:
            BillingProviderError: If customer creation fails
        """
        ...

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> str:
        """
        Create a subscription checkout session.

        Returns:
            Checkout session URL
        """
        ...

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """
        Create a billing portal session for customer self-service.

        Returns:
            Portal session URL
        """
        ...

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
        """
        Verify webhook signature and parse event.

        Raises:
            BillingWebhookError: If signature invalid or parsing fails
        """
        ...

    def retrieve_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        ...

    def list_subscriptions(self, customer_id: str) -> List[SubscriptionSnapshot]:
        """All subscriptions of the customer, any status."""
        ...


class BillingProviderError(BillingError):
    """Base exception for billing provider errors."""
    pass


class BillingWebhookError(BillingProviderError):
    """Webhook could not be verified or parsed; the provider will redeliver."""
    code = "BILLING_WEBHOOK_INVALID"
    status_code = 400
