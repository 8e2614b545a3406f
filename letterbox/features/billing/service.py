"""
letterbox/features/billing/service.py

Billing reconciler.

Handles:
- Webhook ledger (write-once event ids, the idempotency gate)
- Applying subscription state to the user's plan / pro_expires_at
- Checkout, portal and on-demand sync against the provider

Plan state is derived from one now-vs-period-end comparison: a cancelled
subscription keeps Pro until its paid period ends.
"""
from datetime import datetime, timezone
from typing import Dict, Optional, Union
import logging
from sqlalchemy import delete, insert, update
from sqlalchemy.exc import IntegrityError

from letterbox.core.config import settings
from letterbox.core.database import get_db_session, billing_webhook_events, users, as_utc, utc_now
from letterbox.core.errors import ConfigError, NotFoundError, ValidationError
from letterbox.core.metrics import billing_webhook_total
from letterbox.features.billing.provider import BillingProvider, BillingWebhookResult, PeriodEnd
from letterbox.features.entitlements.service import is_user_pro
from letterbox.features.users.service import get_or_create_user, get_user, get_user_by_customer_id
from letterbox.models.billing import SubscriptionUpdateResult, WebhookOutcome

logger = logging.getLogger(__name__)

PAID_STATUSES = {"active", "trialing", "past_due", "canceled"}
SUBSCRIPTION_EVENT_PREFIX = "customer.subscription."
CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"

# Epoch values below this are seconds, above it milliseconds
_EPOCH_MS_THRESHOLD = 1_000_000_000_000

_billing_provider: Optional[BillingProvider] = None


def get_billing_provider() -> BillingProvider:
    """
    Process-wide billing provider (Stripe), built on first use.

    Raises:
        ConfigError: STRIPE_SECRET_KEY missing
    """
    global _billing_provider
    if _billing_provider is None:
        from letterbox.features.billing.stripe_provider import StripeProvider
        _billing_provider = StripeProvider()
    return _billing_provider


def set_billing_provider(provider: Optional[BillingProvider]) -> None:
    global _billing_provider
    _billing_provider = provider


def normalize_period_end(value: PeriodEnd) -> Optional[datetime]:
    """
    Epoch seconds, epoch milliseconds (numbers or numeric strings) or
    datetime -> aware UTC datetime.

    Raises:
        ValidationError: Value is not a timestamp
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid current_period_end: {value!r}")
    if number >= _EPOCH_MS_THRESHOLD:
        number = number / 1000.0
    try:
        return datetime.fromtimestamp(number, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        raise ValidationError(f"Invalid current_period_end: {value!r}")


def record_webhook_event_if_new(event_id: str, event_type: Optional[str] = None) -> bool:
    """
    Insert event_id into the ledger.

    Returns:
        True the first time an id is seen, False for every redelivery
    """
    try:
        with get_db_session() as session:
            session.execute(
                insert(billing_webhook_events).values(
                    event_id=event_id,
                    event_type=event_type,
                    received_at=utc_now(),
                )
            )
        return True
    except IntegrityError:
        return False


def forget_webhook_event(event_id: str) -> None:
    """Drop a ledger entry whose effects failed to apply, so redelivery retries it."""
    with get_db_session() as session:
        session.execute(delete(billing_webhook_events).where(billing_webhook_events.c.event_id == event_id))


def apply_subscription_update(
    user_id: Optional[str] = None,
    external_customer_id: Optional[str] = None,
    status: Optional[str] = None,
    current_period_end: Union[PeriodEnd, str] = None,
    event_type: str = "",
    stripe_subscription_id: Optional[str] = None,
    cancel_at_period_end: Optional[bool] = None,
    now: Optional[datetime] = None,
) -> SubscriptionUpdateResult:
    """
    Apply one subscription state to the user's plan.

    - Paid status with a future period end: pro until that period end
      (a cancelled subscription stays pro through its grace period)
    - Period end already past: free, pro_expires_at cleared
    - Deletion without a future period end: free immediately
    - Otherwise the plan is left as is

    Unknown users are logged and reported with user_id=None.
    """
    now = as_utc(now) if now is not None else utc_now()

    user = get_user(user_id) if user_id else None
    if user is None and external_customer_id:
        user = get_user_by_customer_id(external_customer_id)
    if user is None:
        logger.warning(
            "[billing] subscription update for unknown user",
            extra={"user_id": user_id, "event_type": event_type},
        )
        return SubscriptionUpdateResult(user_id=None)

    previous_is_pro = is_user_pro(user, now)
    period_end = normalize_period_end(current_period_end)
    within_paid_period = period_end is not None and period_end > now
    normalized_status = (status or "").lower()

    plan = user.plan
    pro_expires_at = user.pro_expires_at
    if within_paid_period and normalized_status in PAID_STATUSES:
        plan = "pro"
        pro_expires_at = period_end
    elif period_end is not None and period_end <= now:
        plan = "free"
        pro_expires_at = None
    elif event_type == SUBSCRIPTION_DELETED and not within_paid_period:
        plan = "free"
        pro_expires_at = None

    with get_db_session() as session:
        session.execute(
            update(users)
            .where(users.c.user_id == user.user_id)
            .values(
                plan=plan,
                pro_expires_at=pro_expires_at,
                stripe_customer_id=external_customer_id or user.stripe_customer_id,
                stripe_subscription_id=stripe_subscription_id or user.stripe_subscription_id,
            )
        )

    is_pro_now = plan == "pro" and pro_expires_at is not None and as_utc(pro_expires_at) > now
    logger.info(
        f"[billing] plan={plan} status={normalized_status or '-'} cancel_at_period_end={cancel_at_period_end}",
        extra={"user_id": user.user_id, "event_type": event_type, "outcome": plan},
    )
    return SubscriptionUpdateResult(
        user_id=user.user_id,
        became_pro=not previous_is_pro and is_pro_now,
        is_pro_now=is_pro_now,
    )


def _apply_event(event: BillingWebhookResult, provider: BillingProvider, now: Optional[datetime]) -> SubscriptionUpdateResult:
    if event.event_type == CHECKOUT_COMPLETED:
        if not event.subscription_id:
            return SubscriptionUpdateResult(user_id=None)
        sub = provider.retrieve_subscription(event.subscription_id)
        return apply_subscription_update(
            user_id=event.user_id,
            external_customer_id=event.customer_id or sub.customer_id,
            status=sub.status,
            current_period_end=sub.current_period_end,
            event_type=event.event_type,
            stripe_subscription_id=sub.subscription_id,
            cancel_at_period_end=sub.cancel_at_period_end,
            now=now,
        )

    return apply_subscription_update(
        user_id=event.user_id,
        external_customer_id=event.customer_id,
        status=event.status,
        current_period_end=event.current_period_end,
        event_type=event.event_type,
        stripe_subscription_id=event.subscription_id,
        cancel_at_period_end=event.cancel_at_period_end,
        now=now,
    )


def process_webhook_event(
    headers: Dict[str, str],
    body: bytes,
    provider: Optional[BillingProvider] = None,
    now: Optional[datetime] = None,
) -> WebhookOutcome:
    """
    Verify, dedupe and apply one webhook delivery.

    The ledger entry is written before the effects; if applying fails the
    entry is removed again and the error propagates so the provider
    redelivers.

    Raises:
        BillingWebhookError: Signature or payload invalid
    """
    provider = provider or get_billing_provider()
    event = provider.handle_webhook(headers, body)

    handled = event.event_type.startswith(SUBSCRIPTION_EVENT_PREFIX) or event.event_type == CHECKOUT_COMPLETED
    if not handled:
        billing_webhook_total.inc({"outcome": "ignored"})
        logger.info("[billing] ignoring webhook", extra={"event_id": event.event_id, "event_type": event.event_type})
        return WebhookOutcome(event_id=event.event_id, event_type=event.event_type, ignored=event.event_type)

    if not record_webhook_event_if_new(event.event_id, event.event_type):
        billing_webhook_total.inc({"outcome": "deduped"})
        logger.info("[billing] duplicate webhook", extra={"event_id": event.event_id, "event_type": event.event_type})
        return WebhookOutcome(event_id=event.event_id, event_type=event.event_type, deduped=True)

    try:
        result = _apply_event(event, provider, now)
    except ValidationError as e:
        # Redelivery carries the same payload; keep the ledger entry and drop it
        billing_webhook_total.inc({"outcome": "malformed"})
        logger.warning(
            f"[billing] dropping malformed webhook: {e.message}",
            extra={"event_id": event.event_id, "event_type": event.event_type},
        )
        return WebhookOutcome(event_id=event.event_id, event_type=event.event_type, malformed=True)
    except Exception:
        forget_webhook_event(event.event_id)
        billing_webhook_total.inc({"outcome": "failed"})
        raise

    billing_webhook_total.inc({"outcome": "applied" if result.user_id else "unknown_user"})
    return WebhookOutcome(event_id=event.event_id, event_type=event.event_type, update=result)


def _ensure_customer(user_id: str, provider: BillingProvider) -> str:
    user = get_or_create_user(user_id)
    if user.stripe_customer_id:
        return user.stripe_customer_id

    customer_id = provider.create_customer(user_id, user.email)
    with get_db_session() as session:
        session.execute(
            update(users).where(users.c.user_id == user_id).values(stripe_customer_id=customer_id)
        )
    return customer_id


def start_checkout(user_id: str, interval: str = "monthly", provider: Optional[BillingProvider] = None) -> str:
    """Return a hosted checkout URL for the Pro plan."""
    price_ids = {
        "monthly": settings.STRIPE_PRO_MONTHLY_PRICE_ID,
        "annual": settings.STRIPE_PRO_ANNUAL_PRICE_ID,
    }
    if interval not in price_ids:
        raise ValidationError(f"Unknown billing interval: {interval}")
    price_id = price_ids[interval]
    if not price_id:
        raise ConfigError(f"Pro {interval} price is not configured")

    provider = provider or get_billing_provider()
    customer_id = _ensure_customer(user_id, provider)
    site = settings.SITE_URL.rstrip("/")
    return provider.create_checkout_session(
        customer_id=customer_id,
        price_id=price_id,
        success_url=f"{site}/settings/billing?checkout=success",
        cancel_url=f"{site}/settings/billing?checkout=cancel",
        metadata={"user_id": user_id},
    )


def start_portal(user_id: str, provider: Optional[BillingProvider] = None) -> str:
    user = get_user(user_id)
    if user is None or not user.stripe_customer_id:
        raise NotFoundError("No billing account for this user")
    provider = provider or get_billing_provider()
    return provider.create_portal_session(
        user.stripe_customer_id,
        return_url=f"{settings.SITE_URL.rstrip('/')}/settings/billing",
    )


def sync_subscription_from_provider(
    user_id: str,
    provider: Optional[BillingProvider] = None,
    now: Optional[datetime] = None,
) -> SubscriptionUpdateResult:
    """
    Pull the customer's subscriptions and apply the one with the latest
    period end. Recovers from webhooks that never arrived.
    """
    user = get_user(user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")
    if not user.stripe_customer_id:
        return SubscriptionUpdateResult(user_id=user_id, is_pro_now=is_user_pro(user, now))

    provider = provider or get_billing_provider()
    subscriptions = provider.list_subscriptions(user.stripe_customer_id)
    if not subscriptions:
        return SubscriptionUpdateResult(user_id=user_id, is_pro_now=is_user_pro(user, now))

    epoch = datetime.min.replace(tzinfo=timezone.utc)
    best = max(subscriptions, key=lambda s: normalize_period_end(s.current_period_end) or epoch)
    return apply_subscription_update(
        user_id=user_id,
        external_customer_id=user.stripe_customer_id,
        status=best.status,
        current_period_end=best.current_period_end,
        event_type="sync",
        stripe_subscription_id=best.subscription_id,
        cancel_at_period_end=best.cancel_at_period_end,
        now=now,
    )
