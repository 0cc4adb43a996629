"""Stripe Service - Checkout, billing portal, cancellation and subscription lookup.

This service handles:
- Creating checkout sessions for new subscriptions
- Billing portal access for existing customers
- Cancellation requests
- Fetching the latest subscription for provider sync
- Normalizing Stripe subscriptions into BillingEvents

Key Principles:
- Price ids come from STRIPE_PRICE_STARTER / STRIPE_PRICE_PREMIUM only
- Metadata and client_reference_id carry tenant_id for webhook tracing
- Every provider failure surfaces as UpstreamUnavailable (fail closed)
- This module never writes billing fields; services.billing_events does
"""
import stripe
import os
import logging
from typing import Optional, Dict, Any
from datetime import datetime, timezone

from errors import UpstreamUnavailable, ValidationFailed
from models import AuditAction, BillingEvent, Plan, SubscriptionStatus
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

# Initialize Stripe (no placeholder default; missing key fails at call time with UpstreamUnavailable)
stripe.api_key = (os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()

# Stripe subscription status -> stored subscription status
STRIPE_STATUS_MAP = {
    "trialing": SubscriptionStatus.TRIALING,
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
    "paused": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.INCOMPLETE,
}


def get_price_ids() -> Dict[Plan, str]:
    return {
        Plan.STARTER: (os.getenv("STRIPE_PRICE_STARTER") or "").strip(),
        Plan.PREMIUM: (os.getenv("STRIPE_PRICE_PREMIUM") or "").strip(),
    }


def plan_from_price_id(price_id: Optional[str]) -> Optional[Plan]:
    if not price_id:
        return None
    for plan, configured in get_price_ids().items():
        if configured and configured == price_id:
            return plan
    return None


def _timestamp(value) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _price_id(item: Dict[str, Any]) -> Optional[str]:
    price = item.get("price")
    if isinstance(price, str):
        return price
    if price:
        return price.get("id")
    return None


def subscription_to_billing_event(
    subscription: Dict[str, Any],
    event_sequence: int,
    event_id: Optional[str] = None,
    event_type: Optional[str] = None,
) -> BillingEvent:
    """Normalize a Stripe subscription object into a terminal-state BillingEvent.

    Plan is derived from the first item whose price id is configured, falling
    back to subscription metadata. current_period_end lives on the
    subscription in older API versions and on its items in newer ones.
    """
    items = (subscription.get("items") or {}).get("data") or []

    plan = None
    for item in items:
        plan = plan_from_price_id(_price_id(item))
        if plan:
            break
    if plan is None:
        metadata_plan = (subscription.get("metadata") or {}).get("plan")
        if metadata_plan in (Plan.STARTER.value, Plan.PREMIUM.value):
            plan = Plan(metadata_plan)

    period_end = subscription.get("current_period_end")
    if not period_end and items:
        period_end = items[0].get("current_period_end")

    raw_status = subscription.get("status")
    status = STRIPE_STATUS_MAP.get(raw_status)
    if status is None:
        logger.warning("Unknown Stripe subscription status %r treated as incomplete", raw_status)
        status = SubscriptionStatus.INCOMPLETE

    return BillingEvent(
        customer_ref=subscription.get("customer"),
        status=status,
        plan=plan,
        current_period_end=_timestamp(period_end),
        trial_ends_at=_timestamp(subscription.get("trial_end")),
        subscription_ref=subscription.get("id"),
        event_sequence=event_sequence,
        event_id=event_id,
        event_type=event_type,
    )


class StripeService:
    """Stripe billing operations service."""

    def _require_key(self) -> None:
        if not (stripe.api_key or "").strip():
            logger.error("STRIPE_SECRET_KEY is not set; billing operations unavailable")
            raise UpstreamUnavailable("Billing is not configured. Please try again later.")

    async def create_checkout_session(
        self,
        tenant: Dict[str, Any],
        plan: Plan,
        origin_url: str,
    ) -> Dict[str, Any]:
        """
        Create Stripe checkout session for a new subscription.

        The provider trial (TRIAL_DAYS) is offered only to tenants that never
        had a paid subscription.

        Returns:
            Dict with checkout_url and session_id
        """
        from services.entitlements import TRIAL_DAYS

        self._require_key()

        price_id = get_price_ids().get(plan)
        if not price_id:
            logger.error("No Stripe price configured for plan %s", plan.value)
            raise UpstreamUnavailable("Billing is not configured for this plan. Please try again later.")

        base = (origin_url or "").strip().rstrip("/")
        if not base.startswith("http://") and not base.startswith("https://"):
            raise ValidationFailed.for_field("origin", "Redirect origin must be an http(s) URL")

        tenant_id = tenant["tenant_id"]
        session_params = {
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": f"{base}/dashboard?checkout=success&session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{base}/precos?checkout=canceled",
            "client_reference_id": tenant_id,
            "metadata": {"tenant_id": tenant_id, "plan": plan.value},
            "subscription_data": {
                "metadata": {"tenant_id": tenant_id, "plan": plan.value},
            },
        }
        if not tenant.get("billing_subscription_ref"):
            session_params["subscription_data"]["trial_period_days"] = TRIAL_DAYS

        if tenant.get("billing_customer_ref"):
            session_params["customer"] = tenant["billing_customer_ref"]
        else:
            session_params["customer_email"] = tenant.get("email")

        try:
            session = stripe.checkout.Session.create(**session_params)
        except stripe.error.StripeError as e:
            logger.error(f"Stripe checkout error for tenant {tenant_id}: {e}")
            raise UpstreamUnavailable() from e

        await create_audit_log(
            action=AuditAction.CHECKOUT_STARTED,
            actor_id=tenant_id,
            tenant_id=tenant_id,
            metadata={"plan": plan.value, "session_id": session.id},
        )
        logger.info(f"Checkout session created for tenant {tenant_id}: {session.id}")

        return {
            "checkout_url": session.url,
            "session_id": session.id,
            "plan": plan.value,
        }

    async def create_portal_session(self, tenant: Dict[str, Any], return_url: str) -> Dict[str, Any]:
        """Billing portal for a tenant that already has a Stripe customer."""
        self._require_key()

        customer_ref = tenant.get("billing_customer_ref")
        if not customer_ref:
            raise ValidationFailed("No billing account yet. Start a subscription first.",
                                   errors=[{"field": "billing_customer_ref", "message": "missing"}])

        try:
            portal_session = stripe.billing_portal.Session.create(
                customer=customer_ref,
                return_url=return_url,
            )
        except stripe.error.StripeError as e:
            logger.error(f"Stripe portal error for tenant {tenant['tenant_id']}: {e}")
            raise UpstreamUnavailable() from e

        logger.info(f"Billing portal session created for tenant {tenant['tenant_id']}")
        return {"portal_url": portal_session.url}

    async def cancel_subscription(
        self,
        tenant: Dict[str, Any],
        cancel_immediately: bool = False
    ) -> Dict[str, Any]:
        """
        Request cancellation from Stripe.

        The stored status is not touched here: the resulting
        customer.subscription.updated/deleted webhook carries the new state.

        Args:
            tenant: Tenant document
            cancel_immediately: If True, cancel now. If False, cancel at period end.
        """
        self._require_key()

        tenant_id = tenant["tenant_id"]
        subscription_id = tenant.get("billing_subscription_ref")
        if not subscription_id:
            raise ValidationFailed("No subscription to cancel",
                                   errors=[{"field": "billing_subscription_ref", "message": "missing"}])

        try:
            if cancel_immediately:
                stripe.Subscription.cancel(subscription_id)
            else:
                stripe.Subscription.modify(subscription_id, cancel_at_period_end=True)
        except stripe.error.StripeError as e:
            logger.error(f"Stripe cancel error for tenant {tenant_id}: {e}")
            raise UpstreamUnavailable() from e

        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_CANCEL_REQUESTED,
            actor_id=tenant_id,
            tenant_id=tenant_id,
            metadata={"immediate": cancel_immediately, "subscription_id": subscription_id},
        )
        logger.info(f"Subscription cancellation requested for tenant {tenant_id}, immediate={cancel_immediately}")

        return {
            "success": True,
            "cancel_at_period_end": not cancel_immediately,
            "current_period_end": tenant.get("current_period_end"),
        }

    async def fetch_subscription(self, subscription_id: str) -> Dict[str, Any]:
        self._require_key()
        try:
            return stripe.Subscription.retrieve(subscription_id)
        except stripe.error.StripeError as e:
            logger.error(f"Stripe subscription retrieve error for {subscription_id}: {e}")
            raise UpstreamUnavailable() from e

    async def fetch_latest_subscription(self, customer_ref: str) -> Optional[Dict[str, Any]]:
        """Most recently created subscription for a customer, any status."""
        self._require_key()
        try:
            subscriptions = stripe.Subscription.list(customer=customer_ref, status="all", limit=1)
        except stripe.error.StripeError as e:
            logger.error(f"Stripe subscription list error for customer {customer_ref}: {e}")
            raise UpstreamUnavailable() from e

        data = subscriptions.get("data") or []
        return data[0] if data else None


# Singleton instance
stripe_service = StripeService()
