"""Stripe Webhook Service - Webhook handling with idempotency and ordered application.

Key Principles:
1. Idempotency: Every Stripe event id is processed exactly once
2. Signature verification: All events must be signed (dev mode excepted)
3. Plan derivation: Plan comes from the subscription price id, then metadata
4. Ordering: event.created is the BillingEvent sequence; billing_events
   decides whether the event still applies
5. Server-authoritative: only services.billing_events writes billing fields

Events Handled:
- checkout.session.completed (links the Stripe customer to the tenant)
- customer.subscription.created
- customer.subscription.updated
- customer.subscription.deleted
- invoice.paid
- invoice.payment_failed
"""
import stripe
import os
import json
import logging
from datetime import datetime, timezone
from typing import Dict, Any, Optional, Tuple

from database import database
from errors import Conflict
from models import AuditAction, BillingEvent, SubscriptionStatus
from services.billing_events import apply_billing_event, link_customer, ORPHANED
from services.stripe_service import stripe_service, subscription_to_billing_event
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

# Initialize Stripe (prefer STRIPE_SECRET_KEY; fallback STRIPE_API_KEY)
_stripe_key = (os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()
stripe.api_key = _stripe_key

# Webhook secret: support test vs live. If STRIPE_WEBHOOK_SECRET is set, use it; else choose by key prefix.
def _get_webhook_secret() -> str:
    explicit = (os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip()
    if explicit:
        return explicit
    key = (os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()
    if key.startswith("sk_live_"):
        return (os.getenv("STRIPE_WEBHOOK_SECRET_LIVE") or "").strip()
    if key.startswith("sk_test_"):
        return (os.getenv("STRIPE_WEBHOOK_SECRET_TEST") or "").strip()
    return ""


def _extract_webhook_context(event: Dict) -> Dict[str, Any]:
    """Extract safe fields for structured logging."""
    obj = event.get("data", {}).get("object", {}) or {}
    metadata = obj.get("metadata", {}) or {}
    subscription = obj.get("subscription")
    return {
        "event_id": event.get("id"),
        "event_type": event.get("type"),
        "livemode": event.get("livemode"),
        "tenant_id": metadata.get("tenant_id") or obj.get("client_reference_id"),
        "customer_ref": obj.get("customer"),
        "subscription_id": subscription if isinstance(subscription, str) else (subscription or {}).get("id"),
    }


class StripeWebhookService:
    """Stripe webhook handler with idempotency."""

    # =========================================================================
    # Event Processing Entry Point
    # =========================================================================

    async def process_webhook(
        self,
        payload: bytes,
        signature: str
    ) -> Tuple[bool, str, Optional[Dict]]:
        """
        Main webhook entry point.

        Returns:
            (success, message, details)
        """
        # Step 1: Verify signature
        webhook_secret = _get_webhook_secret()
        try:
            if webhook_secret:
                event = stripe.Webhook.construct_event(
                    payload, signature, webhook_secret
                )
            else:
                # Development mode - parse without verification
                event = stripe.Event.construct_from(
                    json.loads(payload), stripe.api_key
                )
                logger.warning("STRIPE_WEBHOOK_SECRET not set - skipping signature verification")
        except stripe.error.SignatureVerificationError as e:
            logger.error("Webhook signature verification failed: %s", e)
            return False, "Invalid signature", {"error": str(e)}
        except ValueError as e:
            logger.error(f"Webhook parse error: {e}")
            return False, "Invalid payload", {"error": str(e)}

        event_id = event.get("id")
        event_type = event.get("type")
        ctx = _extract_webhook_context(event)
        logger.info(
            "WEBHOOK_RECEIVED event_id=%s event_type=%s livemode=%s tenant_id=%s customer_ref=%s subscription_id=%s",
            event_id, event_type, ctx.get("livemode"), ctx.get("tenant_id"), ctx.get("customer_ref"), ctx.get("subscription_id"),
        )

        # Step 2: Idempotency check
        db = database.get_db()
        existing = await db.stripe_events.find_one({"event_id": event_id})

        if existing and existing.get("status") in ("PROCESSED", "DISCARDED"):
            logger.info(f"Event {event_id} already processed - skipping")
            return True, "Already processed", {"event_id": event_id}

        # Step 3: Record event
        event_record = {
            "event_id": event_id,
            "type": event_type,
            "created": datetime.now(timezone.utc),
            "processed_at": None,
            "status": "PROCESSING",
            "error": None,
            "related_tenant_id": None,
            "raw_minimal": self._extract_safe_data(event),
        }

        if existing:
            await db.stripe_events.update_one(
                {"event_id": event_id},
                {"$set": event_record}
            )
        else:
            try:
                await db.stripe_events.insert_one(event_record)
            except Exception as insert_err:
                if "duplicate key" in str(insert_err).lower() or "E11000" in str(insert_err):
                    logger.info(f"Event {event_id} duplicate insert (race) - skipping")
                    return True, "Already processed", {"event_id": event_id}
                raise

        # Step 4: Process event
        try:
            result = await self._handle_event(event)
            status = "DISCARDED" if result.get("outcome") == ORPHANED else "PROCESSED"

            await db.stripe_events.update_one(
                {"event_id": event_id},
                {
                    "$set": {
                        "status": status,
                        "processed_at": datetime.now(timezone.utc),
                        "related_tenant_id": result.get("tenant_id"),
                    }
                }
            )

            logger.info(
                "WEBHOOK_PROCESSED_OK event_id=%s event_type=%s tenant_id=%s outcome=%s",
                event_id, event_type, result.get("tenant_id"), result.get("outcome"),
            )
            return True, "Processed", result

        except Conflict as e:
            # Out-of-order or regressive delivery: a later event already decided the state
            await db.stripe_events.update_one(
                {"event_id": event_id},
                {
                    "$set": {
                        "status": "DISCARDED",
                        "processed_at": datetime.now(timezone.utc),
                        "error": e.error_code,
                    }
                }
            )
            logger.info("WEBHOOK_DISCARDED event_id=%s event_type=%s reason=%s", event_id, event_type, e.error_code)
            return True, "Discarded", {"event_id": event_id, "reason": e.error_code}

        except Exception as e:
            logger.error(
                "WEBHOOK_PROCESSING_FAILED event_id=%s event_type=%s error=%s",
                event_id, event_type, str(e),
                exc_info=True,
            )

            await db.stripe_events.update_one(
                {"event_id": event_id},
                {
                    "$set": {
                        "status": "FAILED",
                        "processed_at": datetime.now(timezone.utc),
                        "error": str(e),
                    }
                }
            )

            await create_audit_log(
                action=AuditAction.STRIPE_EVENT_FAILED,
                actor_id="SYSTEM",
                tenant_id=ctx.get("tenant_id"),
                metadata={
                    "event_id": event_id,
                    "event_type": event_type,
                    "error": str(e),
                }
            )

            # Return 200 to prevent Stripe retries (we've logged the failure)
            return True, "Event logged with error", {"error": str(e), "event_id": event_id}

    # =========================================================================
    # Event Handlers
    # =========================================================================

    async def _handle_event(self, event: Dict) -> Dict:
        """Route event to appropriate handler."""
        event_type = event.get("type")
        data = event.get("data", {}).get("object", {})

        handlers = {
            "checkout.session.completed": self._handle_checkout_completed,
            "customer.subscription.created": self._handle_subscription_change,
            "customer.subscription.updated": self._handle_subscription_change,
            "customer.subscription.deleted": self._handle_subscription_change,
            "invoice.paid": self._handle_invoice_paid,
            "invoice.payment_failed": self._handle_payment_failed,
        }

        handler = handlers.get(event_type)
        if handler:
            return await handler(data, event)

        logger.info(f"Ignoring unhandled event type: {event_type}")
        return {"handled": False, "event_type": event_type}

    async def _handle_checkout_completed(self, session: Dict, event: Dict) -> Dict:
        """
        Handle checkout.session.completed.

        Links the Stripe customer to the tenant named by client_reference_id,
        then applies the subscription the checkout created.
        """
        if session.get("mode") != "subscription":
            logger.info(f"Ignoring checkout mode: {session.get('mode')}")
            return {"handled": False, "mode": session.get("mode")}

        tenant_id = session.get("client_reference_id") or (session.get("metadata") or {}).get("tenant_id")
        customer_ref = session.get("customer")
        if tenant_id and customer_ref:
            await link_customer(tenant_id, customer_ref)
        else:
            logger.warning("Checkout session %s has no tenant reference or customer", session.get("id"))

        subscription_id = session.get("subscription")
        if not subscription_id:
            return {"handled": True, "tenant_id": tenant_id, "outcome": None}

        subscription = await stripe_service.fetch_subscription(subscription_id)
        billing_event = subscription_to_billing_event(
            subscription,
            event_sequence=event.get("created"),
            event_id=event.get("id"),
            event_type=event.get("type"),
        )
        return {"handled": True, **await apply_billing_event(billing_event)}

    async def _handle_subscription_change(self, subscription: Dict, event: Dict) -> Dict:
        """Handle customer.subscription.created / updated / deleted (object carries terminal state)."""
        billing_event = subscription_to_billing_event(
            subscription,
            event_sequence=event.get("created"),
            event_id=event.get("id"),
            event_type=event.get("type"),
        )
        return {"handled": True, **await apply_billing_event(billing_event)}

    async def _handle_invoice_paid(self, invoice: Dict, event: Dict) -> Dict:
        """Renewal paid: re-read the subscription for its new period end."""
        subscription_id = invoice.get("subscription")
        if not subscription_id:
            # Newer API versions move it under parent.subscription_details
            parent = invoice.get("parent") or {}
            subscription_id = (parent.get("subscription_details") or {}).get("subscription")
        if isinstance(subscription_id, dict):
            subscription_id = subscription_id.get("id")
        if not subscription_id:
            return {"handled": False, "reason": "no_subscription"}

        subscription = await stripe_service.fetch_subscription(subscription_id)
        billing_event = subscription_to_billing_event(
            subscription,
            event_sequence=event.get("created"),
            event_id=event.get("id"),
            event_type=event.get("type"),
        )
        return {"handled": True, **await apply_billing_event(billing_event)}

    async def _handle_payment_failed(self, invoice: Dict, event: Dict) -> Dict:
        """Payment failed: past_due, plan and period unchanged."""
        billing_event = BillingEvent(
            customer_ref=invoice.get("customer"),
            status=SubscriptionStatus.PAST_DUE,
            event_sequence=event.get("created"),
            event_id=event.get("id"),
            event_type=event.get("type"),
        )
        return {"handled": True, **await apply_billing_event(billing_event)}

    def _extract_safe_data(self, event: Dict) -> Dict:
        """Extract safe subset of event data for logging (no secrets)."""
        return {
            "id": event.get("id"),
            "type": event.get("type"),
            "created": event.get("created"),
            "object_id": event.get("data", {}).get("object", {}).get("id"),
            "object_type": event.get("data", {}).get("object", {}).get("object"),
        }


# Singleton instance
stripe_webhook_service = StripeWebhookService()
