"""Billing Events - the only writer of a tenant's billing fields.

Fields owned here: plan, subscription_status, current_period_end,
trial_ends_at, billing_subscription_ref, billing_event_sequence.

Ordering Rules:
1. Events are applied in provider order (event_sequence), never arrival order
2. Re-delivery of an applied event is a no-op (DUPLICATE)
3. Older events are discarded (StaleBillingEvent); an equal sequence with
   different content is applied
4. An active subscription only moves to active, past_due or canceled
   (BillingRegression otherwise)
5. Sequence and monotonicity guards live in the update filter itself, so two
   concurrent deliveries cannot both win
"""
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional
import logging
import time

from database import database
from errors import BillingRegression, Conflict, ServiceError, StaleBillingEvent
from models import AuditAction, BillingEvent, SubscriptionStatus
from services.entitlements import as_utc, entitlement_service
from services.stripe_service import stripe_service, subscription_to_billing_event
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

APPLIED = "APPLIED"
DUPLICATE = "DUPLICATE"
ORPHANED = "ORPHANED"
NO_SUBSCRIPTION = "NO_SUBSCRIPTION"

ACTIVE_SUCCESSORS = frozenset({
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAST_DUE,
    SubscriptionStatus.CANCELED,
})

_TENANT_BILLING_PROJECTION = {
    "_id": 0, "tenant_id": 1, "plan": 1, "subscription_status": 1,
    "current_period_end": 1, "trial_ends_at": 1,
    "billing_subscription_ref": 1, "billing_event_sequence": 1,
}


def _event_fields(event: BillingEvent) -> Dict[str, Any]:
    """Stored fields the event sets. None means "leave unchanged"."""
    fields = {"subscription_status": event.status.value}
    if event.plan is not None:
        fields["plan"] = event.plan.value
    if event.current_period_end is not None:
        fields["current_period_end"] = as_utc(event.current_period_end)
    if event.trial_ends_at is not None:
        fields["trial_ends_at"] = as_utc(event.trial_ends_at)
    if event.subscription_ref is not None:
        fields["billing_subscription_ref"] = event.subscription_ref
    return fields


def _same_state(tenant: Mapping[str, Any], event: BillingEvent) -> bool:
    for key, value in _event_fields(event).items():
        stored = tenant.get(key)
        if isinstance(value, datetime):
            stored = as_utc(stored)
        if stored != value:
            return False
    return True


def _classify_rejection(tenant: Mapping[str, Any], event: BillingEvent) -> Optional[str]:
    """Return DUPLICATE, raise on stale/regressive events, or None when the event may apply.

    An equal sequence with different content applies (last write wins):
    provider timestamps have one-second resolution, so distinct events
    can share a sequence.
    """
    stored_sequence = tenant.get("billing_event_sequence")
    if stored_sequence is not None:
        if event.event_sequence < stored_sequence:
            raise StaleBillingEvent(
                stored_sequence=stored_sequence, event_sequence=event.event_sequence
            )
        if event.event_sequence == stored_sequence and _same_state(tenant, event):
            return DUPLICATE
    if (tenant.get("subscription_status") == SubscriptionStatus.ACTIVE.value
            and event.status not in ACTIVE_SUCCESSORS):
        raise BillingRegression(event_sequence=event.event_sequence)
    return None


async def _record(event: BillingEvent, tenant_id: Optional[str], outcome: str, reason: Optional[str] = None) -> None:
    db = database.get_db()
    await db.billing_events.insert_one({
        "tenant_id": tenant_id,
        "customer_ref": event.customer_ref,
        "event_id": event.event_id,
        "event_type": event.event_type,
        "event_sequence": event.event_sequence,
        "status": event.status.value,
        "plan": event.plan.value if event.plan else None,
        "outcome": outcome,
        "reason": reason,
        "received_at": datetime.now(timezone.utc),
    })


async def apply_billing_event(event: BillingEvent) -> Dict[str, Any]:
    """Apply a normalized provider event to the owning tenant.

    Returns {"outcome": APPLIED | DUPLICATE | ORPHANED, "tenant_id": ...}.
    Raises StaleBillingEvent / BillingRegression (both Conflict) when the
    event is discarded by the ordering rules.
    """
    db = database.get_db()

    tenant = await db.tenants.find_one({"billing_customer_ref": event.customer_ref}, _TENANT_BILLING_PROJECTION)
    if not tenant:
        logger.warning(
            "BILLING_EVENT_ORPHANED customer_ref=%s event_id=%s event_type=%s sequence=%s",
            event.customer_ref, event.event_id, event.event_type, event.event_sequence,
        )
        await _record(event, None, ORPHANED)
        await create_audit_log(
            action=AuditAction.BILLING_EVENT_DISCARDED,
            actor_id="SYSTEM",
            metadata={"reason": ORPHANED, "customer_ref": event.customer_ref, "event_id": event.event_id},
        )
        return {"outcome": ORPHANED, "tenant_id": None}

    tenant_id = tenant["tenant_id"]
    try:
        if _classify_rejection(tenant, event) == DUPLICATE:
            logger.info("BILLING_EVENT_DUPLICATE tenant_id=%s sequence=%s", tenant_id, event.event_sequence)
            return {"outcome": DUPLICATE, "tenant_id": tenant_id}

        guard: Dict[str, Any] = {
            "tenant_id": tenant_id,
            "$or": [
                {"billing_event_sequence": None},
                {"billing_event_sequence": {"$lte": event.event_sequence}},
            ],
        }
        if event.status not in ACTIVE_SUCCESSORS:
            guard["subscription_status"] = {"$ne": SubscriptionStatus.ACTIVE.value}

        update = {**_event_fields(event),
                  "billing_event_sequence": event.event_sequence,
                  "updated_at": datetime.now(timezone.utc)}
        result = await db.tenants.update_one(guard, {"$set": update})

        if result.matched_count == 0:
            # Lost a race with a concurrent delivery; classify against what won
            current = await db.tenants.find_one({"tenant_id": tenant_id}, _TENANT_BILLING_PROJECTION)
            if _classify_rejection(current, event) == DUPLICATE:
                return {"outcome": DUPLICATE, "tenant_id": tenant_id}
            raise StaleBillingEvent(event_sequence=event.event_sequence)
    except Conflict as e:
        logger.warning(
            "BILLING_EVENT_DISCARDED tenant_id=%s event_id=%s sequence=%s reason=%s",
            tenant_id, event.event_id, event.event_sequence, e.error_code,
        )
        await _record(event, tenant_id, "DISCARDED", e.error_code)
        await create_audit_log(
            action=AuditAction.BILLING_EVENT_DISCARDED,
            actor_id="SYSTEM",
            tenant_id=tenant_id,
            metadata={"reason": e.error_code, "event_id": event.event_id, "event_sequence": event.event_sequence},
        )
        raise

    entitlement_service.invalidate(tenant_id)
    await _record(event, tenant_id, APPLIED)
    await create_audit_log(
        action=AuditAction.BILLING_EVENT_APPLIED,
        actor_id="SYSTEM",
        tenant_id=tenant_id,
        before_state={k: tenant.get(k) for k in ("plan", "subscription_status")},
        after_state={"plan": update.get("plan", tenant.get("plan")), "subscription_status": update["subscription_status"]},
        metadata={"event_id": event.event_id, "event_type": event.event_type, "event_sequence": event.event_sequence},
    )
    logger.info(
        "BILLING_EVENT_APPLIED tenant_id=%s status=%s plan=%s sequence=%s",
        tenant_id, event.status.value, event.plan.value if event.plan else "(unchanged)", event.event_sequence,
    )
    return {"outcome": APPLIED, "tenant_id": tenant_id}


async def link_customer(tenant_id: str, customer_ref: str) -> bool:
    """Attach a Stripe customer to a tenant that has none yet. Returns True if linked."""
    db = database.get_db()
    result = await db.tenants.update_one(
        {"tenant_id": tenant_id, "billing_customer_ref": None},
        {"$set": {"billing_customer_ref": customer_ref, "updated_at": datetime.now(timezone.utc)}}
    )
    if result.matched_count:
        logger.info("BILLING_CUSTOMER_LINKED tenant_id=%s customer_ref=%s", tenant_id, customer_ref)
        return True
    return False


async def sync_from_provider(tenant: Mapping[str, Any]) -> Dict[str, Any]:
    """Query Stripe for the tenant's latest subscription and apply it.

    The query time is the event sequence: the provider's answer reflects
    every change made before the query.
    """
    customer_ref = tenant.get("billing_customer_ref")
    if not customer_ref:
        return {"outcome": NO_SUBSCRIPTION, "tenant_id": tenant["tenant_id"]}

    subscription = await stripe_service.fetch_latest_subscription(customer_ref)
    if not subscription:
        return {"outcome": NO_SUBSCRIPTION, "tenant_id": tenant["tenant_id"]}

    event = subscription_to_billing_event(
        subscription,
        event_sequence=int(time.time()),
        event_type="provider.sync",
    )
    return await apply_billing_event(event)


async def run_billing_reconciliation() -> Dict[str, int]:
    """Scheduled job: re-sync tenants whose stored period has ended or whose
    subscription is still settling (incomplete, past_due)."""
    db = database.get_db()
    now = datetime.now(timezone.utc)
    cursor = db.tenants.find(
        {
            "billing_customer_ref": {"$ne": None},
            "$or": [
                {"current_period_end": {"$lt": now}},
                {"subscription_status": {"$in": [SubscriptionStatus.INCOMPLETE.value,
                                                 SubscriptionStatus.PAST_DUE.value]}},
            ],
        },
        {"_id": 0, "tenant_id": 1, "billing_customer_ref": 1}
    )
    tenants = await cursor.to_list(length=1000)

    counts = {"checked": 0, "applied": 0, "failed": 0}
    for tenant in tenants:
        counts["checked"] += 1
        try:
            result = await sync_from_provider(tenant)
            if result["outcome"] == APPLIED:
                counts["applied"] += 1
        except ServiceError as e:
            counts["failed"] += 1
            logger.warning("Billing reconciliation failed for tenant %s: %s", tenant["tenant_id"], e.error_code)

    logger.info("Billing reconciliation complete: %s", counts)
    return counts
