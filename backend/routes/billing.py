"""Billing Routes - Subscription and payment management.

Endpoints:
- POST /api/billing/checkout - Create checkout session for a plan
- GET /api/billing/status - Current subscription and entitlement
- POST /api/billing/portal - Create Stripe billing portal session
- POST /api/billing/cancel - Cancel subscription
- POST /api/billing/sync - Re-read subscription state from Stripe

Checkout, portal, cancel and sync fail closed with 503 when Stripe is
unreachable. Status never calls Stripe.
"""
from fastapi import APIRouter, Request, Depends
from typing import Optional
import os
import logging

from middleware import tenant_route_guard
from models import CheckoutRequest, CancelRequest
from services.billing_events import sync_from_provider
from services.entitlements import derive_entitlement, entitlement_service
from services.stripe_service import stripe_service
from services.tenant_store import TenantScope

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/billing", tags=["billing"])


def _origin(request: Request) -> str:
    origin = request.headers.get("origin", "")
    if not origin:
        origin = os.getenv("FRONTEND_ORIGIN", "")
    if not origin:
        host = request.headers.get("host", "localhost")
        origin = f"http://{host}"
    return origin.rstrip("/")


@router.post("/checkout")
async def create_checkout(request: Request, body: CheckoutRequest, scope: TenantScope = Depends(tenant_route_guard)):
    """Create Stripe checkout session for a subscription."""
    tenant = await scope.get_tenant()
    return await stripe_service.create_checkout_session(
        tenant=tenant,
        plan=body.plan,
        origin_url=_origin(request),
    )


@router.get("/status")
async def get_billing_status(scope: TenantScope = Depends(tenant_route_guard)):
    """Current subscription state from the tenant store (never from Stripe)."""
    tenant = await scope.get_tenant()
    entitlement = derive_entitlement(tenant)
    return {
        "has_billing_account": bool(tenant.get("billing_customer_ref")),
        "has_subscription": bool(tenant.get("billing_subscription_ref")),
        **entitlement.to_dict(),
    }


@router.post("/portal")
async def create_billing_portal(request: Request, scope: TenantScope = Depends(tenant_route_guard)):
    """Create Stripe billing portal session for subscription management."""
    tenant = await scope.get_tenant()
    return await stripe_service.create_portal_session(tenant, return_url=f"{_origin(request)}/settings")


@router.post("/cancel")
async def cancel_subscription(body: Optional[CancelRequest] = None, scope: TenantScope = Depends(tenant_route_guard)):
    """Cancel subscription (at period end unless cancel_immediately)."""
    body = body or CancelRequest()
    tenant = await scope.get_tenant()
    return await stripe_service.cancel_subscription(tenant, cancel_immediately=body.cancel_immediately)


@router.post("/sync")
async def sync_subscription(scope: TenantScope = Depends(tenant_route_guard)):
    """Pull the latest subscription from Stripe, e.g. after returning from checkout."""
    tenant = await scope.get_tenant()
    result = await sync_from_provider(tenant)
    entitlement = await entitlement_service.get_tenant_entitlement(scope.tenant_id)
    return {
        "outcome": result["outcome"],
        "entitlement": entitlement.to_dict() if entitlement else None,
    }
