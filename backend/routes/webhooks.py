"""Webhook Routes - Stripe webhooks.

Stripe webhook endpoint with:
- Signature verification
- Idempotency (via stripe_events collection)
- Ordered application of billing state (services.billing_events)

POST /api/webhooks/stripe - Stripe webhook endpoint
"""
from fastapi import APIRouter, Request, Header, status
from fastapi.responses import JSONResponse
from services.stripe_webhook_service import stripe_webhook_service
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


@router.post("/api/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature")
):
    """
    Handle Stripe webhooks.

    Unverifiable payloads answer 400. Everything else answers 200, including
    handler failures, which are recorded on the stripe_events document so
    Stripe does not retry indefinitely.
    """
    payload = await request.body()

    try:
        success, message, details = await stripe_webhook_service.process_webhook(
            payload=payload,
            signature=stripe_signature or ""
        )
    except Exception as e:
        logger.exception(f"Stripe webhook error: {e}")
        # Return 200 to prevent Stripe retries - we've logged the error
        return {"status": "error", "message": "Webhook processing error"}

    if not success:
        logger.error(f"Webhook rejected: {message}")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"status": "error", "message": message}
        )

    return {"status": "received", "message": message, "details": details}
