"""Unauthenticated storefront endpoints.

These are the only tenant-data reads without a session; the store is
resolved first and everything else is reached through its owner.
"""
from fastapi import APIRouter, Request

from errors import RateLimited
from models import StoreAnalyticsEventRequest
from services import storefront_service
from utils.rate_limiter import rate_limiter
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/public", tags=["public"])

ANALYTICS_MAX_EVENTS = 120
ANALYTICS_WINDOW_MINUTES = 1


def _client_ip(request: Request):
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    return request.client.host if request.client else None


@router.get("/stores/{slug}")
async def get_public_store(slug: str):
    return await storefront_service.get_public_store(slug.lower())


@router.post("/store-analytics")
async def record_store_analytics(request: Request, body: StoreAnalyticsEventRequest):
    ip = _client_ip(request)
    allowed, error_message = await rate_limiter.check_rate_limit(
        f"store-analytics:{ip}", ANALYTICS_MAX_EVENTS, ANALYTICS_WINDOW_MINUTES
    )
    if not allowed:
        raise RateLimited(error_message)

    return await storefront_service.record_analytics(
        body,
        user_agent=request.headers.get("user-agent"),
        ip_address=ip,
        referrer=request.headers.get("referer"),
    )
