"""Public storefront: owner management, anonymous read, visitor analytics.

The anonymous paths (get_public_store, record_analytics) are the only
reads that do not start from an authenticated TenantScope. They resolve
the store first and then reach the owner's products through a
ScopedCollection bound to the store's tenant_id.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import logging
import uuid

from pymongo.errors import DuplicateKeyError

from database import database
from errors import Conflict, NotFound, ValidationFailed
from models import (
    AnalyticsEventType, AuditAction, DeviceType, PublicStoreRequest,
    PublicStoreUpdateRequest, StoreAnalyticsEventRequest,
)
from services.tenant_store import ScopedCollection, TenantScope
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

PUBLIC_PRODUCT_FIELDS = {
    "product_id": 1, "name": 1, "image_url": 1, "sale_price": 1,
    "brand": 1, "size": 1, "quantity": 1, "gender": 1,
}


def store_not_found() -> NotFound:
    # Same answer for unknown, inactive and malformed slugs
    return NotFound("Store not found", error_code="STORE_NOT_FOUND")


def detect_device_type(user_agent: Optional[str]) -> DeviceType:
    ua = (user_agent or "").lower()
    if "tablet" in ua or "ipad" in ua or ("android" in ua and "mobile" not in ua):
        return DeviceType.TABLET
    if "mobile" in ua or "android" in ua or "iphone" in ua or "ipod" in ua:
        return DeviceType.MOBILE
    return DeviceType.DESKTOP


# ============================================================================
# OWNER MANAGEMENT
# ============================================================================

async def _validate_selected_products(scope: TenantScope, product_ids: List[str]) -> None:
    if not product_ids:
        return
    owned = await scope.collection("products").count_documents({"product_id": {"$in": list(set(product_ids))}})
    if owned != len(set(product_ids)):
        raise ValidationFailed.for_field("selected_products", "Some selected products do not exist")


async def get_own_store(scope: TenantScope) -> Dict[str, Any]:
    store = await scope.collection("public_stores").find_one({})
    if not store:
        raise NotFound("You have not created a store yet")
    return store


async def create_store(scope: TenantScope, request: PublicStoreRequest) -> Dict[str, Any]:
    stores = scope.collection("public_stores")
    if await stores.find_one({}, {"store_id": 1}):
        raise Conflict("You already have a store", error_code="STORE_EXISTS")

    db = database.get_db()
    if await db.public_stores.find_one({"slug": request.slug}, {"_id": 0, "store_id": 1}):
        raise Conflict("This store address is already taken", error_code="DUPLICATE_SLUG")

    await _validate_selected_products(scope, request.selected_products)

    store = await stores.insert_one({
        "store_id": str(uuid.uuid4()),
        **request.model_dump(),
    })
    await create_audit_log(
        action=AuditAction.STORE_PUBLISHED,
        actor_id=scope.tenant_id,
        tenant_id=scope.tenant_id,
        resource_type="public_store",
        resource_id=store["store_id"],
        metadata={"slug": store["slug"], "is_active": store["is_active"]},
    )
    logger.info(f"Public store {store['slug']} created for tenant {scope.tenant_id}")
    return store


async def update_store(scope: TenantScope, request: PublicStoreUpdateRequest) -> Dict[str, Any]:
    store = await get_own_store(scope)
    changes = request.model_dump(exclude_unset=True)
    if "selected_products" in changes:
        await _validate_selected_products(scope, changes["selected_products"] or [])
    if not changes:
        return store

    stores = scope.collection("public_stores")
    await stores.update_one({"store_id": store["store_id"]}, {"$set": changes})
    updated = await stores.find_one({"store_id": store["store_id"]})
    await create_audit_log(
        action=AuditAction.RECORD_UPDATED,
        actor_id=scope.tenant_id,
        tenant_id=scope.tenant_id,
        resource_type="public_store",
        resource_id=store["store_id"],
        before_state={k: store.get(k) for k in changes},
        after_state={k: updated.get(k) for k in changes},
    )
    return updated


async def delete_store(scope: TenantScope) -> Dict[str, Any]:
    store = await get_own_store(scope)
    await scope.collection("public_stores").delete_one({"store_id": store["store_id"]})
    db = database.get_db()
    result = await db.store_analytics.delete_many({"store_id": store["store_id"]})
    await create_audit_log(
        action=AuditAction.RECORD_DELETED,
        actor_id=scope.tenant_id,
        tenant_id=scope.tenant_id,
        resource_type="public_store",
        resource_id=store["store_id"],
    )
    return {"success": True, "analytics_deleted": result.deleted_count}


# ============================================================================
# ANONYMOUS READ
# ============================================================================

async def get_public_store(slug: str) -> Dict[str, Any]:
    """Active store by slug with its in-stock selected products."""
    db = database.get_db()
    store = await db.public_stores.find_one({"slug": slug, "is_active": True}, {"_id": 0})
    if not store:
        raise store_not_found()

    products = ScopedCollection(db.products, store["tenant_id"], "products")
    cursor = products.find(
        {"product_id": {"$in": store.get("selected_products", [])}, "quantity": {"$gt": 0}},
        PUBLIC_PRODUCT_FIELDS,
    )
    selected = await cursor.to_list(length=500)

    return {
        "store_id": store["store_id"],
        "title": store["title"],
        "description": store.get("description"),
        "whatsapp_message": store["whatsapp_message"],
        "phone": store["phone"],
        "selected_products": selected,
        "background_color": store.get("background_color"),
        "logo_url": store.get("logo_url"),
    }


# ============================================================================
# VISITOR ANALYTICS
# ============================================================================

def _analytics_update(event: StoreAnalyticsEventRequest, now: datetime,
                      user_agent: Optional[str], ip_address: Optional[str],
                      referrer: Optional[str]) -> Dict[str, Any]:
    product_id = event.data.get("product_id") or event.data.get("productId")
    if product_id is not None and not isinstance(product_id, str):
        raise ValidationFailed.for_field("data.product_id", "product_id must be a string")

    update: Dict[str, Any] = {
        "$setOnInsert": {
            "analytics_id": str(uuid.uuid4()),
            "device_type": detect_device_type(user_agent).value,
            "user_agent": user_agent or "",
            "ip_address": ip_address,
            "referrer": referrer,
            "start_time": now,
            "created_at": now,
        },
        "$set": {"last_seen_at": now, "updated_at": now},
        "$inc": {"page_views": 1 if event.event_type == AnalyticsEventType.PAGE_VIEW else 0,
                 "whatsapp_clicks": 1 if event.event_type == AnalyticsEventType.WHATSAPP_CLICK else 0},
    }

    if event.event_type == AnalyticsEventType.PRODUCT_VIEW and product_id:
        update["$addToSet"] = {"products_viewed": product_id}
    elif event.event_type == AnalyticsEventType.PRODUCT_SELECT and product_id:
        update["$addToSet"] = {"products_selected": product_id}
    elif event.event_type == AnalyticsEventType.PRODUCT_UNSELECT and product_id:
        update["$pull"] = {"products_selected": product_id}
    elif event.event_type == AnalyticsEventType.IMAGE_EXPAND and product_id:
        update["$addToSet"] = {"images_expanded": product_id}
    elif event.event_type == AnalyticsEventType.FILTER_USED:
        filter_type = event.data.get("filter_type") or event.data.get("filterType")
        filter_value = event.data.get("filter_value") or event.data.get("filterValue")
        if filter_type in ("size", "gender") and isinstance(filter_value, str):
            update["$set"][f"filters_used.{filter_type}"] = filter_value
    elif event.event_type == AnalyticsEventType.SESSION_END:
        update["$set"]["end_time"] = now
    return update


async def record_analytics(
    event: StoreAnalyticsEventRequest,
    user_agent: Optional[str] = None,
    ip_address: Optional[str] = None,
    referrer: Optional[str] = None,
) -> Dict[str, Any]:
    """Upsert the single analytics document for (store_id, session_id)."""
    db = database.get_db()
    store = await db.public_stores.find_one({"store_id": event.store_id, "is_active": True}, {"_id": 0, "store_id": 1})
    if not store:
        raise store_not_found()

    now = datetime.now(timezone.utc)
    key = {"store_id": event.store_id, "session_id": event.session_id}
    update = _analytics_update(event, now, user_agent, ip_address, referrer)
    try:
        await db.store_analytics.update_one(key, update, upsert=True)
    except DuplicateKeyError:
        # Concurrent first events for one session: the other insert won, apply as update
        update.pop("$setOnInsert", None)
        await db.store_analytics.update_one(key, update)

    if event.event_type == AnalyticsEventType.SESSION_END:
        session = await db.store_analytics.find_one(key, {"_id": 0, "start_time": 1})
        start = session.get("start_time") if session else None
        if start is not None:
            if start.tzinfo is None:
                start = start.replace(tzinfo=timezone.utc)
            await db.store_analytics.update_one(
                key, {"$set": {"time_on_page": max(0, int((now - start).total_seconds()))}}
            )

    return {"success": True}


async def get_analytics_summary(scope: TenantScope, limit: int = 500) -> Dict[str, Any]:
    store = await get_own_store(scope)
    db = database.get_db()
    cursor = db.store_analytics.find({"store_id": store["store_id"]}, {"_id": 0}).sort("created_at", -1)
    sessions = await cursor.to_list(length=limit)

    devices = {d.value: 0 for d in DeviceType}
    product_views: Dict[str, int] = {}
    converted = 0
    durations = []
    for session in sessions:
        device = session.get("device_type") or DeviceType.DESKTOP.value
        devices[device] = devices.get(device, 0) + 1
        for product_id in session.get("products_viewed", []):
            product_views[product_id] = product_views.get(product_id, 0) + 1
        if session.get("whatsapp_clicks", 0) > 0:
            converted += 1
        if session.get("time_on_page") is not None:
            durations.append(session["time_on_page"])

    top_products = sorted(product_views.items(), key=lambda kv: kv[1], reverse=True)[:10]
    total = len(sessions)
    return {
        "store_id": store["store_id"],
        "total_sessions": total,
        "total_page_views": sum(s.get("page_views", 0) for s in sessions),
        "whatsapp_clicks": sum(s.get("whatsapp_clicks", 0) for s in sessions),
        "conversion_rate": round(converted / total, 4) if total else 0.0,
        "average_time_on_page": round(sum(durations) / len(durations), 1) if durations else None,
        "devices": devices,
        "top_viewed_products": [{"product_id": pid, "views": views} for pid, views in top_products],
        "recent_sessions": sessions[:50],
    }


async def clear_analytics(scope: TenantScope) -> Dict[str, Any]:
    store = await get_own_store(scope)
    db = database.get_db()
    result = await db.store_analytics.delete_many({"store_id": store["store_id"]})
    return {"success": True, "deleted_count": result.deleted_count}
