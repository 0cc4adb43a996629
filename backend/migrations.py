"""Versioned schema migrations.

Schema evolution happens once per deploy (scripts/migrate.py), never on
process start. Each migration is an async callable taking the database and
is recorded in `schema_migrations` after it succeeds, so re-running the
script is a no-op for versions already applied.
"""
from datetime import datetime, timezone, timedelta
from typing import Awaitable, Callable, List, Tuple
import logging

from pymongo.errors import OperationFailure

logger = logging.getLogger(__name__)

TENANT_OWNED_COLLECTIONS = {
    "products": "product_id",
    "suppliers": "supplier_id",
    "customers": "customer_id",
    "campaigns": "campaign_id",
    "movements": "movement_id",
    "payment_installments": "installment_id",
    "public_stores": "store_id",
}


async def _core_indexes(db) -> None:
    await db.tenants.create_index("tenant_id", unique=True)
    await db.tenants.create_index("email", unique=True)
    await db.tenants.create_index("billing_customer_ref", sparse=True)
    await db.tenants.create_index([("subscription_status", 1), ("current_period_end", 1)])

    for name, id_field in TENANT_OWNED_COLLECTIONS.items():
        await db[name].create_index(id_field, unique=True)
        await db[name].create_index([("tenant_id", 1), (id_field, 1)])

    await db.products.create_index([("tenant_id", 1), ("name", 1)])
    await db.products.create_index(
        [("tenant_id", 1), ("sku", 1)],
        unique=True,
        partialFilterExpression={"sku": {"$type": "string"}},
    )
    await db.movements.create_index([("tenant_id", 1), ("created_at", -1)])
    await db.movements.create_index("sale_group_id", sparse=True)
    await db.payment_installments.create_index([("tenant_id", 1), ("customer_id", 1), ("is_paid", 1)])
    await db.payment_installments.create_index([("tenant_id", 1), ("due_date", 1)])
    await db.payment_installments.create_index("sale_group_id")
    await db.public_stores.create_index("slug", unique=True)
    await db.public_stores.create_index("tenant_id", unique=True)
    await db.store_analytics.create_index([("store_id", 1), ("session_id", 1)], unique=True)
    await db.store_analytics.create_index([("store_id", 1), ("created_at", -1)])

    await db.stripe_events.create_index("event_id", unique=True)
    await db.billing_events.create_index([("tenant_id", 1), ("event_sequence", -1)])
    await db.audit_logs.create_index([("tenant_id", 1), ("timestamp", -1)])
    await db.audit_logs.create_index("action")


async def _backfill_trials(db) -> None:
    """Tenants created before billing existed get the standard trial."""
    from services.entitlements import TRIAL_DAYS

    now = datetime.now(timezone.utc)
    result = await db.tenants.update_many(
        {"$or": [
            {"subscription_status": {"$exists": False}},
            {"subscription_status": None},
            {"subscription_status": ""},
        ]},
        {"$set": {
            "subscription_status": "trialing",
            "plan": "premium",
            "trial_ends_at": now + timedelta(days=TRIAL_DAYS),
            "updated_at": now,
        }},
    )
    logger.info("Trial backfill applied to %s tenants", result.modified_count)


MIGRATIONS: List[Tuple[int, str, Callable[..., Awaitable[None]]]] = [
    (1, "core_indexes", _core_indexes),
    (2, "backfill_trials", _backfill_trials),
]

LATEST_VERSION = MIGRATIONS[-1][0]


async def current_version(db) -> int:
    latest = await db.schema_migrations.find_one({}, {"_id": 0, "version": 1}, sort=[("version", -1)])
    return latest["version"] if latest else 0


async def migrate(db) -> List[int]:
    """Apply pending migrations in order. Returns the versions applied."""
    applied_now = []
    start = await current_version(db)
    for version, name, step in MIGRATIONS:
        if version <= start:
            continue
        logger.info("Applying migration %s (%s)", version, name)
        try:
            await step(db)
        except OperationFailure as e:
            logger.error("Migration %s (%s) failed: %s", version, name, e)
            raise
        await db.schema_migrations.insert_one({
            "version": version,
            "name": name,
            "applied_at": datetime.now(timezone.utc),
        })
        applied_now.append(version)
    if not applied_now:
        logger.info("Schema already at version %s", start)
    return applied_now
