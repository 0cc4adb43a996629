"""Tenant Isolation Guard - tenant-scoped access to tenant-owned collections.

NON-NEGOTIABLE RULES:
1. A TenantScope is built only by the route guard from the authenticated
   session; tenant_id never comes from request bodies, paths or queries
2. Every read and write on a tenant-owned collection goes through
   scope.collection(name), which forces tenant_id into the filter
3. A record owned by another tenant is indistinguishable from a missing one
4. tenant_id is immutable: updates may not set or unset it
5. Driver errors are translated to ServiceError subclasses before leaving
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional
import logging

from pymongo.errors import DuplicateKeyError

from database import database
from errors import Conflict, NotFound
from migrations import TENANT_OWNED_COLLECTIONS
from models import Feature
from services.entitlements import Entitlement, EntitlementSnapshot, check_feature

logger = logging.getLogger(__name__)

# Which unique index a duplicate on each collection most likely hit
DUPLICATE_ERROR_CODES = {
    "products": ("DUPLICATE_SKU", "A product with this SKU already exists"),
    "public_stores": ("DUPLICATE_SLUG", "This store address is already taken"),
}

_UPDATE_OPERATORS = ("$set", "$unset", "$setOnInsert", "$inc", "$push", "$pull", "$addToSet", "$rename")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _strip_id(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is not None:
        doc.pop("_id", None)
    return doc


def _projection(projection: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    merged = {"_id": 0}
    if projection:
        merged.update(projection)
        merged["_id"] = 0
    return merged


class ScopedCollection:
    """A Motor collection that can only see one tenant's documents."""

    def __init__(self, collection, tenant_id: str, name: str):
        if not tenant_id:
            raise ValueError("ScopedCollection requires a tenant_id")
        self._collection = collection
        self.tenant_id = tenant_id
        self.name = name
        self.id_field = TENANT_OWNED_COLLECTIONS[name]

    # ------------------------------------------------------------------
    # Filters and update documents
    # ------------------------------------------------------------------
    def _scoped(self, filter: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        scoped = dict(filter or {})
        if "tenant_id" in scoped and scoped["tenant_id"] != self.tenant_id:
            logger.warning(
                "Cross-tenant filter overridden: collection=%s scope_tenant=%s requested_tenant=%s",
                self.name, self.tenant_id, scoped["tenant_id"]
            )
        scoped["tenant_id"] = self.tenant_id
        return scoped

    def _scoped_update(self, update: Mapping[str, Any]) -> Dict[str, Any]:
        scoped = {op: dict(fields) for op, fields in update.items()}
        for op in _UPDATE_OPERATORS:
            if "tenant_id" in scoped.get(op, {}):
                raise ValueError("tenant_id cannot be modified")
            if self.id_field in scoped.get(op, {}) and op != "$setOnInsert":
                raise ValueError(f"{self.id_field} cannot be modified")
        scoped.setdefault("$set", {})["updated_at"] = _now()
        return scoped

    def _stamp(self, document: Mapping[str, Any]) -> Dict[str, Any]:
        now = _now()
        stamped = dict(document)
        stamped.pop("_id", None)
        stamped["tenant_id"] = self.tenant_id
        stamped.setdefault("created_at", now)
        stamped["updated_at"] = now
        return stamped

    def _conflict(self, error: DuplicateKeyError) -> Conflict:
        code, message = DUPLICATE_ERROR_CODES.get(self.name, ("CONFLICT", "Record already exists"))
        logger.info("Duplicate key on %s for tenant %s: %s", self.name, self.tenant_id, error)
        return Conflict(message, error_code=code)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def find_one(self, filter: Optional[Mapping[str, Any]] = None,
                       projection: Optional[Mapping[str, Any]] = None, **kwargs) -> Optional[Dict[str, Any]]:
        doc = await self._collection.find_one(self._scoped(filter), _projection(projection), **kwargs)
        return _strip_id(doc)

    def find(self, filter: Optional[Mapping[str, Any]] = None,
             projection: Optional[Mapping[str, Any]] = None, **kwargs):
        """Return a cursor over this tenant's matching documents."""
        return self._collection.find(self._scoped(filter), _projection(projection), **kwargs)

    async def count_documents(self, filter: Optional[Mapping[str, Any]] = None) -> int:
        return await self._collection.count_documents(self._scoped(filter))

    async def get_or_404(self, record_id: str, projection: Optional[Mapping[str, Any]] = None,
                         message: Optional[str] = None) -> Dict[str, Any]:
        doc = await self.find_one({self.id_field: record_id}, projection)
        if doc is None:
            raise NotFound(message or f"{self.name[:-1].replace('_', ' ').capitalize()} not found")
        return doc

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    async def insert_one(self, document: Mapping[str, Any]) -> Dict[str, Any]:
        """Insert and return the stored document (without _id)."""
        stamped = self._stamp(document)
        try:
            await self._collection.insert_one(stamped)
        except DuplicateKeyError as e:
            raise self._conflict(e) from e
        return _strip_id(stamped)

    async def insert_many(self, documents: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        stamped = [self._stamp(doc) for doc in documents]
        if not stamped:
            return []
        try:
            await self._collection.insert_many(stamped)
        except DuplicateKeyError as e:
            raise self._conflict(e) from e
        return [_strip_id(doc) for doc in stamped]

    async def update_one(self, filter: Mapping[str, Any], update: Mapping[str, Any], upsert: bool = False):
        try:
            return await self._collection.update_one(self._scoped(filter), self._scoped_update(update), upsert=upsert)
        except DuplicateKeyError as e:
            raise self._conflict(e) from e

    async def update_many(self, filter: Mapping[str, Any], update: Mapping[str, Any]):
        try:
            return await self._collection.update_many(self._scoped(filter), self._scoped_update(update))
        except DuplicateKeyError as e:
            raise self._conflict(e) from e

    async def delete_one(self, filter: Mapping[str, Any]):
        return await self._collection.delete_one(self._scoped(filter))

    async def delete_many(self, filter: Mapping[str, Any]):
        return await self._collection.delete_many(self._scoped(filter))


@dataclass
class TenantScope:
    """Authenticated tenant context handed to every tenant route."""
    tenant_id: str
    email: Optional[str]
    snapshot: EntitlementSnapshot
    entitlement: Entitlement

    def collection(self, name: str) -> ScopedCollection:
        if name not in TENANT_OWNED_COLLECTIONS:
            raise ValueError(f"{name} is not a tenant-owned collection")
        return ScopedCollection(database.get_db()[name], self.tenant_id, name)

    def check(self, feature: Feature) -> None:
        check_feature(self.entitlement, feature)

    async def get_tenant(self, projection: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        db = database.get_db()
        tenant = await db.tenants.find_one({"tenant_id": self.tenant_id}, _projection(projection or {"password_hash": 0}))
        if tenant is None:
            raise NotFound("Account not found")
        return tenant

    async def update_tenant(self, fields: Mapping[str, Any]) -> None:
        """Update the tenant's own profile fields. Billing fields are rejected."""
        forbidden = {"tenant_id", "plan", "subscription_status", "trial_ends_at",
                     "current_period_end", "billing_event_sequence"} & set(fields)
        if forbidden:
            raise ValueError(f"Cannot update {sorted(forbidden)} from a tenant scope")
        db = database.get_db()
        await db.tenants.update_one(
            {"tenant_id": self.tenant_id},
            {"$set": {**fields, "updated_at": _now()}}
        )
