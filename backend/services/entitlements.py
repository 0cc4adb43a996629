"""Entitlement Engine - Derives effective access from stored billing fields.

This is the AUTHORITATIVE source for:
- Plan feature matrix (starter vs premium)
- Effective subscription status (read-time trial expiry)
- Trial days remaining
- Access level classification (plan x status)

NON-NEGOTIABLE RULES:
1. Derivation is pure: it never writes, never calls the billing provider
2. A trial past its end date reads as EXPIRED even while the stored field
   still says trialing; the stored field is corrected by the next billing write
3. Premium features need plan=premium AND an active subscription
4. Starter features need only an active subscription
5. Gating runs against persisted state (session snapshot or tenant record)
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union
import math
import os
import logging

from database import database
from errors import EntitlementDenied
from models import Plan, SubscriptionStatus, EffectiveStatus, Feature
from utils.cache import TTLCache

logger = logging.getLogger(__name__)

TRIAL_DAYS = 7
SECONDS_PER_DAY = 86400

ENTITLEMENT_SNAPSHOT_MAX_AGE_SECONDS = int(os.getenv("ENTITLEMENT_SNAPSHOT_MAX_AGE_SECONDS", "300"))
ENTITLEMENT_CACHE_TTL_SECONDS = int(os.getenv("ENTITLEMENT_CACHE_TTL_SECONDS", "30"))


# ============================================================================
# ACCESS LEVEL - plan x status
# ============================================================================
class AccessLevel(str, Enum):
    FULL = "FULL"          # premium, active
    STANDARD = "STANDARD"  # starter, active
    NONE = "NONE"          # no active subscription


# ============================================================================
# PLAN FEATURE MATRIX
# ============================================================================
STARTER_FEATURES = frozenset({
    Feature.PRODUCTS,
    Feature.SUPPLIERS,
    Feature.MOVEMENTS,
    Feature.REPORTS,
})

PREMIUM_ONLY_FEATURES = frozenset({
    Feature.CUSTOMERS,
    Feature.STOREFRONT,
    Feature.CAMPAIGNS,
    Feature.INSTALLMENTS,
})

FEATURE_MATRIX = {
    Plan.STARTER: STARTER_FEATURES,
    Plan.PREMIUM: STARTER_FEATURES | PREMIUM_ONLY_FEATURES,
}

FEATURE_NAMES = {
    Feature.PRODUCTS: "Product management",
    Feature.SUPPLIERS: "Supplier management",
    Feature.MOVEMENTS: "Stock movements",
    Feature.REPORTS: "Reports",
    Feature.CUSTOMERS: "Customer management",
    Feature.STOREFRONT: "Public storefront",
    Feature.CAMPAIGNS: "Campaigns",
    Feature.INSTALLMENTS: "Payment installments",
}

UPGRADE_PATH = "/precos"


# ============================================================================
# DATE NORMALIZATION
# ============================================================================
def as_utc(value: Union[datetime, str, None]) -> Optional[datetime]:
    """Normalize stored/claimed timestamps to aware UTC datetimes.

    Motor returns naive datetimes (UTC); session claims carry ISO strings.
    """
    if value is None or value == "":
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _enum_or_none(enum_cls, value):
    if value is None or value == "":
        return None
    try:
        return enum_cls(value)
    except ValueError:
        logger.warning("Unknown %s value %r treated as missing", enum_cls.__name__, value)
        return None


# ============================================================================
# ENTITLEMENT VALUE
# ============================================================================
@dataclass(frozen=True)
class Entitlement:
    plan: Optional[Plan]
    stored_status: Optional[SubscriptionStatus]
    effective_status: EffectiveStatus
    is_active: bool
    is_trialing: bool
    days_left_in_trial: Optional[int]
    trial_ends_at: Optional[datetime]
    current_period_end: Optional[datetime]

    @property
    def access_level(self) -> AccessLevel:
        if not self.is_active or self.plan is None:
            return AccessLevel.NONE
        return AccessLevel.FULL if self.plan == Plan.PREMIUM else AccessLevel.STANDARD

    def can_access_feature(self, feature: Union[Feature, str]) -> bool:
        feature = Feature(feature)
        if not self.is_active or self.plan is None:
            return False
        return feature in FEATURE_MATRIX.get(self.plan, frozenset())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plan": self.plan.value if self.plan else None,
            "subscription_status": self.stored_status.value if self.stored_status else None,
            "effective_status": self.effective_status.value,
            "is_active": self.is_active,
            "is_trialing": self.is_trialing,
            "days_left_in_trial": self.days_left_in_trial,
            "trial_ends_at": self.trial_ends_at.isoformat() if self.trial_ends_at else None,
            "current_period_end": self.current_period_end.isoformat() if self.current_period_end else None,
            "access_level": self.access_level.value,
            "features": sorted(f.value for f in Feature if self.can_access_feature(f)),
        }


def derive_entitlement(record: Union[Mapping[str, Any], "EntitlementSnapshot"], now: Optional[datetime] = None) -> Entitlement:
    """Derive the effective entitlement from stored billing fields. Pure."""
    now = as_utc(now) if now else datetime.now(timezone.utc)
    if isinstance(record, EntitlementSnapshot):
        record = record.to_record()

    plan = _enum_or_none(Plan, record.get("plan"))
    status = _enum_or_none(SubscriptionStatus, record.get("subscription_status"))
    trial_ends_at = as_utc(record.get("trial_ends_at"))
    current_period_end = as_utc(record.get("current_period_end"))

    is_active = False
    is_trialing = False
    days_left = None

    if status == SubscriptionStatus.TRIALING:
        remaining = (trial_ends_at - now).total_seconds() if trial_ends_at else 0
        days_left = max(0, math.ceil(remaining / SECONDS_PER_DAY))
        if remaining > 0:
            is_active = True
            is_trialing = True
            effective = EffectiveStatus.TRIALING
        else:
            days_left = 0
            effective = EffectiveStatus.EXPIRED
    elif status == SubscriptionStatus.ACTIVE:
        if current_period_end and current_period_end > now:
            is_active = True
            effective = EffectiveStatus.ACTIVE
        else:
            effective = EffectiveStatus.EXPIRED
    elif status is None:
        effective = EffectiveStatus.NONE
    else:
        # past_due, canceled, incomplete
        effective = EffectiveStatus(status.value)

    return Entitlement(
        plan=plan,
        stored_status=status,
        effective_status=effective,
        is_active=is_active,
        is_trialing=is_trialing,
        days_left_in_trial=days_left,
        trial_ends_at=trial_ends_at,
        current_period_end=current_period_end,
    )


def check_feature(entitlement: Entitlement, feature: Union[Feature, str]) -> None:
    """Raise EntitlementDenied unless the feature is available."""
    feature = Feature(feature)
    if entitlement.can_access_feature(feature):
        return

    feature_name = FEATURE_NAMES.get(feature, feature.value)
    required_plan = Plan.PREMIUM if feature in PREMIUM_ONLY_FEATURES else Plan.STARTER
    if not entitlement.is_active:
        message = f"Your subscription is {entitlement.effective_status.value}. Choose a plan to keep using {feature_name}."
    else:
        message = f"{feature_name} requires the {required_plan.value} plan. Upgrade to access."
    raise EntitlementDenied(
        message,
        feature=feature.value,
        required_plan=required_plan.value,
        current_plan=entitlement.plan.value if entitlement.plan else None,
        effective_status=entitlement.effective_status.value,
        upgrade_path=f"{UPGRADE_PATH}?plan={required_plan.value}",
    )


# ============================================================================
# SNAPSHOT - cached copy of billing fields with a staleness bound
# ============================================================================
@dataclass(frozen=True)
class EntitlementSnapshot:
    tenant_id: str
    plan: Optional[str]
    subscription_status: Optional[str]
    trial_ends_at: Optional[datetime]
    current_period_end: Optional[datetime]
    tutorial_completed: bool = False
    captured_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_tenant(cls, tenant: Mapping[str, Any], now: Optional[datetime] = None) -> "EntitlementSnapshot":
        return cls(
            tenant_id=tenant["tenant_id"],
            plan=tenant.get("plan"),
            subscription_status=tenant.get("subscription_status"),
            trial_ends_at=as_utc(tenant.get("trial_ends_at")),
            current_period_end=as_utc(tenant.get("current_period_end")),
            tutorial_completed=bool(tenant.get("tutorial_completed", False)),
            captured_at=as_utc(now) if now else datetime.now(timezone.utc),
        )

    @classmethod
    def from_claims(cls, tenant_id: str, claims: Optional[Mapping[str, Any]]) -> Optional["EntitlementSnapshot"]:
        if not claims or "captured_at" not in claims:
            return None
        try:
            return cls(
                tenant_id=tenant_id,
                plan=claims.get("plan"),
                subscription_status=claims.get("subscription_status"),
                trial_ends_at=as_utc(claims.get("trial_ends_at")),
                current_period_end=as_utc(claims.get("current_period_end")),
                tutorial_completed=bool(claims.get("tutorial_completed", False)),
                captured_at=as_utc(claims["captured_at"]),
            )
        except (TypeError, ValueError):
            return None

    def to_claims(self) -> Dict[str, Any]:
        return {
            "plan": self.plan,
            "subscription_status": self.subscription_status,
            "trial_ends_at": self.trial_ends_at.isoformat() if self.trial_ends_at else None,
            "current_period_end": self.current_period_end.isoformat() if self.current_period_end else None,
            "tutorial_completed": self.tutorial_completed,
            "captured_at": self.captured_at.isoformat(),
        }

    def to_record(self) -> Dict[str, Any]:
        return {
            "plan": self.plan,
            "subscription_status": self.subscription_status,
            "trial_ends_at": self.trial_ends_at,
            "current_period_end": self.current_period_end,
        }

    def is_stale(self, now: Optional[datetime] = None, max_age_seconds: Optional[int] = None) -> bool:
        now = as_utc(now) if now else datetime.now(timezone.utc)
        max_age = ENTITLEMENT_SNAPSHOT_MAX_AGE_SECONDS if max_age_seconds is None else max_age_seconds
        return (now - self.captured_at) > timedelta(seconds=max_age)


class EntitlementService:
    """Resolves snapshots for the request guard. Never contacts the billing provider."""

    def __init__(self, cache_ttl_seconds: float = ENTITLEMENT_CACHE_TTL_SECONDS):
        self.cache = TTLCache(cache_ttl_seconds)
        # tenant_id -> time a billing event was last applied in this process
        self._changed_at: Dict[str, datetime] = {}

    async def load_snapshot(self, tenant_id: str) -> Optional[EntitlementSnapshot]:
        """Snapshot from the tenant store, via the short-lived cache."""
        cached = self.cache.get(tenant_id)
        if cached is not None:
            return cached

        db = database.get_db()
        tenant = await db.tenants.find_one(
            {"tenant_id": tenant_id},
            {"_id": 0, "tenant_id": 1, "plan": 1, "subscription_status": 1,
             "trial_ends_at": 1, "current_period_end": 1, "tutorial_completed": 1}
        )
        if not tenant:
            return None
        snapshot = EntitlementSnapshot.from_tenant(tenant)
        self.cache.put(tenant_id, snapshot)
        return snapshot

    async def resolve(self, tenant_id: str, claimed: Optional[EntitlementSnapshot]) -> Optional[EntitlementSnapshot]:
        """Use the session's snapshot while fresh, otherwise refresh it from storage."""
        if claimed is not None and not claimed.is_stale():
            changed_at = self._changed_at.get(tenant_id)
            if changed_at is None or claimed.captured_at >= changed_at:
                return claimed
        return await self.load_snapshot(tenant_id)

    def invalidate(self, tenant_id: str) -> None:
        """Called when a billing event changes the tenant's stored entitlement."""
        now = datetime.now(timezone.utc)
        self.cache.invalidate(tenant_id)
        self._prune_changes(now)
        self._changed_at[tenant_id] = now

    def _prune_changes(self, now: datetime) -> None:
        # Any claim captured before the cutoff is already stale, so older markers are redundant
        cutoff = now - timedelta(seconds=ENTITLEMENT_SNAPSHOT_MAX_AGE_SECONDS)
        for tenant_id in [t for t, changed in self._changed_at.items() if changed < cutoff]:
            del self._changed_at[tenant_id]

    async def get_tenant_entitlement(self, tenant_id: str) -> Optional[Entitlement]:
        snapshot = await self.load_snapshot(tenant_id)
        return derive_entitlement(snapshot) if snapshot else None


# Singleton instance
entitlement_service = EntitlementService()
