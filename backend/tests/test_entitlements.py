"""
Entitlement derivation, feature gating and snapshot freshness.
"""
import pytest
from datetime import datetime, timezone, timedelta

from errors import EntitlementDenied
from models import EffectiveStatus, Feature, Plan, SubscriptionStatus
from services.entitlements import (
    AccessLevel,
    EntitlementService,
    EntitlementSnapshot,
    TRIAL_DAYS,
    check_feature,
    derive_entitlement,
)

NOW = datetime(2026, 3, 10, 12, 0, 0, tzinfo=timezone.utc)


def tenant(**fields):
    record = {
        "tenant_id": "t-1",
        "plan": None,
        "subscription_status": None,
        "trial_ends_at": None,
        "current_period_end": None,
    }
    record.update(fields)
    return record


class TestDerivation:

    def test_fresh_trial_is_active_with_full_days_left(self):
        ent = derive_entitlement(
            tenant(plan="premium", subscription_status="trialing", trial_ends_at=NOW + timedelta(days=TRIAL_DAYS)),
            now=NOW,
        )
        assert ent.is_active is True
        assert ent.is_trialing is True
        assert ent.days_left_in_trial == 7
        assert ent.effective_status == EffectiveStatus.TRIALING
        assert ent.access_level == AccessLevel.FULL

    def test_partial_day_rounds_up(self):
        ent = derive_entitlement(
            tenant(plan="premium", subscription_status="trialing", trial_ends_at=NOW + timedelta(hours=30)),
            now=NOW,
        )
        assert ent.days_left_in_trial == 2

    def test_trial_ended_one_second_ago_reads_expired(self):
        ent = derive_entitlement(
            tenant(plan="premium", subscription_status="trialing", trial_ends_at=NOW - timedelta(seconds=1)),
            now=NOW,
        )
        assert ent.is_active is False
        assert ent.days_left_in_trial == 0
        assert ent.effective_status == EffectiveStatus.EXPIRED
        # read-time only: the stored value is reported unchanged
        assert ent.stored_status == SubscriptionStatus.TRIALING

    def test_trial_without_end_date_is_expired(self):
        ent = derive_entitlement(tenant(plan="premium", subscription_status="trialing"), now=NOW)
        assert ent.is_active is False
        assert ent.effective_status == EffectiveStatus.EXPIRED

    def test_active_with_future_period_end(self):
        ent = derive_entitlement(
            tenant(plan="starter", subscription_status="active", current_period_end=NOW + timedelta(days=20)),
            now=NOW,
        )
        assert ent.is_active is True
        assert ent.days_left_in_trial is None
        assert ent.access_level == AccessLevel.STANDARD

    def test_active_with_lapsed_period_end_is_not_active(self):
        ent = derive_entitlement(
            tenant(plan="premium", subscription_status="active", current_period_end=NOW - timedelta(minutes=1)),
            now=NOW,
        )
        assert ent.is_active is False
        assert ent.effective_status == EffectiveStatus.EXPIRED

    @pytest.mark.parametrize("status", ["past_due", "canceled", "incomplete"])
    def test_inactive_statuses(self, status):
        ent = derive_entitlement(
            tenant(plan="premium", subscription_status=status, current_period_end=NOW + timedelta(days=10)),
            now=NOW,
        )
        assert ent.is_active is False
        assert ent.effective_status.value == status
        assert ent.access_level == AccessLevel.NONE

    def test_missing_status(self):
        ent = derive_entitlement(tenant(), now=NOW)
        assert ent.is_active is False
        assert ent.effective_status == EffectiveStatus.NONE

    def test_naive_datetimes_from_storage_are_treated_as_utc(self):
        naive_end = (NOW + timedelta(days=2)).replace(tzinfo=None)
        ent = derive_entitlement(
            tenant(plan="premium", subscription_status="trialing", trial_ends_at=naive_end),
            now=NOW,
        )
        assert ent.is_active is True
        assert ent.days_left_in_trial == 2

    def test_unknown_stored_values_are_treated_as_missing(self):
        ent = derive_entitlement(tenant(plan="enterprise", subscription_status="weird"), now=NOW)
        assert ent.plan is None
        assert ent.effective_status == EffectiveStatus.NONE

    def test_to_dict_lists_available_features(self):
        ent = derive_entitlement(
            tenant(plan="starter", subscription_status="active", current_period_end=NOW + timedelta(days=5)),
            now=NOW,
        )
        data = ent.to_dict()
        assert data["features"] == ["movements", "products", "reports", "suppliers"]
        assert data["effective_status"] == "active"
        assert data["access_level"] == "STANDARD"


class TestFeatureGating:

    def test_starter_features_need_only_an_active_subscription(self):
        ent = derive_entitlement(
            tenant(plan="starter", subscription_status="active", current_period_end=NOW + timedelta(days=5)),
            now=NOW,
        )
        for feature in (Feature.PRODUCTS, Feature.SUPPLIERS, Feature.MOVEMENTS, Feature.REPORTS):
            check_feature(ent, feature)

    @pytest.mark.parametrize("feature", [Feature.CUSTOMERS, Feature.STOREFRONT, Feature.CAMPAIGNS, Feature.INSTALLMENTS])
    def test_premium_features_denied_on_starter(self, feature):
        ent = derive_entitlement(
            tenant(plan="starter", subscription_status="active", current_period_end=NOW + timedelta(days=5)),
            now=NOW,
        )
        with pytest.raises(EntitlementDenied) as exc_info:
            check_feature(ent, feature)
        detail = exc_info.value.to_detail()
        assert detail["error_code"] == "ENTITLEMENT_DENIED"
        assert detail["required_plan"] == "premium"
        assert detail["upgrade_path"] == "/precos?plan=premium"

    def test_everything_denied_when_inactive(self):
        ent = derive_entitlement(
            tenant(plan="premium", subscription_status="canceled"),
            now=NOW,
        )
        with pytest.raises(EntitlementDenied) as exc_info:
            check_feature(ent, Feature.PRODUCTS)
        assert exc_info.value.details["effective_status"] == "canceled"
        assert "canceled" in exc_info.value.message

    def test_premium_trial_has_every_feature(self):
        ent = derive_entitlement(
            tenant(plan="premium", subscription_status="trialing", trial_ends_at=NOW + timedelta(days=1)),
            now=NOW,
        )
        for feature in Feature:
            assert ent.can_access_feature(feature)


class TestSnapshot:

    def test_claims_round_trip(self):
        snapshot = EntitlementSnapshot.from_tenant(
            tenant(plan=Plan.PREMIUM.value, subscription_status="trialing",
                   trial_ends_at=NOW + timedelta(days=3), tutorial_completed=True),
            now=NOW,
        )
        restored = EntitlementSnapshot.from_claims("t-1", snapshot.to_claims())
        assert restored == snapshot

    def test_claims_without_capture_time_are_ignored(self):
        assert EntitlementSnapshot.from_claims("t-1", {"plan": "premium"}) is None
        assert EntitlementSnapshot.from_claims("t-1", None) is None
        assert EntitlementSnapshot.from_claims("t-1", {"captured_at": "not a date"}) is None

    def test_staleness_bound(self):
        snapshot = EntitlementSnapshot.from_tenant(tenant(), now=NOW)
        assert snapshot.is_stale(now=NOW + timedelta(seconds=299), max_age_seconds=300) is False
        assert snapshot.is_stale(now=NOW + timedelta(seconds=301), max_age_seconds=300) is True


class TestEntitlementService:

    @pytest.mark.asyncio
    async def test_fresh_claim_is_used_without_storage(self, fake_db):
        service = EntitlementService()
        claimed = EntitlementSnapshot.from_tenant(tenant(plan="starter", subscription_status="active"))
        assert await service.resolve("t-1", claimed) is claimed

    @pytest.mark.asyncio
    async def test_stale_claim_is_refreshed_from_storage(self, fake_db):
        await fake_db.tenants.insert_one(tenant(plan="starter", subscription_status="canceled"))
        service = EntitlementService()
        claimed = EntitlementSnapshot.from_tenant(
            tenant(plan="premium", subscription_status="trialing"),
            now=datetime.now(timezone.utc) - timedelta(hours=1),
        )
        resolved = await service.resolve("t-1", claimed)
        assert resolved is not claimed
        assert resolved.subscription_status == "canceled"

    @pytest.mark.asyncio
    async def test_billing_change_supersedes_fresh_claim(self, fake_db):
        await fake_db.tenants.insert_one(tenant(plan="premium", subscription_status="past_due"))
        service = EntitlementService()
        claimed = EntitlementSnapshot.from_tenant(
            tenant(plan="premium", subscription_status="active"),
            now=datetime.now(timezone.utc) - timedelta(seconds=5),
        )
        service.invalidate("t-1")
        resolved = await service.resolve("t-1", claimed)
        assert resolved.subscription_status == "past_due"

    def test_old_change_markers_are_pruned(self):
        service = EntitlementService()
        service._changed_at["gone"] = datetime.now(timezone.utc) - timedelta(hours=1)
        service._changed_at["recent"] = datetime.now(timezone.utc) - timedelta(seconds=5)

        service.invalidate("t-1")

        assert "gone" not in service._changed_at
        assert set(service._changed_at) == {"recent", "t-1"}

    @pytest.mark.asyncio
    async def test_unknown_tenant_resolves_to_none(self, fake_db):
        service = EntitlementService()
        assert await service.resolve("missing", None) is None
        assert await service.get_tenant_entitlement("missing") is None

    @pytest.mark.asyncio
    async def test_cache_serves_repeat_lookups(self, fake_db):
        await fake_db.tenants.insert_one(tenant(plan="starter", subscription_status="active"))
        service = EntitlementService()
        first = await service.load_snapshot("t-1")
        fake_db.tenants.docs[0]["subscription_status"] = "canceled"
        assert (await service.load_snapshot("t-1")) is first
        service.invalidate("t-1")
        assert (await service.load_snapshot("t-1")).subscription_status == "canceled"
