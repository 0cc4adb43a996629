"""
Versioned schema migrations run once per deploy and are idempotent.
"""
import pytest

from migrations import LATEST_VERSION, current_version, migrate


class TestMigrate:

    @pytest.mark.asyncio
    async def test_fresh_database_applies_all_versions(self, new_fake_db):
        db = new_fake_db()

        assert await current_version(db) == 0
        applied = await migrate(db)

        assert applied == [1, 2]
        assert await current_version(db) == LATEST_VERSION
        unique_tenant_fields = [i["fields"] for i in db.tenants.indexes if i["unique"]]
        assert ["tenant_id"] in unique_tenant_fields
        assert ["email"] in unique_tenant_fields

    @pytest.mark.asyncio
    async def test_second_run_is_a_no_op(self, new_fake_db):
        db = new_fake_db()
        await migrate(db)

        assert await migrate(db) == []
        assert len(db.schema_migrations.docs) == 2

    @pytest.mark.asyncio
    async def test_only_pending_versions_run(self, new_fake_db):
        db = new_fake_db()
        await db.schema_migrations.insert_one({"version": 1, "name": "core_indexes"})

        assert await migrate(db) == [2]

    @pytest.mark.asyncio
    async def test_backfill_gives_legacy_tenants_a_trial(self, new_fake_db):
        db = new_fake_db()
        await db.tenants.insert_one({"tenant_id": "legacy", "email": "old@example.com"})
        await db.tenants.insert_one({
            "tenant_id": "paying", "email": "paid@example.com",
            "subscription_status": "active", "plan": "starter",
        })

        await migrate(db)

        legacy = next(t for t in db.tenants.docs if t["tenant_id"] == "legacy")
        paying = next(t for t in db.tenants.docs if t["tenant_id"] == "paying")
        assert legacy["subscription_status"] == "trialing"
        assert legacy["plan"] == "premium"
        assert legacy["trial_ends_at"] is not None
        assert paying["subscription_status"] == "active"
        assert paying["plan"] == "starter"
