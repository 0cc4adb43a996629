"""
Billing routes: checkout, portal, cancel and sync fail closed when Stripe
is unreachable or unconfigured; status is always read from storage.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

import stripe


@pytest.fixture
def stripe_key():
    with patch("services.stripe_service.stripe.api_key", "sk_test_123"):
        yield


@pytest.fixture
def prices(monkeypatch):
    monkeypatch.setenv("STRIPE_PRICE_STARTER", "price_starter")
    monkeypatch.setenv("STRIPE_PRICE_PREMIUM", "price_premium")


class TestCheckout:

    def test_missing_key_is_503(self, client, register, prices):
        tenant = register()
        with patch("services.stripe_service.stripe.api_key", ""):
            response = client.post("/api/billing/checkout", json={"plan": "premium"}, headers=tenant["headers"])
        assert response.status_code == 503
        assert response.json()["detail"]["error_code"] == "UPSTREAM_UNAVAILABLE"

    def test_unreachable_stripe_is_503(self, client, register, stripe_key, prices):
        tenant = register()
        with patch("services.stripe_service.stripe.checkout.Session.create",
                   side_effect=stripe.error.APIConnectionError("network down")):
            response = client.post("/api/billing/checkout", json={"plan": "starter"}, headers=tenant["headers"])
        assert response.status_code == 503

    def test_unpriced_plan_is_503(self, client, register, stripe_key, monkeypatch):
        monkeypatch.delenv("STRIPE_PRICE_PREMIUM", raising=False)
        tenant = register()
        response = client.post("/api/billing/checkout", json={"plan": "premium"}, headers=tenant["headers"])
        assert response.status_code == 503

    def test_checkout_session_created(self, client, register, stripe_key, prices, fake_db):
        tenant = register()
        session = MagicMock()
        session.id = "cs_test_1"
        session.url = "https://checkout.stripe.com/c/cs_test_1"

        with patch("services.stripe_service.stripe.checkout.Session.create", return_value=session) as create:
            response = client.post(
                "/api/billing/checkout",
                json={"plan": "premium"},
                headers={**tenant["headers"], "Origin": "https://app.example.com"},
            )

        assert response.status_code == 200, response.text
        assert response.json() == {
            "checkout_url": "https://checkout.stripe.com/c/cs_test_1",
            "session_id": "cs_test_1",
            "plan": "premium",
        }
        params = create.call_args.kwargs
        assert params["client_reference_id"] == tenant["tenant_id"]
        assert params["line_items"] == [{"price": "price_premium", "quantity": 1}]
        assert params["customer_email"] == tenant["email"]
        assert params["subscription_data"]["trial_period_days"] == 7
        assert params["success_url"].startswith("https://app.example.com/dashboard")
        assert any(a["action"] == "CHECKOUT_STARTED" for a in fake_db.audit_logs.docs)

    def test_returning_subscriber_gets_no_trial(self, client, register, set_billing, stripe_key, prices):
        tenant = register()
        set_billing(tenant["tenant_id"], billing_customer_ref="cus_1", billing_subscription_ref="sub_old")
        session = MagicMock(id="cs_2", url="https://checkout.stripe.com/c/cs_2")

        with patch("services.stripe_service.stripe.checkout.Session.create", return_value=session) as create:
            client.post("/api/billing/checkout", json={"plan": "starter"}, headers=tenant["headers"])

        params = create.call_args.kwargs
        assert "trial_period_days" not in params["subscription_data"]
        assert params["customer"] == "cus_1"

    def test_unknown_plan_is_validation_error(self, client, register):
        tenant = register()
        response = client.post("/api/billing/checkout", json={"plan": "enterprise"}, headers=tenant["headers"])
        assert response.status_code == 422
        assert response.json()["detail"]["errors"][0]["field"] == "plan"


class TestPortalAndCancel:

    def test_portal_without_customer(self, client, register, stripe_key):
        tenant = register()
        response = client.post("/api/billing/portal", headers=tenant["headers"])
        assert response.status_code == 422

    def test_portal_session(self, client, register, set_billing, stripe_key):
        tenant = register()
        set_billing(tenant["tenant_id"], billing_customer_ref="cus_1")
        portal = MagicMock(url="https://billing.stripe.com/p/session")
        with patch("services.stripe_service.stripe.billing_portal.Session.create", return_value=portal) as create:
            response = client.post("/api/billing/portal", headers=tenant["headers"])
        assert response.json() == {"portal_url": "https://billing.stripe.com/p/session"}
        assert create.call_args.kwargs["customer"] == "cus_1"

    def test_cancel_without_subscription(self, client, register, stripe_key):
        tenant = register()
        response = client.post("/api/billing/cancel", json={}, headers=tenant["headers"])
        assert response.status_code == 422

    def test_cancel_at_period_end_leaves_status_to_webhook(self, client, register, set_billing, stripe_key, fake_db):
        tenant = register()
        set_billing(tenant["tenant_id"], billing_customer_ref="cus_1", billing_subscription_ref="sub_1")
        with patch("services.stripe_service.stripe.Subscription.modify") as modify:
            response = client.post("/api/billing/cancel", json={}, headers=tenant["headers"])

        assert response.status_code == 200
        assert response.json()["cancel_at_period_end"] is True
        modify.assert_called_once_with("sub_1", cancel_at_period_end=True)
        assert fake_db.tenants.docs[0]["subscription_status"] == "trialing"


class TestStatusAndSync:

    def test_status_reads_storage_only(self, client, register, set_billing):
        tenant = register()
        set_billing(tenant["tenant_id"], billing_customer_ref="cus_1")
        with patch("services.stripe_service.stripe.Subscription.retrieve") as retrieve:
            data = client.get("/api/billing/status", headers=tenant["headers"]).json()
        retrieve.assert_not_called()
        assert data["has_billing_account"] is True
        assert data["has_subscription"] is False
        assert data["subscription_status"] == "trialing"

    def test_sync_without_customer(self, client, register):
        tenant = register()
        response = client.post("/api/billing/sync", headers=tenant["headers"])
        assert response.status_code == 200
        assert response.json()["outcome"] == "NO_SUBSCRIPTION"

    def test_sync_unreachable_is_503(self, client, register, set_billing, stripe_key):
        tenant = register()
        set_billing(tenant["tenant_id"], billing_customer_ref="cus_1")
        with patch("services.stripe_service.stripe.Subscription.list",
                   side_effect=stripe.error.APIConnectionError("timeout")):
            response = client.post("/api/billing/sync", headers=tenant["headers"])
        assert response.status_code == 503

    def test_sync_applies_latest_subscription(self, client, register, set_billing, prices, fake_db):
        tenant = register()
        set_billing(tenant["tenant_id"], billing_customer_ref="cus_1")
        subscription = {
            "id": "sub_1", "customer": "cus_1", "status": "active",
            "current_period_end": 1893456000,
            "items": {"data": [{"price": {"id": "price_starter"}}]},
        }
        with patch("services.billing_events.stripe_service.fetch_latest_subscription",
                   new_callable=AsyncMock, return_value=subscription):
            response = client.post("/api/billing/sync", headers=tenant["headers"])

        data = response.json()
        assert data["outcome"] == "APPLIED"
        assert data["entitlement"]["plan"] == "starter"
        assert data["entitlement"]["subscription_status"] == "active"
        assert fake_db.tenants.docs[0]["billing_subscription_ref"] == "sub_1"
