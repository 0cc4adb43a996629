"""
Stripe webhook endpoint: signature handling, event idempotency, and the
mapping from Stripe events to ordered billing events.
"""
import json
import pytest
from datetime import datetime, timezone, timedelta
from unittest.mock import AsyncMock, patch

import stripe

PERIOD_END = int(datetime(2030, 1, 1, tzinfo=timezone.utc).timestamp())


@pytest.fixture(autouse=True)
def stripe_env(monkeypatch):
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_test")
    monkeypatch.setenv("STRIPE_PRICE_STARTER", "price_starter")
    monkeypatch.setenv("STRIPE_PRICE_PREMIUM", "price_premium")


def subscription(status="active", price="price_premium", customer="cus_1", sub_id="sub_1", **extra):
    data = {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "current_period_end": PERIOD_END,
        "items": {"data": [{"price": {"id": price}}]},
        "metadata": {},
    }
    data.update(extra)
    return data


def stripe_event(event_type, obj, created, event_id=None):
    return {
        "id": event_id or f"evt_{event_type}_{created}",
        "type": event_type,
        "created": created,
        "livemode": False,
        "data": {"object": obj},
    }


def post_event(client, event):
    with patch("services.stripe_webhook_service.stripe.Webhook.construct_event", return_value=event):
        return client.post(
            "/api/webhooks/stripe",
            content=json.dumps(event),
            headers={"Stripe-Signature": "t=1,v1=abc"},
        )


def tenant_doc(fake_db, tenant_id):
    return next(t for t in fake_db.tenants.docs if t["tenant_id"] == tenant_id)


class TestSignature:

    def test_bad_signature_is_400(self, client):
        error = stripe.error.SignatureVerificationError("No signatures found", "t=1,v1=bad")
        with patch("services.stripe_webhook_service.stripe.Webhook.construct_event", side_effect=error):
            response = client.post("/api/webhooks/stripe", content=b"{}", headers={"Stripe-Signature": "t=1,v1=bad"})
        assert response.status_code == 400
        assert response.json()["message"] == "Invalid signature"

    def test_unparseable_payload_is_400(self, client):
        with patch("services.stripe_webhook_service.stripe.Webhook.construct_event", side_effect=ValueError("bad json")):
            response = client.post("/api/webhooks/stripe", content=b"not json", headers={"Stripe-Signature": "x"})
        assert response.status_code == 400


class TestSubscriptionEvents:

    def test_subscription_update_applies_to_linked_tenant(self, client, register, set_billing, fake_db):
        tenant = register()
        set_billing(tenant["tenant_id"], billing_customer_ref="cus_1")

        response = post_event(client, stripe_event("customer.subscription.updated", subscription(), created=1000))

        assert response.status_code == 200
        assert response.json()["message"] == "Processed"
        stored = tenant_doc(fake_db, tenant["tenant_id"])
        assert stored["subscription_status"] == "active"
        assert stored["plan"] == "premium"
        assert stored["billing_event_sequence"] == 1000
        assert fake_db.stripe_events.docs[0]["status"] == "PROCESSED"

    def test_redelivery_is_skipped(self, client, register, set_billing, fake_db):
        tenant = register()
        set_billing(tenant["tenant_id"], billing_customer_ref="cus_1")
        event = stripe_event("customer.subscription.updated", subscription(), created=1000)

        post_event(client, event)
        again = post_event(client, event)

        assert again.status_code == 200
        assert again.json()["message"] == "Already processed"
        assert len([b for b in fake_db.billing_events.docs if b["outcome"] == "APPLIED"]) == 1

    def test_out_of_order_delivery_is_discarded_with_200(self, client, register, set_billing, fake_db):
        tenant = register()
        set_billing(tenant["tenant_id"], billing_customer_ref="cus_1")

        post_event(client, stripe_event("customer.subscription.deleted", subscription(status="canceled"), created=2000))
        late = post_event(client, stripe_event("customer.subscription.updated", subscription(status="active"), created=1500))

        assert late.status_code == 200
        assert late.json()["message"] == "Discarded"
        assert tenant_doc(fake_db, tenant["tenant_id"])["subscription_status"] == "canceled"
        statuses = {e["event_id"]: e["status"] for e in fake_db.stripe_events.docs}
        assert statuses["evt_customer.subscription.updated_1500"] == "DISCARDED"

    def test_orphan_event_is_discarded(self, client, fake_db):
        response = post_event(client, stripe_event("customer.subscription.updated",
                                                   subscription(customer="cus_nobody"), created=1000))
        assert response.status_code == 200
        assert fake_db.stripe_events.docs[0]["status"] == "DISCARDED"

    def test_payment_failed_marks_past_due_and_keeps_plan(self, client, register, set_billing, fake_db):
        tenant = register()
        set_billing(tenant["tenant_id"], billing_customer_ref="cus_1", plan="starter",
                    subscription_status="active", billing_event_sequence=10)

        post_event(client, stripe_event("invoice.payment_failed", {"id": "in_1", "customer": "cus_1"}, created=20))

        stored = tenant_doc(fake_db, tenant["tenant_id"])
        assert stored["subscription_status"] == "past_due"
        assert stored["plan"] == "starter"

    def test_starter_price_maps_to_starter_plan(self, client, register, set_billing, fake_db):
        tenant = register()
        set_billing(tenant["tenant_id"], billing_customer_ref="cus_1")
        post_event(client, stripe_event("customer.subscription.created",
                                        subscription(price="price_starter"), created=5))
        assert tenant_doc(fake_db, tenant["tenant_id"])["plan"] == "starter"

    def test_unhandled_event_type_is_acknowledged(self, client, fake_db):
        response = post_event(client, stripe_event("customer.created", {"id": "cus_1"}, created=1))
        assert response.status_code == 200
        assert fake_db.stripe_events.docs[0]["status"] == "PROCESSED"

    def test_handler_failure_is_recorded_and_acknowledged(self, client, register, set_billing, fake_db):
        tenant = register()
        set_billing(tenant["tenant_id"], billing_customer_ref="cus_1")
        with patch("services.stripe_webhook_service.apply_billing_event",
                   new_callable=AsyncMock, side_effect=RuntimeError("boom")):
            response = post_event(client, stripe_event("customer.subscription.updated", subscription(), created=1))

        assert response.status_code == 200
        record = fake_db.stripe_events.docs[0]
        assert record["status"] == "FAILED"
        assert record["error"] == "boom"
        assert any(a["action"] == "STRIPE_EVENT_FAILED" for a in fake_db.audit_logs.docs)


class TestCheckoutCompleted:

    def test_links_customer_then_applies_subscription(self, client, register, fake_db):
        tenant = register()
        session = {
            "id": "cs_1",
            "object": "checkout.session",
            "mode": "subscription",
            "client_reference_id": tenant["tenant_id"],
            "customer": "cus_new",
            "subscription": "sub_new",
            "metadata": {"tenant_id": tenant["tenant_id"], "plan": "premium"},
        }
        trial_end = int((datetime.now(timezone.utc) + timedelta(days=7)).timestamp())
        sub = subscription(status="trialing", customer="cus_new", sub_id="sub_new", trial_end=trial_end)

        with patch("services.stripe_webhook_service.stripe_service.fetch_subscription",
                   new_callable=AsyncMock, return_value=sub):
            response = post_event(client, stripe_event("checkout.session.completed", session, created=3000))

        assert response.status_code == 200
        stored = tenant_doc(fake_db, tenant["tenant_id"])
        assert stored["billing_customer_ref"] == "cus_new"
        assert stored["billing_subscription_ref"] == "sub_new"
        assert stored["subscription_status"] == "trialing"
        assert stored["billing_event_sequence"] == 3000

    def test_payment_mode_checkout_is_ignored(self, client, fake_db):
        response = post_event(client, stripe_event("checkout.session.completed",
                                                   {"id": "cs_2", "mode": "payment"}, created=1))
        assert response.status_code == 200
        assert fake_db.billing_events.docs == []


class TestInvoicePaid:

    def test_invoice_paid_refreshes_period_end(self, client, register, set_billing, fake_db):
        tenant = register()
        set_billing(tenant["tenant_id"], billing_customer_ref="cus_1", subscription_status="active",
                    billing_event_sequence=100)
        invoice = {
            "id": "in_2",
            "customer": "cus_1",
            "parent": {"subscription_details": {"subscription": "sub_1"}},
        }
        with patch("services.stripe_webhook_service.stripe_service.fetch_subscription",
                   new_callable=AsyncMock, return_value=subscription()) as fetch:
            post_event(client, stripe_event("invoice.paid", invoice, created=200))

        fetch.assert_awaited_once_with("sub_1")
        stored = tenant_doc(fake_db, tenant["tenant_id"])
        assert stored["current_period_end"] == datetime.fromtimestamp(PERIOD_END, tz=timezone.utc)
        assert stored["billing_event_sequence"] == 200
