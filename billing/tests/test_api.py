"""
HTTP Tests for the Credit Ledger API
"""

import hashlib
import hmac
import json
import time
from dataclasses import replace
from types import SimpleNamespace

import pytest
import stripe
from fastapi.testclient import TestClient

from billing.api import create_app

WEBHOOK_SECRET = "whsec_api_test_secret"
USER_ID = 7
USER_HEADERS = {"X-User-Id": str(USER_ID)}
ADMIN_HEADERS = {"X-User-Id": "1", "X-User-Role": "admin"}


def sign(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    signed = f"{timestamp}.".encode() + payload
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def post_event(client, event, secret=WEBHOOK_SECRET):
    payload = json.dumps(event).encode()
    return client.post(
        "/stripe/webhook",
        content=payload,
        headers={"Stripe-Signature": sign(payload, secret), "Content-Type": "application/json"},
    )


@pytest.fixture
def client(settings, database):
    signed_settings = replace(settings, stripe_webhook_secret=WEBHOOK_SECRET)
    return TestClient(create_app(settings=signed_settings, database=database))


class TestHealthAndIdentity:
    """Tests for the system endpoint and caller identity."""

    def test_health(self, client):
        """Health check needs no identity."""
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_missing_user_header(self, client):
        """Credit endpoints need an X-User-Id."""
        response = client.get("/credits/balance")

        assert response.status_code == 401


class TestStripeWebhook:
    """Tests for the signed webhook endpoint."""

    def test_signed_checkout_grants_credits(self, client, make_checkout_event):
        """A correctly signed checkout event credits the buyer."""
        response = post_event(client, make_checkout_event())

        assert response.status_code == 200
        body = response.json()
        assert body["received"] is True
        assert body["verified"] is None
        assert body["status"] == "processed"
        assert body["duplicate"] is False

        balance = client.get("/credits/balance", headers=USER_HEADERS)
        assert balance.json() == {"balance": 50}

    def test_duplicate_delivery_acknowledged(self, client, make_checkout_event):
        """Redeliveries get a 200 so Stripe stops retrying."""
        post_event(client, make_checkout_event())

        response = post_event(client, make_checkout_event())

        assert response.status_code == 200
        assert response.json()["duplicate"] is True
        assert client.get("/credits/balance", headers=USER_HEADERS).json() == {"balance": 50}

    def test_bad_signature_rejected(self, client, make_checkout_event):
        """A signature made with the wrong secret is a 400 and a recorded failure."""
        response = post_event(client, make_checkout_event(), secret="whsec_wrong")

        assert response.status_code == 400
        assert client.get("/credits/balance", headers=USER_HEADERS).json() == {"balance": 0}

        ops = client.get("/admin/ops-status", headers=ADMIN_HEADERS).json()
        assert ops["last_webhook_failure_at"] is not None
        assert ops["last_webhook_success_at"] is None

    def test_missing_signature_rejected(self, client, make_checkout_event):
        """Unsigned requests are refused."""
        response = client.post("/stripe/webhook", content=json.dumps(make_checkout_event()).encode())

        assert response.status_code == 400

    def test_missing_secret_is_server_error(self, settings, database, make_checkout_event):
        """Without a configured secret nothing is accepted."""
        client = TestClient(create_app(settings=replace(settings, stripe_webhook_secret=None), database=database))

        response = post_event(client, make_checkout_event())

        assert response.status_code == 500

    def test_stripe_test_event_verified(self, client, make_checkout_event):
        """evt_test_ events are acknowledged as verified without effects."""
        response = post_event(client, make_checkout_event(event_id="evt_test_123"))

        assert response.status_code == 200
        assert response.json()["verified"] is True
        assert response.json()["status"] == "skipped"
        assert client.get("/credits/balance", headers=USER_HEADERS).json() == {"balance": 0}


class TestCreditsEndpoints:
    """Tests for the user-facing credit endpoints."""

    def test_ledger_and_receipts(self, client, make_checkout_event):
        """A buyer sees their ledger and receipts."""
        post_event(client, make_checkout_event())

        ledger = client.get("/credits/ledger", headers=USER_HEADERS).json()
        receipts = client.get("/credits/receipts", headers=USER_HEADERS).json()
        receipt = client.get(f"/credits/receipts/{receipts[0]['id']}", headers=USER_HEADERS)

        assert ledger[0]["amount"] == 50
        assert ledger[0]["reference_type"] == "purchase"
        assert receipt.status_code == 200
        assert receipt.json()["amount_cents"] == 999

    def test_other_users_receipt_not_found(self, client, make_checkout_event):
        """Receipts are invisible to everyone but their owner."""
        post_event(client, make_checkout_event())
        receipt_id = client.get("/credits/receipts", headers=USER_HEADERS).json()[0]["id"]

        response = client.get(f"/credits/receipts/{receipt_id}", headers={"X-User-Id": "8"})

        assert response.status_code == 404

    def test_spend_insufficient_credits(self, client):
        """Spending beyond the balance is a 402."""
        response = client.post(
            "/credits/spend",
            json={"amount": 2, "reason": "Evidence scan", "reference_type": "evidence_run"},
            headers=USER_HEADERS,
        )

        assert response.status_code == 402

    def test_signup_bonus(self, client):
        """The signup bonus is granted once."""
        first = client.post("/credits/signup-bonus", headers=USER_HEADERS)
        second = client.post("/credits/signup-bonus", headers=USER_HEADERS)

        assert first.json()["amount"] == 3
        assert second.json() is None


class TestAdminEndpoints:
    """Tests for admin routes."""

    def test_non_admin_forbidden(self, client):
        """Admin routes reject regular users."""
        response = client.get("/admin/refunds", headers=USER_HEADERS)

        assert response.status_code == 403

    def test_refund_process_flow(self, client, make_checkout_event, make_refund_event):
        """A queued refund is processed once over HTTP."""
        post_event(client, make_checkout_event())
        post_event(client, make_refund_event())

        items = client.get("/admin/refunds", params={"status": "pending"}, headers=ADMIN_HEADERS).json()
        assert len(items) == 1

        url = f"/admin/refunds/{items[0]['id']}/process"
        first = client.post(url, json={"debit_amount": 50}, headers=ADMIN_HEADERS)
        second = client.post(url, json={"debit_amount": 50}, headers=ADMIN_HEADERS)

        assert first.json()["already_processed"] is False
        assert second.json()["already_processed"] is True
        assert client.get("/credits/balance", headers=USER_HEADERS).json() == {"balance": 0}

    def test_refund_debit_validated(self, client, make_refund_event):
        """A zero debit fails request validation."""
        post_event(client, make_refund_event())
        item_id = client.get("/admin/refunds", headers=ADMIN_HEADERS).json()[0]["id"]

        response = client.post(
            f"/admin/refunds/{item_id}/process", json={"debit_amount": 0}, headers=ADMIN_HEADERS
        )

        assert response.status_code == 422

    def test_unmapped_refund_without_override(self, client, make_refund_event):
        """Processing an unmapped refund without an override is a 400."""
        post_event(client, make_refund_event(payment_intent="pi_unknown"))
        item_id = client.get("/admin/refunds", headers=ADMIN_HEADERS).json()[0]["id"]

        response = client.post(
            f"/admin/refunds/{item_id}/process", json={"debit_amount": 5}, headers=ADMIN_HEADERS
        )

        assert response.status_code == 400

    def test_ignore_blank_reason(self, client, make_refund_event):
        """A whitespace reason is a 400."""
        post_event(client, make_refund_event())
        item_id = client.get("/admin/refunds", headers=ADMIN_HEADERS).json()[0]["id"]

        response = client.post(
            f"/admin/refunds/{item_id}/ignore", json={"reason": "   "}, headers=ADMIN_HEADERS
        )

        assert response.status_code == 400

    def test_stripe_events_limit(self, client):
        """Event page size is capped."""
        response = client.get("/admin/stripe-events", params={"limit": 501}, headers=ADMIN_HEADERS)

        assert response.status_code == 400

    def test_stripe_events_listing(self, client, make_checkout_event):
        """Events are listed without payloads."""
        post_event(client, make_checkout_event())

        events = client.get("/admin/stripe-events", headers=ADMIN_HEADERS).json()

        assert events[0]["stripe_event_id"] == "evt_checkout_1"
        assert "payload" not in events[0]


class TestCheckoutEndpoints:
    """Tests for pack listing and Stripe Checkout creation."""

    def test_packs_listed(self, client):
        """The pack catalog is public and priced in cents."""
        packs = client.get("/credits/packs").json()

        assert [p["pack_id"] for p in packs] == ["starter", "pro", "power"]
        assert packs[0]["price_cents"] == 499
        assert packs[0]["price_display"] == "$4.99"

    def test_checkout_created(self, settings, database, monkeypatch):
        """A checkout call returns the Stripe URL for the chosen pack."""
        created = {}

        def fake_create(**params):
            created.update(params)
            return SimpleNamespace(id="cs_test_new", url="https://checkout.stripe.com/c/pay/cs_test_new")

        monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)
        client = TestClient(create_app(
            settings=replace(settings, stripe_secret_key="sk_test_key"), database=database
        ))

        response = client.post(
            "/credits/checkout",
            json={"pack_id": "pro", "origin": "https://app.example.com/"},
            headers=USER_HEADERS,
        )

        assert response.status_code == 200
        assert response.json() == {
            "checkout_url": "https://checkout.stripe.com/c/pay/cs_test_new",
            "session_id": "cs_test_new",
        }
        assert created["metadata"] == {"user_id": "7", "pack_id": "pro", "credits": "15"}
        assert created["success_url"] == "https://app.example.com/billing?checkout=success"

    def test_checkout_without_stripe_key(self, client):
        """Checkout is unavailable until a Stripe key is configured."""
        response = client.post("/credits/checkout", json={"pack_id": "pro"}, headers=USER_HEADERS)

        assert response.status_code == 503

    def test_checkout_unknown_pack(self, client):
        """Unknown packs are rejected before Stripe is involved."""
        response = client.post("/credits/checkout", json={"pack_id": "mega"}, headers=USER_HEADERS)

        assert response.status_code == 400


class TestServerlessEntry:
    """Tests for the Mangum entry point."""

    def test_reuses_module_app(self):
        """The handler wraps the already-built app under /api."""
        import api.index as serverless
        import billing.api

        assert serverless.app is billing.api.app
        assert serverless.app.root_path == "/api"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
