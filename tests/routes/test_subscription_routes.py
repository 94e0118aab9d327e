"""
Tests for the subscription HTTP endpoints

The service layer runs against the in-memory Supabase and Stripe fakes; only
authentication is overridden.
"""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from conftest import CUSTOMER_ID, USER_EMAIL
from smokefree.main import app
from smokefree.schemas.subscriptions import PriceSnapshot
from smokefree.security.deps import get_current_user
from smokefree.utils.exceptions import ProviderUnavailable


@pytest.fixture
def client(fake_db, subscription_service, user):
    app.dependency_overrides[get_current_user] = lambda: user
    with patch("smokefree.routes.subscriptions.subscription_service", subscription_service):
        yield TestClient(app)
    app.dependency_overrides.clear()


class TestAuthentication:
    def test_missing_token_is_401(self):
        response = TestClient(app).post("/check-subscription")

        assert response.status_code == 401
        assert response.json() == {"success": False, "error": "Authorization header required"}

    def test_rejected_token_is_401(self, fake_db):
        fake_db.auth.get_user.side_effect = Exception("invalid JWT")

        with patch("smokefree.security.deps.get_supabase_client", return_value=fake_db):
            response = TestClient(app).post(
                "/check-subscription", headers={"Authorization": "Bearer expired-token"}
            )

        assert response.status_code == 401
        assert response.json()["error"] == "Invalid or expired session"


class TestCheckSubscription:
    def test_not_subscribed(self, client):
        response = client.post("/check-subscription")

        assert response.status_code == 200
        body = response.json()
        assert body["subscribed"] is False
        assert body["premium"] is False
        assert body["poll_interval_seconds"] == 60

    def test_override_header_grants_premium(self, client):
        response = client.post("/check-subscription", headers={"X-Premium-Override": "QUIT-TODAY"})

        body = response.json()
        assert body["subscribed"] is False
        assert body["premium"] is True

    def test_subscribed(self, client, gateway, make_subscription):
        gateway.add_customer()
        gateway.add_subscription(make_subscription())

        body = client.post("/check-subscription").json()

        assert body["subscribed"] is True
        assert body["plan_name"] == "Premium"
        assert body["status"] == "active"

    def test_provider_outage_is_500_not_unsubscribed(self, client, fake_db, gateway, stored_entitlement):
        stored_entitlement(status="active")
        gateway.add_customer()
        gateway.list_error = ProviderUnavailable()

        response = client.post("/check-subscription")

        assert response.status_code == 500
        assert response.json() == {"success": False, "error": ProviderUnavailable.default_message}
        assert fake_db.rows("subscriptions")[0]["status"] == "active"


class TestCreateCheckout:
    def test_missing_price_is_400(self, client):
        response = client.post("/create-checkout", json={})

        assert response.status_code == 400
        assert response.json() == {"success": False, "error": "priceId is required"}

    def test_duplicate_subscription_is_400(self, client, gateway, make_subscription):
        gateway.prices["price_premium_monthly"] = PriceSnapshot(
            id="price_premium_monthly", type="recurring", product_id="prod_premium"
        )
        gateway.add_customer()
        gateway.add_subscription(make_subscription(status="trialing"))

        response = client.post("/create-checkout", json={"priceId": "price_premium_monthly"})

        assert response.status_code == 400
        assert "already have an active subscription" in response.json()["error"]
        assert gateway.created_sessions == []

    def test_checkout_url_returned(self, client, gateway):
        gateway.prices["price_premium_monthly"] = PriceSnapshot(
            id="price_premium_monthly", type="recurring", product_id="prod_premium"
        )

        response = client.post(
            "/create-checkout",
            json={"priceId": "price_premium_monthly"},
            headers={"Origin": "https://app.smokefree.test"},
        )

        assert response.status_code == 200
        assert response.json()["url"].startswith("https://checkout.stripe.com/")


class TestActivateSubscription:
    def test_invalid_session_is_400(self, client):
        response = client.post("/activate-subscription", json={"sessionId": "cs_test_unknown"})

        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_missing_session_id_is_400(self, client):
        response = client.post("/activate-subscription", json={})

        assert response.status_code == 400
        assert response.json()["error"] == "sessionId is required"


class TestPortalAndCancel:
    def test_portal_without_customer(self, client):
        response = client.post("/customer-portal")

        assert response.status_code == 400
        assert response.json() == {"success": False, "error": "No billing account found"}

    def test_portal_url(self, client, gateway):
        gateway.add_customer()

        response = client.post("/customer-portal")

        assert response.status_code == 200
        assert response.json()["url"].startswith("https://billing.stripe.com/")

    def test_cancel_without_subscription(self, client):
        response = client.post("/handle-subscription-cancel")

        assert response.status_code == 200
        assert response.json()["success"] is False

    def test_cancel_active_subscription(self, client, gateway, make_subscription, stored_entitlement):
        stored_entitlement(status="active")
        gateway.add_customer(email=USER_EMAIL, customer_id=CUSTOMER_ID)
        gateway.add_subscription(make_subscription())

        response = client.post("/handle-subscription-cancel")

        body = response.json()
        assert response.status_code == 200
        assert body["success"] is True
        assert body["refunded"] is False
        assert gateway.canceled == ["sub_test_1"]


class TestUnlockCode:
    def test_valid_code(self, client):
        response = client.post("/unlock-code", json={"code": "QUIT-TODAY"})
        assert response.json() == {"valid": True}

    def test_invalid_code(self, client):
        response = client.post("/unlock-code", json={"code": "let-me-in"})
        assert response.json() == {"valid": False}
