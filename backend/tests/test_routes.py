"""
API tests: auth, profile, billing, payout-account gating and webhook status
codes, run through the FastAPI app against the in-memory store.
"""
import json
from unittest.mock import MagicMock, patch

import pytest
import stripe
from jose import jwt

from auth import JWT_ALGORITHM, JWT_SECRET, create_user_token
from services.connect_service import connect_service
from services.stripe_webhook_service import stripe_webhook_service

USER_ID = "user-1"


def _auth_headers(user_id=USER_ID):
    token = create_user_token({"user_id": user_id, "email": f"{user_id}@example.com"})
    return {"Authorization": f"Bearer {token}"}


# =============================================================================
# Auth and profile
# =============================================================================

def test_signup_starts_on_free_plan(store, client):
    resp = client.post("/api/auth/signup", json={"email": "Ada@Example.com", "name": "Ada", "password": "s3cretpass"})

    assert resp.status_code == 201
    data = resp.json()
    assert data["access_token"]
    assert data["user"]["email"] == "ada@example.com"
    assert data["user"]["plan"]["tier"] == "free"
    assert "create_invoice" in data["user"]["features"]
    assert "payment_integration" not in data["user"]["features"]
    assert data["user"]["subscription"] is None
    assert data["user"]["payout_account"] is None
    assert store.audit_actions() == ["USER_SIGNUP"]


def test_signup_duplicate_email(store, client):
    body = {"email": "ada@example.com", "name": "Ada", "password": "s3cretpass"}
    assert client.post("/api/auth/signup", json=body).status_code == 201
    assert client.post("/api/auth/signup", json=body).status_code == 409


def test_signup_weak_password(store, client):
    resp = client.post("/api/auth/signup", json={"email": "ada@example.com", "name": "Ada", "password": "short"})
    assert resp.status_code == 400
    assert store.users.docs == []


def test_login_and_profile(store, client):
    client.post("/api/auth/signup", json={"email": "ada@example.com", "name": "Ada", "password": "s3cretpass"})

    bad = client.post("/api/auth/login", json={"email": "ada@example.com", "password": "wrongpass1"})
    assert bad.status_code == 401

    resp = client.post("/api/auth/login", json={"email": "ada@example.com", "password": "s3cretpass"})
    assert resp.status_code == 200
    token = resp.json()["access_token"]

    profile = client.get("/api/profile", headers={"Authorization": f"Bearer {token}"})
    assert profile.status_code == 200
    assert profile.json()["name"] == "Ada"
    assert "password_hash" not in profile.json()
    assert "USER_LOGIN_FAILED" in store.audit_actions()


def test_profile_requires_auth(store, client):
    assert client.get("/api/profile").status_code == 401


def test_token_without_access_claims_is_rejected(store, client, add_user):
    add_user(user_id=USER_ID)
    bare = jwt.encode({"user_id": USER_ID}, JWT_SECRET, algorithm=JWT_ALGORITHM)

    resp = client.get("/api/profile", headers={"Authorization": f"Bearer {bare}"})

    assert resp.status_code == 401
    assert client.get("/api/profile", headers=_auth_headers()).status_code == 200


def test_login_with_unreadable_stored_hash_is_401(store, client, add_user):
    add_user(user_id=USER_ID)

    resp = client.post("/api/auth/login", json={"email": f"{USER_ID}@example.com", "password": "s3cretpass"})

    assert resp.status_code == 401
    assert store.audit_actions() == ["USER_LOGIN_FAILED"]


def test_profile_entitlements(store, client, add_user):
    add_user(user_id=USER_ID)

    resp = client.get("/api/profile/entitlements", headers=_auth_headers())

    assert resp.status_code == 200
    data = resp.json()
    assert data["plan"] == "free"
    assert data["features"]["payment_integration"]["enabled"] is False
    assert data["features"]["export_pdf"]["enabled"] is True


# =============================================================================
# Billing
# =============================================================================

def test_feature_matrix_is_public(client):
    resp = client.get("/api/billing/features")
    assert resp.status_code == 200
    assert resp.json()["features"]["payment_integration"]["plans"] == {"free": False, "pro": True}


def test_pricing_plans_provider_outage_is_503(client):
    with patch.object(stripe.Product, "list", side_effect=stripe.APIConnectionError("down")):
        resp = client.get("/api/billing/plans")
    assert resp.status_code == 503
    assert resp.json()["error_code"] == "BillingProviderUnavailableError"


def test_billing_status(store, client, add_user):
    add_user(user_id=USER_ID, subscription={"customer_id": "cus_1"})

    resp = client.get("/api/billing/status", headers=_auth_headers())

    assert resp.status_code == 200
    assert resp.json()["has_subscription"] is False
    assert resp.json()["tier"] == "free"


def test_cancel_without_subscription_maps_to_400(store, client, add_user):
    add_user(user_id=USER_ID)

    resp = client.post("/api/billing/cancel", headers=_auth_headers())

    assert resp.status_code == 400
    assert resp.json()["error_code"] == "NoActiveSubscriptionError"


def test_checkout_rejects_unknown_interval(store, client, add_user):
    add_user(user_id=USER_ID)
    resp = client.post("/api/billing/checkout", json={"interval": "week"}, headers=_auth_headers())
    assert resp.status_code == 422


# =============================================================================
# Payout account gating
# =============================================================================

def test_free_user_cannot_create_payout_account(store, client, add_user):
    add_user(user_id=USER_ID)

    with patch.object(stripe.Account, "create") as create:
        resp = client.post("/api/connect/account", json={}, headers=_auth_headers())

    assert resp.status_code == 403
    assert resp.json()["detail"]["error_code"] == "PLAN_NOT_ELIGIBLE"
    assert resp.json()["detail"]["feature"] == "payment_integration"
    create.assert_not_called()
    assert "FEATURE_GATE_DENIED" in store.audit_actions()


def test_pro_user_creates_payout_account(store, client, add_user):
    add_user(user_id=USER_ID, tier="pro")
    account = {"id": "acct_1", "country": "US", "charges_enabled": False, "payouts_enabled": False, "details_submitted": False}

    with patch.object(stripe.Account, "create", return_value=account):
        resp = client.post("/api/connect/account", json={"country": "us"}, headers=_auth_headers())

    assert resp.status_code == 200
    assert resp.json() == {"account_id": "acct_1", "reconnected": False, "already_exists": False}


def test_downgraded_user_can_still_disconnect(store, client, add_user):
    add_user(user_id=USER_ID, payout_account={"account_id": "acct_1", "connected": True})

    resp = client.post("/api/connect/disconnect", headers=_auth_headers())

    assert resp.status_code == 200
    assert resp.json()["success"] is True
    assert store.user(USER_ID)["payout_account"]["account_id"] == "acct_1"
    assert store.user(USER_ID)["payout_account"]["connected"] is False

    status = client.get("/api/connect/status", headers=_auth_headers())
    assert status.json()["was_disconnected"] is True


def test_gone_payout_account_maps_to_409(store, client, add_user):
    add_user(user_id=USER_ID, tier="pro", payout_account={"account_id": "acct_1", "connected": False})
    missing = stripe.InvalidRequestError("No such account", "account", code="resource_missing")

    with patch.object(stripe.Account, "retrieve", side_effect=missing):
        resp = client.post("/api/connect/account", headers=_auth_headers())

    assert resp.status_code == 409
    assert resp.json()["error_code"] == "PayoutAccountGoneError"


def test_refresh_of_deleted_payout_account_maps_to_409(store, client, add_user):
    add_user(user_id=USER_ID, tier="pro", payout_account={"account_id": "acct_1", "connected": True})
    missing = stripe.InvalidRequestError("No such account", "account", code="resource_missing")

    with patch.object(stripe.Account, "retrieve", side_effect=missing):
        resp = client.post("/api/connect/refresh", headers=_auth_headers())

    assert resp.status_code == 409
    assert resp.json()["error_code"] == "PayoutAccountGoneError"
    assert store.user(USER_ID)["payout_account"] == {"account_id": "acct_1", "connected": True}


def test_platform_fee_quote(store, client, add_user, settings):
    add_user(user_id=USER_ID, tier="pro")

    with patch.object(connect_service, "settings", settings):
        resp = client.get("/api/connect/platform-fee", params={"amount_cents": 10000}, headers=_auth_headers())

    assert resp.status_code == 200
    assert resp.json() == {
        "amount_cents": 10000,
        "platform_fee_percentage": 0.01,
        "platform_fee_cents": 100,
        "net_amount_cents": 9900,
    }


def test_platform_fee_quote_requires_pro(store, client, add_user):
    add_user(user_id=USER_ID)

    resp = client.get("/api/connect/platform-fee", params={"amount_cents": 10000}, headers=_auth_headers())

    assert resp.status_code == 403
    assert resp.json()["detail"]["error_code"] == "PLAN_NOT_ELIGIBLE"


# =============================================================================
# Webhooks
# =============================================================================

@pytest.fixture
def webhook_settings(settings):
    with patch.object(stripe_webhook_service, "settings", settings):
        yield settings


def _subscription_event(status="active"):
    return {
        "id": "evt_route_1",
        "type": "customer.subscription.updated",
        "data": {"object": {
            "id": "sub_1",
            "customer": "cus_1",
            "status": status,
            "cancel_at_period_end": False,
            "current_period_end": 1767225600,
            "items": {"data": [{"price": {"id": "price_monthly", "recurring": {"interval": "month"}}}]},
            "metadata": {"user_id": USER_ID},
        }},
    }


def test_webhook_without_signature_is_400(store, client, webhook_settings):
    resp = client.post("/api/webhook/stripe", content=json.dumps(_subscription_event()))
    assert resp.status_code == 400
    assert store.stripe_events.docs == []


def test_webhook_bad_signature_is_400(store, client, webhook_settings):
    error = stripe.SignatureVerificationError("bad", "t=1,v1=bad")
    with patch.object(stripe.Webhook, "construct_event", side_effect=error):
        resp = client.post(
            "/api/webhook/stripe",
            content=json.dumps(_subscription_event()),
            headers={"Stripe-Signature": "t=1,v1=bad"},
        )
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Invalid signature"


def test_webhook_applies_event_and_acks_redelivery(store, client, add_user, webhook_settings):
    add_user(user_id=USER_ID, subscription={"customer_id": "cus_1"})
    body = json.dumps(_subscription_event())

    with patch.object(stripe.Webhook, "construct_event", return_value=MagicMock()):
        first = client.post("/api/webhooks/stripe", content=body, headers={"Stripe-Signature": "t=1,v1=ok"})
        second = client.post("/api/webhook/stripe", content=body, headers={"Stripe-Signature": "t=1,v1=ok"})

    assert first.status_code == 200
    assert first.json()["message"] == "Processed"
    assert second.status_code == 200
    assert second.json()["message"] == "Already processed"
    assert store.user(USER_ID)["plan"]["tier"] == "pro"


def test_webhook_for_unknown_user_is_200(store, client, webhook_settings):
    with patch.object(stripe.Webhook, "construct_event", return_value=MagicMock()):
        resp = client.post(
            "/api/webhook/stripe",
            content=json.dumps(_subscription_event()),
            headers={"Stripe-Signature": "t=1,v1=ok"},
        )
    assert resp.status_code == 200
    assert resp.json()["message"] == "Ignored"


def test_webhook_processing_failure_is_500(store, client, add_user, webhook_settings):
    add_user(user_id=USER_ID, subscription={"customer_id": "cus_1"})
    event = {
        "id": "evt_route_2",
        "type": "invoice.payment_failed",
        "data": {"object": {"id": "in_1", "customer": "cus_1", "subscription": "sub_1"}},
    }

    with patch.object(stripe.Webhook, "construct_event", return_value=MagicMock()), \
         patch.object(stripe.Subscription, "retrieve", side_effect=stripe.APIConnectionError("down")):
        resp = client.post("/api/webhook/stripe", content=json.dumps(event), headers={"Stripe-Signature": "t=1,v1=ok"})

    assert resp.status_code == 500
    assert store.event("evt_route_2")["status"] == "FAILED"
