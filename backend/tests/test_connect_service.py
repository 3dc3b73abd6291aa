"""
Payout account lifecycle: one Stripe Connect account per user for life.

Ensures:
- Disconnect keeps account_id; reconnect reuses it without creating a new account
- A stored account Stripe no longer has is reported, never silently replaced
- Stripe failures leave stored payout state untouched
"""
import time
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import patch

import pytest
import stripe

from services.billing_errors import (
    NoPayoutAccountError,
    PayoutAccountGoneError,
    PayoutOnboardingIncompleteError,
    PayoutProviderUnavailableError,
)
from services.connect_service import ConnectService

USER_ID = "user-1"
ACCOUNT_ID = "acct_test_001"


@pytest.fixture
def service(settings):
    return ConnectService(settings)


def _account(**overrides):
    account = {
        "id": ACCOUNT_ID,
        "object": "account",
        "type": "express",
        "country": "US",
        "default_currency": "usd",
        "charges_enabled": False,
        "payouts_enabled": False,
        "details_submitted": False,
    }
    account.update(overrides)
    return account


def _with_account(add_user, connected=True, **payout):
    return add_user(
        user_id=USER_ID,
        tier="pro",
        payout_account={
            "account_id": ACCOUNT_ID,
            "account_type": "express",
            "connected": connected,
            "connected_at": datetime(2025, 1, 1, tzinfo=timezone.utc),
            "disconnected_at": None if connected else datetime(2025, 2, 1, tzinfo=timezone.utc),
            "account_status": "pending",
            "charges_enabled": False,
            "payouts_enabled": False,
            "details_submitted": False,
            "onboarding_complete": False,
            **payout,
        },
    )


def _resource_missing():
    return stripe.InvalidRequestError("No such account", "account", code="resource_missing")


# =============================================================================
# Connect
# =============================================================================

@pytest.mark.asyncio
async def test_first_connect_creates_express_account(store, service, add_user):
    add_user(user_id=USER_ID, tier="pro")

    with patch.object(stripe.Account, "create", return_value=_account()) as create:
        result = await service.connect_payout_account(USER_ID, country="gb")

    assert result == {"account_id": ACCOUNT_ID, "reconnected": False, "already_exists": False}
    kwargs = create.call_args[1]
    assert kwargs["type"] == "express"
    assert kwargs["country"] == "GB"
    assert kwargs["email"] == f"{USER_ID}@example.com"
    assert kwargs["metadata"] == {"user_id": USER_ID}
    assert kwargs["idempotency_key"] == f"payout-account-create-{USER_ID}"

    payout = store.user(USER_ID)["payout_account"]
    assert payout["account_id"] == ACCOUNT_ID
    assert payout["connected"] is True
    assert payout["account_status"] == "restricted"
    assert "PAYOUT_ACCOUNT_CREATED" in store.audit_actions()


@pytest.mark.asyncio
async def test_connect_when_already_connected_is_noop(store, service, add_user):
    _with_account(add_user)

    with patch.object(stripe.Account, "create") as create, patch.object(stripe.Account, "retrieve") as retrieve:
        result = await service.connect_payout_account(USER_ID)

    create.assert_not_called()
    retrieve.assert_not_called()
    assert result == {"account_id": ACCOUNT_ID, "reconnected": False, "already_exists": True}


@pytest.mark.asyncio
async def test_reconnect_reuses_stored_account(store, service, add_user):
    _with_account(add_user, connected=False)

    with patch.object(stripe.Account, "create") as create, \
         patch.object(stripe.Account, "retrieve", return_value=_account(charges_enabled=True, payouts_enabled=True, details_submitted=True)):
        result = await service.connect_payout_account(USER_ID)

    create.assert_not_called()
    payout = store.user(USER_ID)["payout_account"]
    assert result == {"account_id": ACCOUNT_ID, "reconnected": True, "already_exists": False}
    assert payout["account_id"] == ACCOUNT_ID
    assert payout["connected"] is True
    assert payout["disconnected_at"] is None
    assert payout["account_status"] == "active"
    assert "PAYOUT_ACCOUNT_RECONNECTED" in store.audit_actions()


@pytest.mark.asyncio
async def test_reconnect_gone_account_is_reported(store, service, add_user):
    _with_account(add_user, connected=False)

    with patch.object(stripe.Account, "create") as create, \
         patch.object(stripe.Account, "retrieve", side_effect=_resource_missing()):
        with pytest.raises(PayoutAccountGoneError) as exc_info:
            await service.connect_payout_account(USER_ID)

    create.assert_not_called()
    assert exc_info.value.account_id == ACCOUNT_ID
    payout = store.user(USER_ID)["payout_account"]
    assert payout["account_id"] == ACCOUNT_ID
    assert payout["connected"] is False


@pytest.mark.asyncio
async def test_reconnect_during_outage_leaves_state(store, service, add_user):
    _with_account(add_user, connected=False)

    with patch.object(stripe.Account, "retrieve", side_effect=stripe.APIConnectionError("down")):
        with pytest.raises(PayoutProviderUnavailableError):
            await service.connect_payout_account(USER_ID)

    assert store.user(USER_ID)["payout_account"]["connected"] is False


@pytest.mark.asyncio
async def test_concurrent_create_keeps_first_stored_account(store, service, add_user):
    add_user(user_id=USER_ID, tier="pro")

    async def lost_race(query, update, **kwargs):
        store.user(USER_ID)["payout_account"] = {"account_id": "acct_winner", "connected": True}
        return SimpleNamespace(matched_count=0, modified_count=0)

    with patch.object(stripe.Account, "create", return_value=_account(id="acct_loser")), \
         patch.object(store.users, "update_one", side_effect=lost_race):
        result = await service.connect_payout_account(USER_ID)

    assert result["account_id"] == "acct_winner"
    assert result["already_exists"] is True
    assert store.user(USER_ID)["payout_account"]["account_id"] == "acct_winner"


# =============================================================================
# Disconnect / status
# =============================================================================

@pytest.mark.asyncio
async def test_disconnect_preserves_account_id(store, service, add_user):
    _with_account(add_user)

    result = await service.disconnect_payout_account(USER_ID)

    payout = store.user(USER_ID)["payout_account"]
    assert result["account_id"] == ACCOUNT_ID
    assert result["connected"] is False
    assert payout["account_id"] == ACCOUNT_ID
    assert payout["connected"] is False
    assert payout["disconnected_at"] is not None
    assert "PAYOUT_ACCOUNT_DISCONNECTED" in store.audit_actions()


@pytest.mark.asyncio
async def test_disconnect_without_account(store, service, add_user):
    add_user(user_id=USER_ID)
    with pytest.raises(NoPayoutAccountError):
        await service.disconnect_payout_account(USER_ID)


@pytest.mark.asyncio
async def test_status_after_disconnect(store, service, add_user):
    _with_account(add_user, connected=False)

    status = await service.get_payout_account_status(USER_ID)

    assert status["connected"] is False
    assert status["was_disconnected"] is True
    assert status["account_id"] == ACCOUNT_ID


@pytest.mark.asyncio
async def test_status_never_connected(store, service, add_user):
    add_user(user_id=USER_ID)

    status = await service.get_payout_account_status(USER_ID)

    assert status == {
        "connected": False,
        "account_id": None,
        "was_disconnected": False,
        "disconnected_at": None,
        "platform_fee_percentage": 0.01,
    }


@pytest.mark.asyncio
async def test_refresh_updates_capabilities(store, service, add_user):
    _with_account(add_user)

    with patch.object(stripe.Account, "retrieve", return_value=_account(charges_enabled=True, payouts_enabled=True, details_submitted=True)):
        status = await service.refresh_payout_account_status(USER_ID)

    assert status["account_status"] == "active"
    assert status["onboarding_complete"] is True
    assert store.user(USER_ID)["payout_account"]["payouts_enabled"] is True


@pytest.mark.asyncio
async def test_refresh_failure_leaves_state(store, service, add_user):
    _with_account(add_user)
    before = store.user(USER_ID)["payout_account"].copy()

    with patch.object(stripe.Account, "retrieve", side_effect=stripe.APIError("boom")):
        with pytest.raises(PayoutProviderUnavailableError):
            await service.refresh_payout_account_status(USER_ID)

    assert store.user(USER_ID)["payout_account"] == before


@pytest.mark.asyncio
async def test_refresh_timeout_leaves_state(store, settings, add_user):
    _with_account(add_user)
    before = store.user(USER_ID)["payout_account"].copy()
    service = ConnectService(settings.model_copy(update={"stripe_timeout_seconds": 0.05}))

    with patch.object(stripe.Account, "retrieve", side_effect=lambda *args, **kwargs: time.sleep(0.3)):
        with pytest.raises(PayoutProviderUnavailableError) as exc_info:
            await service.refresh_payout_account_status(USER_ID)

    assert "did not respond in time" in exc_info.value.message
    assert store.user(USER_ID)["payout_account"] == before


@pytest.mark.asyncio
async def test_refresh_of_deleted_account_is_reported(store, service, add_user):
    _with_account(add_user)
    before = store.user(USER_ID)["payout_account"].copy()

    with patch.object(stripe.Account, "retrieve", side_effect=_resource_missing()):
        with pytest.raises(PayoutAccountGoneError) as exc_info:
            await service.refresh_payout_account_status(USER_ID)

    assert exc_info.value.account_id == ACCOUNT_ID
    assert store.user(USER_ID)["payout_account"] == before


# =============================================================================
# Links and fees
# =============================================================================

@pytest.mark.asyncio
async def test_onboarding_link(store, service, add_user):
    _with_account(add_user)

    with patch.object(stripe.AccountLink, "create", return_value={"url": "https://connect.stripe.com/setup/x", "expires_at": 1767225600}) as create:
        link = await service.create_onboarding_link(USER_ID)

    assert link == {"url": "https://connect.stripe.com/setup/x", "expires_at": 1767225600}
    assert create.call_args[1]["account"] == ACCOUNT_ID
    assert create.call_args[1]["type"] == "account_onboarding"
    assert create.call_args[1]["return_url"] == "http://app.example.com/app/settings?connected=true"


@pytest.mark.asyncio
async def test_onboarding_link_for_deleted_account(store, service, add_user):
    _with_account(add_user)

    with patch.object(stripe.AccountLink, "create", side_effect=_resource_missing()):
        with pytest.raises(PayoutAccountGoneError) as exc_info:
            await service.create_onboarding_link(USER_ID)

    assert exc_info.value.account_id == ACCOUNT_ID


@pytest.mark.asyncio
async def test_dashboard_link_requires_onboarding(store, service, add_user):
    _with_account(add_user)

    with patch.object(stripe.Account, "create_login_link") as login_link:
        with pytest.raises(PayoutOnboardingIncompleteError):
            await service.create_dashboard_link(USER_ID)
    login_link.assert_not_called()


@pytest.mark.asyncio
async def test_dashboard_link(store, service, add_user):
    _with_account(add_user, onboarding_complete=True)

    with patch.object(stripe.Account, "create_login_link", return_value={"url": "https://connect.stripe.com/express/x"}):
        link = await service.create_dashboard_link(USER_ID)

    assert link == {"url": "https://connect.stripe.com/express/x"}


@pytest.mark.asyncio
async def test_dashboard_link_for_deleted_account(store, service, add_user):
    _with_account(add_user, onboarding_complete=True)

    with patch.object(stripe.Account, "create_login_link", side_effect=_resource_missing()):
        with pytest.raises(PayoutAccountGoneError):
            await service.create_dashboard_link(USER_ID)


def test_platform_fee(service):
    assert service.get_platform_fee_percentage() == 0.01
    assert service.calculate_platform_fee(10000) == 100
    assert service.calculate_platform_fee(150) == 2
    assert service.calculate_platform_fee(0) == 0


def test_platform_fee_quote(service):
    assert service.quote_platform_fee(12345) == {
        "amount_cents": 12345,
        "platform_fee_percentage": 0.01,
        "platform_fee_cents": 123,
        "net_amount_cents": 12222,
    }
