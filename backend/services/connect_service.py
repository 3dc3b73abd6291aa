"""Payout account lifecycle (Stripe Connect Express).

A user gets at most one Connect account for life. Once
`payout_account.account_id` is stored it is never cleared or replaced:
disconnect only flips `connected`, and connecting again reuses the stored
account after checking Stripe still has it.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import stripe

from config import BillingSettings, billing_settings
from database import database
from models import ActorRole, AuditAction, PayoutAccountStatus, PayoutAccountType
from services.billing_errors import (
    NoPayoutAccountError,
    PayoutAccountGoneError,
    PayoutOnboardingIncompleteError,
    PayoutProviderUnavailableError,
    UserNotFoundError,
)
from services.stripe_events import StripeAccount, parse_stripe_object
from services.stripe_gateway import call_stripe, is_resource_missing
from services.user_service import user_service
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

DEFAULT_COUNTRY = "US"


def _payout_snapshot(payout: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    payout = payout or {}
    return {
        "account_id": payout.get("account_id"),
        "connected": payout.get("connected"),
        "account_status": payout.get("account_status"),
        "charges_enabled": payout.get("charges_enabled"),
        "payouts_enabled": payout.get("payouts_enabled"),
        "onboarding_complete": payout.get("onboarding_complete"),
    }


class ConnectService:
    """Stripe Connect account operations for a user's payout account."""

    def __init__(self, settings: BillingSettings):
        self.settings = settings

    async def _stripe(self, func, *args, operation: str, **kwargs):
        return await call_stripe(
            func,
            *args,
            api_key=self.settings.stripe_secret_key,
            timeout=self.settings.stripe_timeout_seconds,
            unavailable_error=PayoutProviderUnavailableError,
            operation=operation,
            **kwargs,
        )

    async def _account_call(self, account_id: str, func, *args, operation: str, **kwargs):
        """Stripe call about a stored account; a deleted account raises PayoutAccountGoneError."""
        try:
            return await self._stripe(func, *args, operation=operation, **kwargs)
        except stripe.InvalidRequestError as e:
            if not is_resource_missing(e):
                raise
            logger.error("PAYOUT_ACCOUNT_GONE account_id=%s operation=%s", account_id, operation)
            raise PayoutAccountGoneError(account_id) from e

    async def _retrieve_account(self, account_id: str) -> StripeAccount:
        obj = await self._account_call(account_id, stripe.Account.retrieve, account_id, operation="account.retrieve")
        return parse_stripe_object(StripeAccount, obj)

    async def _require_account_id(self, user_id: str) -> Dict[str, Any]:
        user = await user_service.get_user(user_id)
        if not (user.get("payout_account") or {}).get("account_id"):
            raise NoPayoutAccountError("No payout account found. Please connect a Stripe account first.")
        return user

    # =========================================================================
    # Connect / disconnect
    # =========================================================================

    async def connect_payout_account(
        self,
        user_id: str,
        email: Optional[str] = None,
        country: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Connect a payout account, reusing the stored one when there is one.

        Returns:
            {account_id, reconnected, already_exists}
        """
        db = database.get_db()
        user = await user_service.get_user(user_id)
        payout = user.get("payout_account") or {}
        account_id = payout.get("account_id")

        if account_id and payout.get("connected"):
            return {"account_id": account_id, "reconnected": False, "already_exists": True}

        if account_id:
            return await self._reconnect(user_id, payout)

        country = (country or DEFAULT_COUNTRY).upper()
        account = await self._stripe(
            stripe.Account.create,
            type=PayoutAccountType.EXPRESS.value,
            country=country,
            email=email or user.get("email"),
            capabilities={
                "card_payments": {"requested": True},
                "transfers": {"requested": True},
            },
            business_type="individual",
            metadata={"user_id": user_id},
            # Retries of the same connect within 24h get the same account back
            idempotency_key=f"payout-account-create-{user_id}",
            operation="account.create",
        )
        created = parse_stripe_object(StripeAccount, account)

        now = datetime.now(timezone.utc)
        result = await db.users.update_one(
            # Only while no account is stored; a concurrent connect may have won
            {"user_id": user_id, "payout_account.account_id": {"$exists": False}},
            {
                "$set": {
                    "payout_account": {
                        "account_id": created.id,
                        "account_type": PayoutAccountType.EXPRESS.value,
                        "connected": True,
                        "connected_at": now,
                        "disconnected_at": None,
                        "country": created.country or country,
                        "default_currency": created.default_currency,
                        **created.capability_fields(),
                    },
                    "updated_at": now,
                }
            },
        )

        if result.modified_count == 0:
            stored = await user_service.get_user(user_id)
            stored_id = (stored.get("payout_account") or {}).get("account_id")
            logger.warning(
                "PAYOUT_ACCOUNT_CREATE_LOST_RACE user_id=%s kept=%s orphaned=%s",
                user_id, stored_id, created.id,
            )
            return {"account_id": stored_id, "reconnected": False, "already_exists": True}

        logger.info("PAYOUT_ACCOUNT_CREATED user_id=%s account_id=%s country=%s", user_id, created.id, country)
        await create_audit_log(
            action=AuditAction.PAYOUT_ACCOUNT_CREATED,
            actor_role=ActorRole.USER,
            actor_id=user_id,
            user_id=user_id,
            resource_type="payout_account",
            resource_id=created.id,
            metadata={"country": country},
        )
        return {"account_id": created.id, "reconnected": False, "already_exists": False}

    async def _reconnect(self, user_id: str, payout: Dict[str, Any]) -> Dict[str, Any]:
        account_id = payout["account_id"]
        logger.info("Reconnecting existing payout account %s for user %s", account_id, user_id)
        account = await self._retrieve_account(account_id)

        db = database.get_db()
        now = datetime.now(timezone.utc)
        await db.users.update_one(
            {"user_id": user_id, "payout_account.account_id": account_id},
            {
                "$set": {
                    "payout_account.connected": True,
                    "payout_account.connected_at": now,
                    "payout_account.disconnected_at": None,
                    **{f"payout_account.{k}": v for k, v in account.capability_fields().items()},
                    "updated_at": now,
                }
            },
        )

        await create_audit_log(
            action=AuditAction.PAYOUT_ACCOUNT_RECONNECTED,
            actor_role=ActorRole.USER,
            actor_id=user_id,
            user_id=user_id,
            resource_type="payout_account",
            resource_id=account_id,
        )
        return {"account_id": account_id, "reconnected": True, "already_exists": False}

    async def disconnect_payout_account(self, user_id: str) -> Dict[str, Any]:
        """Mark the payout account disconnected. The account id and Stripe account are kept."""
        user = await self._require_account_id(user_id)
        payout = user["payout_account"]
        account_id = payout["account_id"]

        db = database.get_db()
        now = datetime.now(timezone.utc)
        await db.users.update_one(
            {"user_id": user_id},
            {
                "$set": {
                    "payout_account.connected": False,
                    "payout_account.disconnected_at": now,
                    "updated_at": now,
                }
            },
        )

        logger.info("PAYOUT_ACCOUNT_DISCONNECTED user_id=%s account_id=%s (preserved for reconnection)", user_id, account_id)
        await create_audit_log(
            action=AuditAction.PAYOUT_ACCOUNT_DISCONNECTED,
            actor_role=ActorRole.USER,
            actor_id=user_id,
            user_id=user_id,
            resource_type="payout_account",
            resource_id=account_id,
        )
        return {"account_id": account_id, "connected": False, "disconnected_at": now}

    # =========================================================================
    # Status
    # =========================================================================

    async def refresh_payout_account_status(self, user_id: str) -> Dict[str, Any]:
        """Pull capability flags from Stripe. On failure nothing is written."""
        user = await self._require_account_id(user_id)
        payout = user["payout_account"]
        account = await self._retrieve_account(payout["account_id"])

        fields = account.capability_fields()
        db = database.get_db()
        await db.users.update_one(
            {"user_id": user_id, "payout_account.account_id": account.id},
            {
                "$set": {
                    **{f"payout_account.{k}": v for k, v in fields.items()},
                    "updated_at": datetime.now(timezone.utc),
                }
            },
        )
        logger.info(
            "PAYOUT_ACCOUNT_REFRESHED user_id=%s account_id=%s status=%s charges=%s payouts=%s",
            user_id, account.id, fields["account_status"], account.charges_enabled, account.payouts_enabled,
        )
        return await self.get_payout_account_status(user_id)

    async def sync_account_by_account_id(
        self,
        account_id: str,
        account: StripeAccount,
        event_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Apply an account.updated payload to whichever user owns the account."""
        user = await user_service.find_user_by_account_id(account_id)
        if not user:
            raise UserNotFoundError(f"account_id={account_id}")

        user_id = user["user_id"]
        before = user.get("payout_account") or {}
        fields = account.capability_fields()
        if account.country:
            fields["country"] = account.country
        if account.default_currency:
            fields["default_currency"] = account.default_currency

        changes = {f"payout_account.{k}": v for k, v in fields.items() if before.get(k) != v}
        if not changes:
            logger.info("PAYOUT_ACCOUNT_UNCHANGED user_id=%s account_id=%s", user_id, account_id)
            return {"handled": True, "user_id": user_id, "changed": False}

        changes["updated_at"] = datetime.now(timezone.utc)
        db = database.get_db()
        await db.users.update_one({"user_id": user_id, "payout_account.account_id": account_id}, {"$set": changes})

        logger.info(
            "PAYOUT_ACCOUNT_SYNCED user_id=%s account_id=%s status=%s charges=%s payouts=%s",
            user_id, account_id, fields["account_status"], account.charges_enabled, account.payouts_enabled,
        )
        await create_audit_log(
            action=AuditAction.PAYOUT_ACCOUNT_SYNCED,
            actor_role=ActorRole.SYSTEM,
            actor_id=event_id,
            user_id=user_id,
            resource_type="payout_account",
            resource_id=account_id,
            before_state=_payout_snapshot(before),
            after_state=_payout_snapshot({**before, **fields}),
        )
        return {"handled": True, "user_id": user_id, "changed": True}

    async def get_payout_account_status(self, user_id: str) -> Dict[str, Any]:
        """Stored payout account state for the settings page."""
        user = await user_service.get_user(user_id)
        payout = user.get("payout_account") or {}
        if not payout.get("account_id") or not payout.get("connected"):
            return {
                "connected": False,
                "account_id": payout.get("account_id"),
                "was_disconnected": bool(payout.get("account_id")) and not payout.get("connected"),
                "disconnected_at": payout.get("disconnected_at"),
                "platform_fee_percentage": self.get_platform_fee_percentage(),
            }
        return {
            "connected": True,
            "account_id": payout["account_id"],
            "connected_at": payout.get("connected_at"),
            "account_status": payout.get("account_status") or PayoutAccountStatus.PENDING.value,
            "charges_enabled": bool(payout.get("charges_enabled")),
            "payouts_enabled": bool(payout.get("payouts_enabled")),
            "details_submitted": bool(payout.get("details_submitted")),
            "onboarding_complete": bool(payout.get("onboarding_complete")),
            "platform_fee_percentage": self.get_platform_fee_percentage(),
        }

    # =========================================================================
    # Links
    # =========================================================================

    async def create_onboarding_link(self, user_id: str, link_type: str = "account_onboarding") -> Dict[str, Any]:
        user = await self._require_account_id(user_id)
        account_id = user["payout_account"]["account_id"]
        link = await self._account_call(
            account_id,
            stripe.AccountLink.create,
            account=account_id,
            refresh_url=f"{self.settings.frontend_url}/app/settings?refresh=true",
            return_url=f"{self.settings.frontend_url}/app/settings?connected=true",
            type=link_type,
            operation="account_link.create",
        )
        logger.info("Created account link for %s", account_id)
        return {"url": link["url"], "expires_at": link["expires_at"]}

    async def create_dashboard_link(self, user_id: str) -> Dict[str, Any]:
        user = await self._require_account_id(user_id)
        payout = user["payout_account"]
        if not payout.get("onboarding_complete"):
            raise PayoutOnboardingIncompleteError("Please complete onboarding first")
        link = await self._account_call(
            payout["account_id"],
            stripe.Account.create_login_link,
            payout["account_id"],
            operation="account.create_login_link",
        )
        logger.info("Created login link for %s", payout["account_id"])
        return {"url": link["url"]}

    # =========================================================================
    # Platform fee
    # =========================================================================

    def get_platform_fee_percentage(self) -> float:
        return self.settings.platform_fee_percentage

    def calculate_platform_fee(self, amount_cents: int) -> int:
        """Application fee in the smallest currency unit, half rounded up."""
        return int(amount_cents * self.settings.platform_fee_percentage + 0.5)

    def quote_platform_fee(self, amount_cents: int) -> Dict[str, Any]:
        """What the platform keeps and the user receives for an invoice payment."""
        fee = self.calculate_platform_fee(amount_cents)
        return {
            "amount_cents": amount_cents,
            "platform_fee_percentage": self.get_platform_fee_percentage(),
            "platform_fee_cents": fee,
            "net_amount_cents": amount_cents - fee,
        }


# Singleton instance
connect_service = ConnectService(billing_settings)
