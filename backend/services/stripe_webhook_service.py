"""Stripe Webhook Service - Billing Event Reconciler.

Keeps the local copy of each user's subscription and payout account in step
with Stripe.

Key Principles:
1. Signature verification: every event must be signed; no secret means reject
2. Idempotency: an event id that reached PROCESSED or IGNORED is never re-applied
3. Tier consistency: plan.tier and features are written in the same update as
   the subscription status they derive from
4. Failures propagate: the endpoint answers 500 and Stripe redelivers
5. Audit logging: every applied transition is logged

Events Handled:
- checkout.session.completed (subscription mode)
- customer.subscription.created
- customer.subscription.updated
- customer.subscription.deleted
- invoice.payment_succeeded / invoice.paid
- invoice.payment_failed
- account.updated (Connect endpoint)
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

import stripe
from pymongo.errors import DuplicateKeyError

from config import BillingSettings, billing_settings
from database import database
from models import ActorRole, AuditAction, StripeEventRecord, StripeEventStatus, SubscriptionStatus
from services.billing_errors import (
    BillingProviderUnavailableError,
    EventPayloadError,
    SignatureVerificationError,
    SubscriptionGoneError,
    UserNotFoundError,
)
from services.connect_service import ConnectService, connect_service
from services.entitlements import is_entitled_status, resolve_features, tier_for_subscription_status
from services.stripe_events import (
    StripeAccount,
    StripeCheckoutSession,
    StripeInvoice,
    StripeSubscription,
    parse_stripe_object,
)
from services.stripe_gateway import call_stripe, is_resource_missing
from services.user_service import user_service
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

ENDPOINT_BILLING = "billing"
ENDPOINT_CONNECT = "connect"


def _extract_webhook_context(event: Dict) -> Dict[str, Any]:
    """Safe fields for structured logging."""
    obj = event.get("data", {}).get("object", {}) or {}
    metadata = obj.get("metadata", {}) or {}
    customer = obj.get("customer")
    return {
        "event_id": event.get("id"),
        "event_type": event.get("type"),
        "livemode": event.get("livemode"),
        "object_id": obj.get("id"),
        "customer_id": customer.get("id") if isinstance(customer, dict) else customer,
        "user_id": metadata.get("user_id"),
        "account": event.get("account"),
    }


def _subscription_snapshot(subscription: Optional[Dict[str, Any]], tier: Optional[str]) -> Dict[str, Any]:
    subscription = subscription or {}
    return {
        "tier": tier,
        "status": subscription.get("status"),
        "subscription_id": subscription.get("subscription_id"),
        "cancel_at_period_end": subscription.get("cancel_at_period_end"),
        "current_period_end": subscription.get("current_period_end"),
    }


class StripeWebhookService:
    """Verifies, de-duplicates and applies Stripe webhook events."""

    def __init__(self, settings: BillingSettings, connect: ConnectService):
        self.settings = settings
        self.connect = connect

    # =========================================================================
    # Event Processing Entry Point
    # =========================================================================

    async def process_webhook(
        self,
        payload: bytes,
        signature: Optional[str],
        endpoint: str = ENDPOINT_BILLING,
    ) -> Tuple[str, Dict[str, Any]]:
        """
        Main webhook entry point.

        Returns:
            (message, details)

        Raises:
            SignatureVerificationError: bad/missing signature or secret (HTTP 400)
            Exception: anything that failed while applying the event (HTTP 500)
        """
        try:
            event = self._verify(payload, signature, endpoint)
        except SignatureVerificationError as e:
            await create_audit_log(
                action=AuditAction.WEBHOOK_SIGNATURE_REJECTED,
                actor_role=ActorRole.SYSTEM,
                metadata={"endpoint": endpoint, "reason": e.message},
            )
            raise

        event_id = event.get("id")
        event_type = event.get("type")
        ctx = _extract_webhook_context(event)
        logger.info(
            "WEBHOOK_RECEIVED endpoint=%s event_id=%s event_type=%s livemode=%s object_id=%s customer_id=%s account=%s",
            endpoint, event_id, event_type, ctx["livemode"], ctx["object_id"], ctx["customer_id"], ctx["account"],
        )
        if not event_id or not event_type:
            raise EventPayloadError("Event is missing id or type")

        # Idempotency check
        db = database.get_db()
        existing = await db.stripe_events.find_one({"event_id": event_id}, {"_id": 0})
        if existing and existing.get("status") in (StripeEventStatus.PROCESSED.value, StripeEventStatus.IGNORED.value):
            logger.info("WEBHOOK_DUPLICATE event_id=%s status=%s - skipping", event_id, existing.get("status"))
            return "Already processed", {"event_id": event_id}

        record = StripeEventRecord(
            event_id=event_id,
            type=event_type,
            endpoint=endpoint,
            raw_minimal=self._extract_safe_data(event),
        ).model_dump(mode="python")
        if existing:
            # Earlier attempt FAILED or never finished; take it over
            await db.stripe_events.update_one({"event_id": event_id}, {"$set": record})
        else:
            try:
                await db.stripe_events.insert_one(record)
            except DuplicateKeyError:
                logger.info("WEBHOOK_DUPLICATE event_id=%s duplicate insert (race) - skipping", event_id)
                return "Already processed", {"event_id": event_id}

        try:
            logger.info("HANDLER_START event_id=%s event_type=%s", event_id, event_type)
            result = await self.handle_event(event)
            logger.info("HANDLER_END event_id=%s event_type=%s handled=%s", event_id, event_type, result.get("handled"))
        except UserNotFoundError as e:
            # Not ours (or user deleted); redelivery cannot fix it
            logger.warning("WEBHOOK_USER_NOT_FOUND event_id=%s event_type=%s lookup=%s", event_id, event_type, e.lookup)
            await self._finish(event_id, StripeEventStatus.IGNORED, error=e.message)
            return "Ignored", {"event_id": event_id, "reason": "user_not_found"}
        except SubscriptionGoneError as e:
            # Deleted at Stripe; redelivery would fail the same way
            logger.warning("WEBHOOK_SUBSCRIPTION_GONE event_id=%s event_type=%s subscription_id=%s", event_id, event_type, e.subscription_id)
            await self._finish(event_id, StripeEventStatus.IGNORED, error=e.message)
            return "Ignored", {"event_id": event_id, "reason": "subscription_gone"}
        except Exception as e:
            logger.error(
                "WEBHOOK_PROCESSING_FAILED event_id=%s event_type=%s error_type=%s error=%s",
                event_id, event_type, type(e).__name__, str(e),
            )
            await self._finish(event_id, StripeEventStatus.FAILED, error=str(e))
            await create_audit_log(
                action=AuditAction.STRIPE_EVENT_FAILED,
                actor_role=ActorRole.SYSTEM,
                actor_id=event_id,
                metadata={"event_id": event_id, "event_type": event_type, "error": str(e)},
            )
            raise

        if not result.get("handled"):
            await self._finish(event_id, StripeEventStatus.IGNORED, user_id=result.get("user_id"))
            return "Ignored", {"event_id": event_id, **result}

        await self._finish(event_id, StripeEventStatus.PROCESSED, user_id=result.get("user_id"))
        logger.info(
            "WEBHOOK_PROCESSED_OK event_id=%s event_type=%s user_id=%s changed=%s",
            event_id, event_type, result.get("user_id"), result.get("changed"),
        )
        return "Processed", {"event_id": event_id, **result}

    def _verify(self, payload: bytes, signature: Optional[str], endpoint: str) -> Dict[str, Any]:
        secret = self.settings.connect_webhook_secret if endpoint == ENDPOINT_CONNECT else self.settings.webhook_secret
        if not secret:
            logger.error("WEBHOOK_REJECTED endpoint=%s reason=secret_not_configured", endpoint)
            raise SignatureVerificationError("Webhook secret not configured")
        if not signature:
            logger.error("WEBHOOK_REJECTED endpoint=%s reason=missing_signature", endpoint)
            raise SignatureVerificationError("Missing Stripe-Signature header")

        try:
            stripe.Webhook.construct_event(payload, signature, secret)
        except stripe.SignatureVerificationError as e:
            logger.error("SECURITY webhook signature verification failed endpoint=%s: %s", endpoint, e)
            raise SignatureVerificationError("Invalid signature") from e
        except ValueError as e:
            logger.error("WEBHOOK_REJECTED endpoint=%s reason=invalid_payload error=%s", endpoint, e)
            raise SignatureVerificationError("Invalid payload") from e

        # Work on plain dicts from the verified body rather than SDK objects
        return json.loads(payload)

    async def _finish(
        self,
        event_id: str,
        status: StripeEventStatus,
        user_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        db = database.get_db()
        await db.stripe_events.update_one(
            {"event_id": event_id},
            {
                "$set": {
                    "status": status.value,
                    "processed_at": datetime.now(timezone.utc),
                    "related_user_id": user_id,
                    "error": error,
                }
            },
        )

    def _extract_safe_data(self, event: Dict) -> Dict[str, Any]:
        """Minimal event data for the ledger (no card or address details)."""
        obj = event.get("data", {}).get("object", {}) or {}
        return {
            "object_id": obj.get("id"),
            "object_type": obj.get("object"),
            "customer": obj.get("customer") if isinstance(obj.get("customer"), str) else None,
            "status": obj.get("status") if isinstance(obj.get("status"), str) else None,
            "account": event.get("account"),
            "livemode": event.get("livemode"),
        }

    # =========================================================================
    # Event Handlers
    # =========================================================================

    async def handle_event(self, event: Dict) -> Dict[str, Any]:
        """Route event to appropriate handler."""
        event_type = event.get("type")
        data = event.get("data", {}).get("object", {}) or {}

        handlers = {
            "checkout.session.completed": self._handle_checkout_completed,
            "customer.subscription.created": self._handle_subscription_change,
            "customer.subscription.updated": self._handle_subscription_change,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "invoice.payment_succeeded": self._handle_invoice_paid,
            "invoice.paid": self._handle_invoice_paid,
            "invoice.payment_failed": self._handle_payment_failed,
            "account.updated": self._handle_account_updated,
        }

        handler = handlers.get(event_type)
        if handler:
            return await handler(data, event)

        logger.info("Ignoring unhandled event type: %s", event_type)
        return {"handled": False, "event_type": event_type}

    async def _handle_checkout_completed(self, obj: Dict, event: Dict) -> Dict[str, Any]:
        session = parse_stripe_object(StripeCheckoutSession, obj)
        if session.mode != "subscription":
            logger.info("Ignoring checkout mode: %s", session.mode)
            return {"handled": False, "mode": session.mode}
        if not session.subscription:
            raise EventPayloadError(f"Checkout session {session.id} has no subscription")

        subscription = await self._retrieve_subscription(session.subscription)
        user = await self._find_user(
            customer_id=session.customer or subscription.customer,
            user_id=session.user_id or subscription.user_id,
        )
        return await self._apply_subscription(user, subscription, event)

    async def _handle_subscription_change(self, obj: Dict, event: Dict) -> Dict[str, Any]:
        subscription = parse_stripe_object(StripeSubscription, obj)
        user = await self._find_user(customer_id=subscription.customer, user_id=subscription.user_id)
        return await self._apply_subscription(user, subscription, event)

    async def _handle_subscription_deleted(self, obj: Dict, event: Dict) -> Dict[str, Any]:
        subscription = parse_stripe_object(StripeSubscription, obj)
        user = await self._find_user(customer_id=subscription.customer, user_id=subscription.user_id)
        return await self._apply_subscription(
            user, subscription, event,
            status=SubscriptionStatus.CANCELED,
            cancel_at_period_end=False,
            action=AuditAction.SUBSCRIPTION_ENDED,
        )

    async def _handle_invoice_paid(self, obj: Dict, event: Dict) -> Dict[str, Any]:
        invoice = parse_stripe_object(StripeInvoice, obj)
        if not invoice.subscription_id:
            logger.info("Ignoring invoice %s without subscription", invoice.id)
            return {"handled": False, "invoice_id": invoice.id}

        subscription = await self._retrieve_subscription(invoice.subscription_id)
        user = await self._find_user(customer_id=invoice.customer or subscription.customer, user_id=subscription.user_id)
        return await self._apply_subscription(user, subscription, event)

    async def _handle_payment_failed(self, obj: Dict, event: Dict) -> Dict[str, Any]:
        invoice = parse_stripe_object(StripeInvoice, obj)
        if not invoice.subscription_id:
            logger.info("Ignoring failed invoice %s without subscription", invoice.id)
            return {"handled": False, "invoice_id": invoice.id}

        subscription = await self._retrieve_subscription(invoice.subscription_id)
        user = await self._find_user(customer_id=invoice.customer or subscription.customer, user_id=subscription.user_id)
        result = await self._apply_subscription(user, subscription, event, action=AuditAction.PAYMENT_FAILED)
        logger.warning(
            "PAYMENT_FAILED user_id=%s subscription_id=%s invoice_id=%s status=%s",
            user["user_id"], subscription.id, invoice.id, result.get("status"),
        )
        return result

    async def _handle_account_updated(self, obj: Dict, event: Dict) -> Dict[str, Any]:
        account = parse_stripe_object(StripeAccount, obj)
        return await self.connect.sync_account_by_account_id(account.id, account, event_id=event.get("id"))

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _retrieve_subscription(self, subscription_id: str) -> StripeSubscription:
        try:
            obj = await call_stripe(
                stripe.Subscription.retrieve,
                subscription_id,
                api_key=self.settings.stripe_secret_key,
                timeout=self.settings.stripe_timeout_seconds,
                unavailable_error=BillingProviderUnavailableError,
                operation="subscription.retrieve",
            )
        except stripe.InvalidRequestError as e:
            if not is_resource_missing(e):
                raise
            raise SubscriptionGoneError(subscription_id) from e
        return parse_stripe_object(StripeSubscription, obj)

    async def _find_user(self, customer_id: Optional[str], user_id: Optional[str]) -> Dict[str, Any]:
        """Customer id first; metadata.user_id covers the first event after checkout."""
        user = await user_service.find_user_by_customer_id(customer_id)
        if user:
            return user
        if user_id:
            try:
                return await user_service.get_user(user_id)
            except UserNotFoundError:
                pass
        raise UserNotFoundError(f"customer_id={customer_id} user_id={user_id}")

    async def _apply_subscription(
        self,
        user: Dict[str, Any],
        subscription: StripeSubscription,
        event: Dict,
        status: Optional[SubscriptionStatus] = None,
        cancel_at_period_end: Optional[bool] = None,
        action: AuditAction = AuditAction.SUBSCRIPTION_SYNCED,
    ) -> Dict[str, Any]:
        """Merge a Stripe subscription into the user and re-tier in one update."""
        db = database.get_db()
        user_id = user["user_id"]
        status = status or subscription.normalized_status
        stored = user.get("subscription") or {}
        stored_tier = (user.get("plan") or {}).get("tier")

        stored_subscription_id = stored.get("subscription_id")
        if (
            stored_subscription_id
            and stored_subscription_id != subscription.id
            and is_entitled_status(stored.get("status"))
            and not is_entitled_status(status)
        ):
            # A replaced subscription ending must not downgrade the live one
            logger.info(
                "SUBSCRIPTION_STALE_EVENT user_id=%s stored=%s incoming=%s status=%s - skipping",
                user_id, stored_subscription_id, subscription.id, status.value,
            )
            return {"handled": True, "user_id": user_id, "changed": False, "status": stored.get("status")}

        incoming = {
            "customer_id": subscription.customer,
            "subscription_id": subscription.id,
            "status": status.value,
            "cancel_at_period_end": subscription.cancel_at_period_end if cancel_at_period_end is None else cancel_at_period_end,
        }
        # Keep the last known values when Stripe omits them
        if subscription.period_end is not None:
            incoming["current_period_end"] = subscription.period_end
        if subscription.price_id:
            incoming["price_id"] = subscription.price_id
        if subscription.interval:
            incoming["interval"] = subscription.interval.value

        tier = tier_for_subscription_status(status)
        features = list(resolve_features(tier, status))

        changes = {f"subscription.{k}": v for k, v in incoming.items() if stored.get(k) != v}
        if stored_tier != tier.value:
            changes["plan.tier"] = tier.value
        if list(user.get("features") or []) != features:
            changes["features"] = features

        if not changes:
            logger.info("SUBSCRIPTION_UNCHANGED user_id=%s subscription_id=%s status=%s", user_id, subscription.id, status.value)
            return {"handled": True, "user_id": user_id, "changed": False, "status": status.value}

        changes["updated_at"] = datetime.now(timezone.utc)
        await db.users.update_one({"user_id": user_id}, {"$set": changes})

        logger.info(
            "SUBSCRIPTION_SYNCED user_id=%s subscription_id=%s status=%s tier=%s->%s",
            user_id, subscription.id, status.value, stored_tier, tier.value,
        )
        await create_audit_log(
            action=action,
            actor_role=ActorRole.SYSTEM,
            actor_id=event.get("id"),
            user_id=user_id,
            resource_type="subscription",
            resource_id=subscription.id,
            before_state=_subscription_snapshot(stored, stored_tier),
            after_state=_subscription_snapshot({**stored, **incoming}, tier.value),
            metadata={"event_type": event.get("type")},
        )
        return {"handled": True, "user_id": user_id, "changed": True, "status": status.value}


# Singleton instance
stripe_webhook_service = StripeWebhookService(billing_settings, connect_service)
