"""Webhook Routes - Stripe webhooks.

POST /api/webhook/stripe - Subscription webhook endpoint
POST /api/webhooks/stripe - Alias (Stripe may be configured with this URL)
POST /api/webhook/stripe-connect - Connect (account.updated) endpoint

Responses:
- 200 when the event was applied, ignored or already processed
- 400 when the signature (or secret) check fails
- 500 when applying the event failed; Stripe will redeliver
"""
from fastapi import APIRouter, HTTPException, Request, Header, status
from services.billing_errors import SignatureVerificationError
from services.stripe_webhook_service import stripe_webhook_service, ENDPOINT_BILLING, ENDPOINT_CONNECT
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


async def _handle_stripe_webhook(request: Request, stripe_signature: str = None, endpoint: str = ENDPOINT_BILLING):
    payload = await request.body()
    try:
        message, details = await stripe_webhook_service.process_webhook(
            payload=payload,
            signature=stripe_signature,
            endpoint=endpoint,
        )
    except SignatureVerificationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)
    except Exception:
        logger.exception("Stripe webhook error endpoint=%s", endpoint)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed"
        )

    return {"status": "received", "message": message, "details": details}


# Primary webhook endpoint
@router.post("/api/webhook/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature")
):
    """Handle Stripe webhooks at /api/webhook/stripe"""
    return await _handle_stripe_webhook(request, stripe_signature)


@router.post("/api/webhooks/stripe")
async def stripe_webhook_alias(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature")
):
    """Handle Stripe webhooks at /api/webhooks/stripe (alias)"""
    return await _handle_stripe_webhook(request, stripe_signature)


@router.post("/api/webhook/stripe-connect")
async def stripe_connect_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature")
):
    """Connect events, signed with STRIPE_CONNECT_WEBHOOK_SECRET"""
    return await _handle_stripe_webhook(request, stripe_signature, endpoint=ENDPOINT_CONNECT)
