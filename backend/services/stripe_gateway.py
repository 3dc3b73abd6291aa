"""Bounded calls into the (blocking) Stripe SDK.

Every Stripe request made by the billing services goes through call_stripe:
the SDK call runs in a worker thread under a timeout, and transport or API
failures surface as the caller's provider-unavailable error so routes can
answer 503 without touching local state.
"""
import asyncio
import functools
import logging
from typing import Any, Callable, Type

import stripe

from services.billing_errors import BillingError

logger = logging.getLogger(__name__)


def is_resource_missing(error: Exception) -> bool:
    """True when Stripe says the referenced object does not exist."""
    return isinstance(error, stripe.InvalidRequestError) and getattr(error, "code", None) == "resource_missing"


async def call_stripe(
    func: Callable[..., Any],
    *args: Any,
    timeout: float,
    unavailable_error: Type[BillingError],
    operation: str,
    **kwargs: Any,
) -> Any:
    """Run a Stripe SDK call off the event loop with a timeout.

    resource_missing errors are re-raised unchanged so callers can tell a
    deleted object apart from an outage.
    """
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(functools.partial(func, *args, **kwargs)),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        logger.error("STRIPE_CALL_TIMEOUT operation=%s timeout=%ss", operation, timeout)
        raise unavailable_error(f"Stripe did not respond in time ({operation}). Please try again.")
    except stripe.StripeError as e:
        if is_resource_missing(e):
            raise
        logger.error(
            "STRIPE_CALL_FAILED operation=%s error_type=%s code=%s message=%s",
            operation, type(e).__name__, getattr(e, "code", None), getattr(e, "user_message", None) or str(e),
        )
        raise unavailable_error(f"Stripe request failed ({operation}). Please try again.") from e
