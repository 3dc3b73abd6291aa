"""
Billing error taxonomy.

Services raise these; routes translate them to HTTP status codes via
`status_code`. Anything that is not a BillingError is an unexpected failure.
"""


class BillingError(Exception):
    """Base class for expected billing and payout failures."""
    status_code = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InvalidTierError(BillingError):
    """Stored plan tier is not a known PlanTier."""
    status_code = 500

    def __init__(self, tier):
        self.tier = tier
        super().__init__(f"Unknown plan tier: {tier!r}")


class UserNotFoundError(BillingError):
    status_code = 404

    def __init__(self, lookup: str):
        self.lookup = lookup
        super().__init__(f"No user found for {lookup}")


class NoActiveSubscriptionError(BillingError):
    status_code = 400


class SubscriptionAlreadyEndedError(BillingError):
    status_code = 409


class BillingProviderUnavailableError(BillingError):
    status_code = 503


class PayoutProviderUnavailableError(BillingError):
    status_code = 503


class SignatureVerificationError(BillingError):
    status_code = 400


class EventPayloadError(BillingError):
    """Webhook payload is missing fields we rely on."""
    status_code = 500


class NoPayoutAccountError(BillingError):
    status_code = 400


class PayoutAccountGoneError(BillingError):
    """Stored payout account no longer exists at Stripe. Needs manual support."""
    status_code = 409

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(
            f"Payout account {account_id} no longer exists. Please contact support to restore payouts."
        )


class PayoutOnboardingIncompleteError(BillingError):
    status_code = 400


class SubscriptionGoneError(BillingError):
    """A subscription referenced by a webhook no longer exists at Stripe."""
    status_code = 409

    def __init__(self, subscription_id: str):
        self.subscription_id = subscription_id
        super().__init__(f"Subscription {subscription_id} no longer exists")
