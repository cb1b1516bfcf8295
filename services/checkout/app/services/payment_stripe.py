from __future__ import annotations

import os

from services.checkout.app.services.payment_base import (
    PaymentIntent,
    PaymentIntentNotFoundError,
    PaymentProviderError,
    PaymentProviderUnavailableError,
    PaymentSdkMissingError,
)


class StripePaymentProvider:
    """Reads payment intents through the official Stripe SDK."""

    gateway = "stripe"

    def __init__(self, api_key: str) -> None:
        try:
            import stripe
        except ImportError as e:
            raise PaymentSdkMissingError() from e

        self._stripe = stripe
        self._client = stripe.StripeClient(api_key)

    @classmethod
    def from_env(cls) -> StripePaymentProvider:
        api_key = os.getenv("STRIPE_SECRET_KEY", "").strip()
        if not api_key:
            raise ValueError("STRIPE_SECRET_KEY is required when CHECKOUT_PAYMENT_PROVIDER=stripe")
        return cls(api_key=api_key)

    def get_payment_intent(self, intent_id: str) -> PaymentIntent:
        stripe = self._stripe
        try:
            intent = self._client.payment_intents.retrieve(intent_id)
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                raise PaymentIntentNotFoundError(intent_id) from e
            raise PaymentProviderError(str(e)) from e
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            raise PaymentProviderUnavailableError(str(e)) from e
        except stripe.APIError as e:
            raise PaymentProviderUnavailableError(str(e)) from e
        except stripe.StripeError as e:
            raise PaymentProviderError(str(e)) from e

        metadata = getattr(intent, "metadata", None) or {}
        return PaymentIntent(
            id=intent.id,
            amount=int(intent.amount),
            currency=str(intent.currency).lower(),
            status=str(intent.status),
            store_id=metadata.get("store_id"),
        )
