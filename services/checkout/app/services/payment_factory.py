from __future__ import annotations

import os

from services.checkout.app.services.payment_base import PaymentProvider
from services.checkout.app.services.payment_mock import mock_provider


def get_payment_provider() -> PaymentProvider:
    """Select a payment provider based on env vars.

    Defaults to the shared mock provider so tests and local dev are deterministic unless
    explicitly configured otherwise.
    """

    mode = os.getenv("CHECKOUT_PAYMENT_PROVIDER", "mock").strip().lower()

    if mode == "mock":
        return mock_provider

    if mode == "stripe":
        from services.checkout.app.services.payment_stripe import StripePaymentProvider

        return StripePaymentProvider.from_env()

    raise ValueError(f"Unknown CHECKOUT_PAYMENT_PROVIDER={mode!r}. Expected mock or stripe.")
