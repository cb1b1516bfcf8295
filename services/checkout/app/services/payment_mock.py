from __future__ import annotations

import threading
from uuid import uuid4

from services.checkout.app.services.payment_base import (
    PaymentIntent,
    PaymentIntentNotFoundError,
    PaymentProviderUnavailableError,
)


class MockPaymentProvider:
    """In-process stand-in for the payment gateway.

    Intents are registered up front with ``create_intent``; local dev and tests use it to
    simulate what the storefront would have created at the gateway before checkout.
    """

    gateway = "mock"

    def __init__(self) -> None:
        self._intents: dict[str, PaymentIntent] = {}
        self._failures: dict[str, int] = {}
        self._lock = threading.Lock()
        self.calls = 0

    def create_intent(
        self,
        amount: int,
        currency: str = "usd",
        status: str = "requires_confirmation",
        intent_id: str | None = None,
        store_id: str | None = None,
    ) -> PaymentIntent:
        intent = PaymentIntent(
            id=intent_id or f"pi_{uuid4().hex[:24]}",
            amount=amount,
            currency=currency.lower(),
            status=status,
            store_id=store_id,
        )
        with self._lock:
            self._intents[intent.id] = intent
        return intent

    def fail_next(self, intent_id: str, times: int = 1) -> None:
        """Make the next ``times`` lookups of ``intent_id`` fail as if the gateway were down."""

        with self._lock:
            self._failures[intent_id] = times

    def get_payment_intent(self, intent_id: str) -> PaymentIntent:
        with self._lock:
            self.calls += 1
            remaining = self._failures.get(intent_id, 0)
            if remaining > 0:
                self._failures[intent_id] = remaining - 1
                raise PaymentProviderUnavailableError("mock gateway temporarily unavailable")

            intent = self._intents.get(intent_id)

        if intent is None:
            raise PaymentIntentNotFoundError(intent_id)
        return intent

    def reset(self) -> None:
        with self._lock:
            self._intents.clear()
            self._failures.clear()
            self.calls = 0


mock_provider = MockPaymentProvider()
