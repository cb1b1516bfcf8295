from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


class PaymentProviderError(Exception):
    """Base class for payment provider errors."""


class PaymentProviderUnavailableError(PaymentProviderError):
    """Transient failure talking to the provider (timeout, 5xx, rate limit). Safe to retry."""


class PaymentIntentNotFoundError(PaymentProviderError):
    def __init__(self, intent_id: str) -> None:
        super().__init__(f"Payment intent {intent_id} does not exist at the provider")
        self.intent_id = intent_id


class PaymentSdkMissingError(PaymentProviderError):
    def __init__(self) -> None:
        super().__init__(
            "stripe is not installed. Install the optional extra:\n"
            "  pip install 'storefront-checkout[stripe]'"
        )


# Provider statuses that may back a new order. Anything else (canceled,
# requires_payment_method, requires_action) cannot be attached.
CHECKOUT_READY_STATUSES = frozenset(
    {"requires_confirmation", "requires_capture", "processing", "succeeded"}
)


@dataclass(frozen=True, slots=True)
class PaymentIntent:
    id: str
    amount: int
    currency: str
    status: str
    # Store that created the intent, from provider metadata; None when not recorded.
    store_id: str | None = None


class PaymentProvider(Protocol):
    gateway: str

    def get_payment_intent(self, intent_id: str) -> PaymentIntent: ...
