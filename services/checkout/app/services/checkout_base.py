from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


class CheckoutError(Exception):
    """Base class for checkout errors.

    Every error carries a stable ``code`` and a JSON-safe ``details`` dict so it can be
    returned to callers and replayed from the idempotency cache.
    """

    code = "checkout_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})

    def to_payload(self) -> dict[str, Any]:
        return {"type": type(self).__name__, "message": self.message, "details": self.details}


class CheckoutValidationError(CheckoutError):
    code = "validation_error"


class ProductNotFoundError(CheckoutError):
    code = "product_not_found"

    def __init__(self, product_id: str, variant_id: str | None = None) -> None:
        target = product_id if variant_id is None else f"{product_id}/{variant_id}"
        super().__init__(
            f"Product {target} not found or unavailable",
            {"product_id": product_id, "variant_id": variant_id},
        )


class InvalidShippingMethodError(CheckoutError):
    code = "invalid_shipping_method"

    def __init__(self, shipping_method_id: str) -> None:
        super().__init__(
            f"Shipping method {shipping_method_id} is not available for this store",
            {"shipping_method_id": shipping_method_id},
        )


class InsufficientStockError(CheckoutError):
    code = "insufficient_stock"

    def __init__(
        self,
        product_id: str,
        product_name: str,
        requested: int,
        available: int,
        variant_id: str | None = None,
    ) -> None:
        super().__init__(
            f"Insufficient stock for {product_name}. Available: {available}, Requested: {requested}",
            {
                "product_id": product_id,
                "variant_id": variant_id,
                "requested": requested,
                "available": available,
            },
        )


class PaymentValidationError(CheckoutError):
    code = "payment_validation_failed"

    def __init__(self, payment_intent_id: str, reason: str) -> None:
        super().__init__(
            f"Payment validation failed: {reason}",
            {"payment_intent_id": payment_intent_id, "reason": reason},
        )
        self.reason = reason


class DuplicatePaymentError(CheckoutError):
    code = "duplicate_payment"

    def __init__(self, payment_intent_id: str) -> None:
        super().__init__(
            "Payment intent was claimed by another order. "
            "Query the order by idempotency key instead of retrying.",
            {"payment_intent_id": payment_intent_id},
        )


class IdempotencyKeyMismatchError(CheckoutError):
    code = "idempotency_key_mismatch"

    def __init__(self, idempotency_key: str) -> None:
        super().__init__(
            "Idempotency key was already used with a different request body",
            {"idempotency_key": idempotency_key},
        )


class TransientInfraError(CheckoutError):
    code = "transient_infra_error"


class StoreAccessDeniedError(CheckoutError):
    code = "store_access_denied"


class OrderNotFoundError(CheckoutError):
    code = "order_not_found"

    def __init__(self, order_ref: str) -> None:
        super().__init__(f"Order {order_ref} not found", {"order": order_ref})


class InvalidStatusTransitionError(CheckoutError):
    code = "invalid_status_transition"

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(
            f"Cannot move order from {current} to {requested}",
            {"current": current, "requested": requested},
        )


# Errors that are a stable answer for a given request and safe to replay for the same key.
CACHEABLE_ERRORS: tuple[type[CheckoutError], ...] = (
    CheckoutValidationError,
    ProductNotFoundError,
    InvalidShippingMethodError,
    InsufficientStockError,
    PaymentValidationError,
)

_ERROR_TYPES: dict[str, type[CheckoutError]] = {
    cls.__name__: cls
    for cls in (
        CheckoutError,
        CheckoutValidationError,
        ProductNotFoundError,
        InvalidShippingMethodError,
        InsufficientStockError,
        PaymentValidationError,
        DuplicatePaymentError,
        IdempotencyKeyMismatchError,
        TransientInfraError,
        StoreAccessDeniedError,
        OrderNotFoundError,
        InvalidStatusTransitionError,
    )
}


def restore_error(payload: dict[str, Any]) -> CheckoutError:
    """Rebuild an error previously serialized with ``CheckoutError.to_payload``."""

    cls = _ERROR_TYPES.get(str(payload.get("type")), CheckoutError)
    err = cls.__new__(cls)
    CheckoutError.__init__(err, str(payload.get("message") or ""), payload.get("details") or {})
    if isinstance(err, PaymentValidationError):
        err.reason = str(err.details.get("reason") or "")
    return err


@dataclass(frozen=True, slots=True)
class CartLineItem:
    product_id: str
    quantity: int
    variant_id: str | None = None


@dataclass(frozen=True, slots=True)
class PricedLineItem:
    product_id: str
    variant_id: str | None
    product_name: str
    variant_name: str | None
    sku: str
    quantity: int
    unit_price: int
    line_subtotal: int
    line_discount: int
    line_tax: int
    line_total: int
    available_stock: int
    track_inventory: bool


@dataclass(frozen=True, slots=True)
class DiscountOutcome:
    code: str | None
    amount: int
    applied: bool
    rejected: bool
    reason: str | None = None
    coupon_id: str | None = None


NO_DISCOUNT = DiscountOutcome(code=None, amount=0, applied=False, rejected=False)


@dataclass(frozen=True, slots=True)
class CheckoutPricing:
    store_id: str
    items: list[PricedLineItem]
    subtotal: int
    tax_total: int
    shipping_total: int
    discount_total: int
    grand_total: int
    currency: str
    shipping_method_id: str
    discount: DiscountOutcome = field(default=NO_DISCOUNT)


@dataclass(frozen=True, slots=True)
class PaymentValidationResult:
    is_valid: bool
    payment_intent_id: str
    validated_amount: int
    currency: str
    status: str
    reason: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "payment_intent_id": self.payment_intent_id,
            "validated_amount": self.validated_amount,
            "currency": self.currency,
            "status": self.status,
            "reason": self.reason,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> PaymentValidationResult:
        return cls(
            is_valid=bool(payload["is_valid"]),
            payment_intent_id=str(payload["payment_intent_id"]),
            validated_amount=int(payload["validated_amount"]),
            currency=str(payload["currency"]),
            status=str(payload["status"]),
            reason=payload.get("reason"),
        )
