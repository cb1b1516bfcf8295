from __future__ import annotations

from pydantic import BaseModel, Field
from services.checkout.app.models.order import AddressInput, OrderOut


class CheckoutItemInput(BaseModel):
    """A cart line. Prices are never accepted from the client."""

    product_id: str = Field(..., min_length=1)
    variant_id: str | None = None
    quantity: int = Field(..., ge=1, le=10_000)


class CheckoutRequest(BaseModel):
    items: list[CheckoutItemInput] = Field(..., min_length=1, max_length=200)
    shipping_address: AddressInput
    billing_address: AddressInput | None = None
    shipping_method_id: str = Field(..., min_length=1)
    payment_intent_id: str = Field(..., min_length=1)
    discount_code: str | None = None
    customer_note: str | None = Field(default=None, max_length=2000)


class CheckoutInput(CheckoutRequest):
    """Checkout request plus the already-authorized tenant context."""

    store_id: str
    customer_id: str
    idempotency_key: str | None = None


class DiscountResult(BaseModel):
    code: str | None = None
    applied: bool = False
    rejected: bool = False
    reason: str | None = None
    amount: int = 0


class CheckoutResponse(BaseModel):
    order: OrderOut
    discount: DiscountResult
