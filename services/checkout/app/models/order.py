from __future__ import annotations

from packages.shared.schemas.order_v1 import OrderStatusV1
from pydantic import BaseModel, Field


class AddressInput(BaseModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    address1: str = Field(..., min_length=1)
    address2: str | None = None
    city: str = Field(..., min_length=1)
    state: str | None = None
    postal_code: str = Field(..., min_length=1)
    country: str = Field(..., min_length=2, max_length=2)
    phone: str | None = None


class OrderItemOut(BaseModel):
    id: str
    product_id: str
    variant_id: str | None = None
    product_name: str
    variant_name: str | None = None
    sku: str
    unit_price: int
    quantity: int
    subtotal: int
    tax_amount: int
    discount_amount: int
    total_amount: int


class OrderOut(BaseModel):
    id: str
    order_number: str
    store_id: str
    customer_id: str
    status: OrderStatusV1
    payment_status: str

    subtotal: int
    tax_amount: int
    shipping_amount: int
    discount_amount: int
    total_amount: int
    currency: str

    discount_code: str | None = None
    shipping_method_id: str
    gateway_payment_id: str
    shipping_address: dict
    billing_address: dict

    items: list[OrderItemOut]
    created_at: str


class OrderStatusUpdateRequest(BaseModel):
    status: OrderStatusV1
