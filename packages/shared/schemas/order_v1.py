"""Shared order schema (v1).

Status vocabularies shared by the checkout service, the admin dashboard and the storefront.
They should remain stable and backwards compatible once shipped.
"""

from __future__ import annotations

from enum import Enum


class OrderStatusV1(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELED = "CANCELED"


class PaymentStatusV1(str, Enum):
    PENDING = "PENDING"
    AUTHORIZED = "AUTHORIZED"
    PAID = "PAID"
    REFUNDED = "REFUNDED"


class InventoryStatusV1(str, Enum):
    IN_STOCK = "IN_STOCK"
    LOW_STOCK = "LOW_STOCK"
    OUT_OF_STOCK = "OUT_OF_STOCK"


class DiscountTypeV1(str, Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED = "FIXED"
