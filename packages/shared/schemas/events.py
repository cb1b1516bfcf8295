"""Shared event schema (v1).

The checkout service stores an append-only event log next to the orders it writes. Admin
clients consume these events to render an order timeline.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class EntityTypeV1(str, Enum):
    ORDER = "Order"
    PRODUCT = "Product"
    PAYMENT = "Payment"


class EventTypeV1(str, Enum):
    ORDER_CREATED = "ORDER_CREATED"
    STOCK_RESERVED = "STOCK_RESERVED"
    STOCK_RESTORED = "STOCK_RESTORED"
    PAYMENT_RECORDED = "PAYMENT_RECORDED"
    DISCOUNT_REJECTED = "DISCOUNT_REJECTED"
    ORDER_STATUS_CHANGED = "ORDER_STATUS_CHANGED"


class EventV1(BaseModel):
    id: str
    store_id: str

    entity_type: EntityTypeV1
    entity_id: str

    event_type: EventTypeV1
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: str
