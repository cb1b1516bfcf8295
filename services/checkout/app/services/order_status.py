from __future__ import annotations

from datetime import datetime

from packages.shared.schemas.events import EntityTypeV1, EventTypeV1
from packages.shared.schemas.order_v1 import OrderStatusV1
from services.checkout.app.db.models import Order
from services.checkout.app.log import get_logger
from services.checkout.app.services.checkout import get_order
from services.checkout.app.services.checkout_base import InvalidStatusTransitionError
from services.checkout.app.services.event_log import log_event
from services.checkout.app.services.inventory import restore_stock
from sqlalchemy import select, update
from sqlalchemy.orm import Session

logger = get_logger("order_status")

ALLOWED_TRANSITIONS: dict[OrderStatusV1, frozenset[OrderStatusV1]] = {
    OrderStatusV1.PENDING: frozenset({OrderStatusV1.PROCESSING, OrderStatusV1.CANCELED}),
    OrderStatusV1.PROCESSING: frozenset({OrderStatusV1.SHIPPED, OrderStatusV1.CANCELED}),
    OrderStatusV1.SHIPPED: frozenset({OrderStatusV1.DELIVERED}),
    OrderStatusV1.DELIVERED: frozenset(),
    OrderStatusV1.CANCELED: frozenset(),
}


def can_transition(current: OrderStatusV1, new_status: OrderStatusV1) -> bool:
    return new_status in ALLOWED_TRANSITIONS[current]


def update_order_status(
    db: Session,
    store_id: str,
    order_id: str,
    new_status: OrderStatusV1,
) -> Order:
    """Move an order along its lifecycle and commit.

    Cancellation puts tracked stock back in the same transaction.
    """

    order = get_order(db, store_id, order_id)
    current = OrderStatusV1(order.status)
    if not can_transition(current, new_status):
        raise InvalidStatusTransitionError(current.value, new_status.value)

    try:
        # Only one writer moves the order out of `current`; a concurrent loser matches no row.
        claimed = db.execute(
            update(Order)
            .where(
                Order.id == order.id,
                Order.store_id == store_id,
                Order.status == current.value,
            )
            .values(status=new_status.value, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            latest = db.execute(select(Order.status).where(Order.id == order.id)).scalar_one()
            raise InvalidStatusTransitionError(latest, new_status.value)

        if new_status == OrderStatusV1.CANCELED:
            restore_stock(db, store_id, order.items, order.order_number, reason="Cancellation")

        log_event(
            db,
            store_id=store_id,
            entity_type=EntityTypeV1.ORDER,
            entity_id=order.id,
            event_type=EventTypeV1.ORDER_STATUS_CHANGED,
            event_payload={"from": current.value, "to": new_status.value},
        )
        if new_status == OrderStatusV1.CANCELED:
            log_event(
                db,
                store_id=store_id,
                entity_type=EntityTypeV1.ORDER,
                entity_id=order.id,
                event_type=EventTypeV1.STOCK_RESTORED,
                event_payload={
                    "items": [
                        {
                            "product_id": i.product_id,
                            "variant_id": i.variant_id,
                            "quantity": i.quantity,
                        }
                        for i in order.items
                    ]
                },
            )
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "order_status_changed",
        store_id=store_id,
        order_id=order.id,
        previous=current.value,
        status=new_status.value,
    )
    return order
