from __future__ import annotations

from packages.shared.schemas.events import EntityTypeV1, EventTypeV1, EventV1
from services.checkout.app.db.models import EventLog, Payment
from services.checkout.app.services.checkout import get_order
from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session


def list_order_events(db: Session, store_id: str, order_id: str) -> list[EventV1]:
    """Timeline for one order: its own events plus those of its payments, oldest first."""

    order = get_order(db, store_id, order_id)
    payment_ids = select(Payment.id).where(Payment.order_id == order.id)

    rows = db.scalars(
        select(EventLog)
        .where(
            EventLog.store_id == store_id,
            or_(
                and_(
                    EventLog.entity_type == EntityTypeV1.ORDER.value,
                    EventLog.entity_id == order.id,
                ),
                and_(
                    EventLog.entity_type == EntityTypeV1.PAYMENT.value,
                    EventLog.entity_id.in_(payment_ids),
                ),
            ),
        )
        .order_by(EventLog.created_at, EventLog.id)
    ).all()

    return [
        EventV1(
            id=r.id,
            store_id=r.store_id,
            entity_type=EntityTypeV1(r.entity_type),
            entity_id=r.entity_id,
            event_type=EventTypeV1(r.event_type),
            payload=r.event_payload_json,
            created_at=r.created_at.isoformat(),
        )
        for r in rows
    ]
