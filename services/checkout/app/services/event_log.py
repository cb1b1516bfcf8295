from __future__ import annotations

from uuid import uuid4

from packages.shared.schemas.events import EntityTypeV1, EventTypeV1
from services.checkout.app.db.models import EventLog
from sqlalchemy.orm import Session


def log_event(
    db: Session,
    *,
    store_id: str,
    entity_type: EntityTypeV1,
    entity_id: str,
    event_type: EventTypeV1,
    event_payload: dict,
) -> None:
    db.add(
        EventLog(
            id=uuid4().hex,
            store_id=store_id,
            entity_type=entity_type.value,
            entity_id=entity_id,
            event_type=event_type.value,
            event_payload_json=event_payload,
        )
    )
