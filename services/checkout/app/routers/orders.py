from __future__ import annotations

from fastapi import APIRouter, Depends
from packages.shared.schemas.events import EventV1
from services.checkout.app.db.deps import get_db, get_principal
from services.checkout.app.models.order import OrderOut, OrderStatusUpdateRequest
from services.checkout.app.routers.errors import raise_checkout_http_error
from services.checkout.app.services.authz import CheckoutPrincipal
from services.checkout.app.services.checkout import get_order, order_to_out
from services.checkout.app.services.checkout_base import OrderNotFoundError
from services.checkout.app.services.order_events import list_order_events
from services.checkout.app.services.order_status import update_order_status
from sqlalchemy.orm import Session

router = APIRouter()


@router.get("/v1/stores/{store_id}/orders/{order_id}", response_model=OrderOut)
def read_order(
    store_id: str,
    order_id: str,
    principal: CheckoutPrincipal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> OrderOut:
    try:
        order = get_order(db, principal.store_id, order_id)
        if order.customer_id != principal.customer_id:
            raise OrderNotFoundError(order_id)
    except Exception as e:
        raise_checkout_http_error(e)

    return order_to_out(order)


@router.post("/v1/stores/{store_id}/orders/{order_id}/status", response_model=OrderOut)
def change_order_status(
    store_id: str,
    order_id: str,
    payload: OrderStatusUpdateRequest,
    db: Session = Depends(get_db),
) -> OrderOut:
    # Staff-facing; the upstream auth layer restricts this route to store operators.
    try:
        order = update_order_status(db, store_id, order_id, payload.status)
    except Exception as e:
        raise_checkout_http_error(e)

    return order_to_out(order)


@router.get("/v1/stores/{store_id}/orders/{order_id}/events", response_model=list[EventV1])
def read_order_events(
    store_id: str,
    order_id: str,
    db: Session = Depends(get_db),
) -> list[EventV1]:
    # Staff-facing, like the status route.
    try:
        return list_order_events(db, store_id, order_id)
    except Exception as e:
        raise_checkout_http_error(e)
