from __future__ import annotations

from fastapi import APIRouter, Depends, Header, HTTPException
from services.checkout.app.db.deps import get_db, get_principal
from services.checkout.app.models.checkout import CheckoutInput, CheckoutRequest, CheckoutResponse
from services.checkout.app.routers.errors import raise_checkout_http_error
from services.checkout.app.services.authz import CheckoutPrincipal
from services.checkout.app.services.checkout import CheckoutService
from sqlalchemy.orm import Session

router = APIRouter()


def _checkout_service(db: Session) -> CheckoutService:
    try:
        return CheckoutService(db)
    except ValueError as e:
        raise HTTPException(status_code=500, detail=str(e)) from e


@router.post(
    "/v1/stores/{store_id}/checkout",
    response_model=CheckoutResponse,
    status_code=201,
)
def create_checkout(
    store_id: str,
    payload: CheckoutRequest,
    idempotency_key: str | None = Header(default=None),
    principal: CheckoutPrincipal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> CheckoutResponse:
    service = _checkout_service(db)
    request = CheckoutInput(
        **payload.model_dump(),
        store_id=principal.store_id,
        customer_id=principal.customer_id,
        idempotency_key=idempotency_key,
    )
    try:
        return service.create_order(request)
    except Exception as e:
        raise_checkout_http_error(e)


@router.get("/v1/stores/{store_id}/checkout/{idempotency_key}", response_model=CheckoutResponse)
def get_checkout(
    store_id: str,
    idempotency_key: str,
    principal: CheckoutPrincipal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> CheckoutResponse:
    service = _checkout_service(db)
    try:
        result = service.get_by_idempotency_key(principal.store_id, idempotency_key)
    except Exception as e:
        raise_checkout_http_error(e)

    if result.order.customer_id != principal.customer_id:
        raise HTTPException(
            status_code=404,
            detail={"code": "order_not_found", "message": f"Order {idempotency_key} not found"},
        )
    return result
