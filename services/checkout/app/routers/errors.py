from __future__ import annotations

from fastapi import HTTPException
from services.checkout.app.log import get_logger
from services.checkout.app.services.checkout_base import (
    CheckoutError,
    CheckoutValidationError,
    DuplicatePaymentError,
    IdempotencyKeyMismatchError,
    InsufficientStockError,
    InvalidShippingMethodError,
    InvalidStatusTransitionError,
    OrderNotFoundError,
    PaymentValidationError,
    ProductNotFoundError,
    StoreAccessDeniedError,
    TransientInfraError,
)

logger = get_logger("http")

_STATUS_BY_ERROR: tuple[tuple[type[CheckoutError], int], ...] = (
    (CheckoutValidationError, 400),
    (StoreAccessDeniedError, 403),
    (ProductNotFoundError, 404),
    (InvalidShippingMethodError, 404),
    (OrderNotFoundError, 404),
    (InsufficientStockError, 409),
    (DuplicatePaymentError, 409),
    (InvalidStatusTransitionError, 409),
    (PaymentValidationError, 402),
    (IdempotencyKeyMismatchError, 422),
    (TransientInfraError, 503),
)


def raise_checkout_http_error(e: Exception) -> None:
    if isinstance(e, CheckoutError):
        for error_type, status_code in _STATUS_BY_ERROR:
            if isinstance(e, error_type):
                raise HTTPException(
                    status_code=status_code,
                    detail={"code": e.code, "message": e.message, **e.details},
                ) from e

    logger.error("unhandled_error", error_type=type(e).__name__, error=str(e))
    raise HTTPException(status_code=500, detail="Internal Server Error") from e
