from __future__ import annotations

from collections.abc import Generator

from fastapi import Depends, Header, HTTPException
from services.checkout.app.db.database import db_session
from services.checkout.app.services.authz import CheckoutPrincipal, authorize_checkout
from services.checkout.app.services.checkout_base import StoreAccessDeniedError
from sqlalchemy.orm import Session


def get_db() -> Generator[Session, None, None]:
    db = db_session()
    try:
        yield db
    finally:
        db.close()


def get_principal(
    store_id: str,
    x_customer_id: str | None = Header(default=None),
    db: Session = Depends(get_db),
) -> CheckoutPrincipal:
    # X-Customer-Id is set by the upstream auth layer after session verification.
    try:
        return authorize_checkout(db, store_id, x_customer_id)
    except StoreAccessDeniedError as e:
        raise HTTPException(
            status_code=403,
            detail={"code": e.code, "message": e.message, **e.details},
        ) from e
