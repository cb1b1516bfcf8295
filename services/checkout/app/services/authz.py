from __future__ import annotations

from dataclasses import dataclass

from services.checkout.app.db.models import Customer, Store
from services.checkout.app.services.checkout_base import StoreAccessDeniedError
from sqlalchemy import select
from sqlalchemy.orm import Session


@dataclass(frozen=True, slots=True)
class CheckoutPrincipal:
    store_id: str
    customer_id: str


def authorize_checkout(db: Session, store_id: str, customer_id: str | None) -> CheckoutPrincipal:
    """Single capability check for store-scoped operations.

    The customer id arrives from the upstream auth layer; it only grants access to the
    store the customer belongs to.
    """

    if not customer_id:
        raise StoreAccessDeniedError("Customer identity is required", {"store_id": store_id})

    if db.get(Store, store_id) is None:
        raise StoreAccessDeniedError("Store not accessible", {"store_id": store_id})

    customer = db.execute(
        select(Customer.id).where(Customer.id == customer_id, Customer.store_id == store_id)
    ).first()
    if customer is None:
        raise StoreAccessDeniedError(
            "Customer does not belong to this store",
            {"store_id": store_id, "customer_id": customer_id},
        )

    return CheckoutPrincipal(store_id=store_id, customer_id=customer_id)
