from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from packages.shared.schemas.order_v1 import DiscountTypeV1
from services.checkout.app.db.models import (
    Coupon,
    Customer,
    Product,
    ProductVariant,
    ShippingMethod,
    Store,
)
from sqlalchemy.orm import Session


@dataclass(frozen=True, slots=True)
class DemoStore:
    store_id: str
    customer_id: str
    product_id: str
    untracked_product_id: str
    variant_product_id: str
    variant_id: str
    shipping_method_id: str


def seed_demo_store(db: Session, store_id: str = "store-1") -> DemoStore:
    """Insert a small store used by local dev and tests. Idempotent per ``store_id``.

    The main product costs 1000 with 5 in stock; standard shipping costs 500 with free
    shipping from 20000. ``SAVE10`` has expired, ``WELCOME10`` is 10% off.
    """

    p = f"{store_id}-"
    demo = DemoStore(
        store_id=store_id,
        customer_id=f"{p}cust-1",
        product_id=f"{p}prod-tee",
        untracked_product_id=f"{p}prod-ebook",
        variant_product_id=f"{p}prod-hoodie",
        variant_id=f"{p}var-hoodie-l",
        shipping_method_id=f"{p}ship-standard",
    )
    if db.get(Store, store_id) is not None:
        return demo

    now = datetime.utcnow()
    db.add(Store(id=store_id, name=f"Demo Store {store_id}", currency="USD", tax_mode="none"))
    db.flush()

    db.add(
        Customer(
            id=demo.customer_id,
            store_id=store_id,
            email=f"{p}buyer@example.com",
            name="Demo Buyer",
        )
    )
    db.add_all(
        [
            Product(
                id=demo.product_id,
                store_id=store_id,
                name="Classic Tee",
                sku=f"{p}TEE",
                price=1000,
                inventory_qty=5,
                track_inventory=True,
                low_stock_threshold=2,
            ),
            Product(
                id=demo.untracked_product_id,
                store_id=store_id,
                name="Style Guide (ebook)",
                sku=f"{p}EBOOK",
                price=1500,
                inventory_qty=0,
                track_inventory=False,
            ),
            Product(
                id=demo.variant_product_id,
                store_id=store_id,
                name="Hoodie",
                sku=f"{p}HOODIE",
                price=4000,
                inventory_qty=0,
                track_inventory=True,
            ),
        ]
    )
    db.flush()
    db.add(
        ProductVariant(
            id=demo.variant_id,
            product_id=demo.variant_product_id,
            name="Large",
            sku=f"{p}HOODIE-L",
            price=4500,
            stock=3,
        )
    )
    db.add(
        ShippingMethod(
            id=demo.shipping_method_id,
            store_id=store_id,
            name="Standard",
            cost=500,
            free_shipping_threshold=20000,
            is_active=True,
        )
    )
    db.add_all(
        [
            Coupon(
                id=f"{p}coupon-save10",
                store_id=store_id,
                code="SAVE10",
                discount_type=DiscountTypeV1.PERCENTAGE.value,
                discount_value=1000,
                valid_from=now - timedelta(days=60),
                valid_to=now - timedelta(days=30),
                is_active=True,
            ),
            Coupon(
                id=f"{p}coupon-welcome10",
                store_id=store_id,
                code="WELCOME10",
                discount_type=DiscountTypeV1.PERCENTAGE.value,
                discount_value=1000,
                valid_from=now - timedelta(days=1),
                valid_to=None,
                is_active=True,
            ),
        ]
    )
    db.commit()
    return demo
