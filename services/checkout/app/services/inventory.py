from __future__ import annotations

from collections.abc import Iterable, Sequence
from uuid import uuid4

from packages.shared.schemas.order_v1 import InventoryStatusV1
from services.checkout.app.db.models import InventoryLog, OrderItem, Product, ProductVariant
from services.checkout.app.log import get_logger
from services.checkout.app.services.checkout_base import (
    InsufficientStockError,
    PricedLineItem,
    ProductNotFoundError,
)
from sqlalchemy import select, update
from sqlalchemy.orm import Session

logger = get_logger("inventory")


def determine_inventory_status(quantity: int, low_stock_threshold: int) -> InventoryStatusV1:
    if quantity <= 0:
        return InventoryStatusV1.OUT_OF_STOCK
    if quantity <= low_stock_threshold:
        return InventoryStatusV1.LOW_STOCK
    return InventoryStatusV1.IN_STOCK


def reserve_stock(
    db: Session,
    store_id: str,
    items: Sequence[PricedLineItem],
    order_number: str | None = None,
) -> None:
    """Decrement stock for every tracked line inside the caller's transaction.

    Rows are re-read inside the transaction and the decrement is conditioned on
    ``qty >= requested`` at write time. The first line that cannot be covered raises
    InsufficientStockError; the caller rolls back, so no line keeps a partial decrement.
    """

    for item in items:
        product = db.execute(
            select(Product)
            .where(Product.id == item.product_id, Product.store_id == store_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if product is None:
            raise ProductNotFoundError(item.product_id, item.variant_id)

        if item.variant_id is None:
            if not product.track_inventory:
                continue
            previous = product.inventory_qty
            result = db.execute(
                update(Product)
                .where(
                    Product.id == product.id,
                    Product.store_id == store_id,
                    Product.inventory_qty >= item.quantity,
                )
                .values(inventory_qty=Product.inventory_qty - item.quantity)
                .execution_options(synchronize_session=False)
            )
        else:
            variant = db.execute(
                select(ProductVariant)
                .where(ProductVariant.id == item.variant_id, ProductVariant.product_id == product.id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
            if variant is None:
                raise ProductNotFoundError(item.product_id, item.variant_id)
            tracked = product.track_inventory if variant.track_inventory is None else variant.track_inventory
            if not tracked:
                continue
            previous = variant.stock
            result = db.execute(
                update(ProductVariant)
                .where(
                    ProductVariant.id == variant.id,
                    ProductVariant.stock >= item.quantity,
                )
                .values(stock=ProductVariant.stock - item.quantity)
                .execution_options(synchronize_session=False)
            )

        if result.rowcount != 1:
            logger.info(
                "stock_insufficient",
                store_id=store_id,
                product_id=item.product_id,
                variant_id=item.variant_id,
                requested=item.quantity,
                available=previous,
            )
            raise InsufficientStockError(
                item.product_id,
                item.product_name,
                requested=item.quantity,
                available=previous,
                variant_id=item.variant_id,
            )

        new_qty = _current_qty(db, product, item.variant_id)
        if item.variant_id is None:
            db.execute(
                update(Product)
                .where(Product.id == product.id)
                .values(
                    inventory_status=determine_inventory_status(
                        new_qty, product.low_stock_threshold
                    ).value
                )
                .execution_options(synchronize_session=False)
            )

        db.add(
            InventoryLog(
                id=uuid4().hex,
                store_id=store_id,
                product_id=item.product_id,
                variant_id=item.variant_id,
                previous_qty=new_qty + item.quantity,
                new_qty=new_qty,
                change_qty=-item.quantity,
                reason="Sale",
                note=f"Order {order_number}" if order_number else None,
            )
        )
        logger.debug(
            "stock_reserved",
            store_id=store_id,
            product_id=item.product_id,
            variant_id=item.variant_id,
            quantity=item.quantity,
            remaining=new_qty,
        )


def restore_stock(
    db: Session,
    store_id: str,
    items: Iterable[OrderItem],
    order_number: str,
    reason: str,
) -> None:
    """Add stock back for tracked items of a canceled order. Deleted products are skipped."""

    for item in items:
        product = db.execute(
            select(Product)
            .where(Product.id == item.product_id, Product.store_id == store_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if product is None:
            continue

        if item.variant_id is None:
            if not product.track_inventory:
                continue
            db.execute(
                update(Product)
                .where(Product.id == product.id)
                .values(inventory_qty=Product.inventory_qty + item.quantity)
                .execution_options(synchronize_session=False)
            )
            new_qty = _current_qty(db, product, None)
            db.execute(
                update(Product)
                .where(Product.id == product.id)
                .values(
                    inventory_status=determine_inventory_status(
                        new_qty, product.low_stock_threshold
                    ).value
                )
                .execution_options(synchronize_session=False)
            )
        else:
            variant = db.get(ProductVariant, item.variant_id)
            if variant is None:
                continue
            tracked = product.track_inventory if variant.track_inventory is None else variant.track_inventory
            if not tracked:
                continue
            db.execute(
                update(ProductVariant)
                .where(ProductVariant.id == variant.id)
                .values(stock=ProductVariant.stock + item.quantity)
                .execution_options(synchronize_session=False)
            )
            new_qty = _current_qty(db, product, item.variant_id)

        db.add(
            InventoryLog(
                id=uuid4().hex,
                store_id=store_id,
                product_id=item.product_id,
                variant_id=item.variant_id,
                previous_qty=new_qty - item.quantity,
                new_qty=new_qty,
                change_qty=item.quantity,
                reason=reason,
                note=f"Order {order_number}",
            )
        )


def _current_qty(db: Session, product: Product, variant_id: str | None) -> int:
    if variant_id is None:
        return db.execute(
            select(Product.inventory_qty).where(Product.id == product.id)
        ).scalar_one()
    return db.execute(
        select(ProductVariant.stock).where(ProductVariant.id == variant_id)
    ).scalar_one()
