from __future__ import annotations

from dataclasses import dataclass

from services.checkout.app.db.models import Coupon, Product, ProductVariant, ShippingMethod, Store
from sqlalchemy import func, select
from sqlalchemy.orm import Session


@dataclass(frozen=True, slots=True)
class CatalogProduct:
    product_id: str
    variant_id: str | None
    name: str
    variant_name: str | None
    sku: str
    price: int
    stock: int
    track_inventory: bool


@dataclass(frozen=True, slots=True)
class ShippingQuote:
    shipping_method_id: str
    name: str
    cost: int
    free_shipping_threshold: int | None


class Catalog:
    """Read-only, store-scoped view of catalog data used to price a checkout."""

    def __init__(self, db: Session) -> None:
        self._db = db

    def get_store(self, store_id: str) -> Store | None:
        return self._db.get(Store, store_id)

    def get_product(
        self,
        store_id: str,
        product_id: str,
        variant_id: str | None = None,
    ) -> CatalogProduct | None:
        product = self._db.execute(
            select(Product).where(
                Product.id == product_id,
                Product.store_id == store_id,
                Product.is_published.is_(True),
                Product.deleted_at.is_(None),
            )
        ).scalar_one_or_none()
        if product is None:
            return None

        if variant_id is None:
            return CatalogProduct(
                product_id=product.id,
                variant_id=None,
                name=product.name,
                variant_name=None,
                sku=product.sku,
                price=product.price,
                stock=product.inventory_qty,
                track_inventory=product.track_inventory,
            )

        variant = self._db.execute(
            select(ProductVariant).where(
                ProductVariant.id == variant_id,
                ProductVariant.product_id == product.id,
            )
        ).scalar_one_or_none()
        if variant is None:
            return None

        track = product.track_inventory if variant.track_inventory is None else variant.track_inventory
        return CatalogProduct(
            product_id=product.id,
            variant_id=variant.id,
            name=product.name,
            variant_name=variant.name,
            sku=variant.sku,
            price=product.price if variant.price is None else variant.price,
            stock=variant.stock,
            track_inventory=track,
        )

    def get_shipping_method(self, store_id: str, shipping_method_id: str) -> ShippingQuote | None:
        method = self._db.execute(
            select(ShippingMethod).where(
                ShippingMethod.id == shipping_method_id,
                ShippingMethod.store_id == store_id,
                ShippingMethod.is_active.is_(True),
            )
        ).scalar_one_or_none()
        if method is None:
            return None

        return ShippingQuote(
            shipping_method_id=method.id,
            name=method.name,
            cost=method.cost,
            free_shipping_threshold=method.free_shipping_threshold,
        )

    def get_coupon(self, store_id: str, code: str) -> Coupon | None:
        return self._db.execute(
            select(Coupon).where(
                Coupon.store_id == store_id,
                func.upper(Coupon.code) == code.strip().upper(),
            )
        ).scalar_one_or_none()
