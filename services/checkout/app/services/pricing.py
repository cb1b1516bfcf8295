from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

from services.checkout.app.log import get_logger
from services.checkout.app.services.catalog import Catalog, CatalogProduct
from services.checkout.app.services.checkout_base import (
    NO_DISCOUNT,
    CartLineItem,
    CheckoutPricing,
    CheckoutValidationError,
    InvalidShippingMethodError,
    PricedLineItem,
    ProductNotFoundError,
)
from services.checkout.app.services.discounts import allocate_discount, evaluate_coupon
from services.checkout.app.services.tax import TaxStrategy, tax_strategy_for_store

logger = get_logger("pricing")


class PricingCalculator:
    """Recomputes every monetary value of a checkout from current catalog state.

    Client-submitted prices are never an input. All arithmetic is in integer minor units:
    tax is rounded half-up per line and then summed.
    """

    def __init__(self, catalog: Catalog, tax_strategy: TaxStrategy | None = None) -> None:
        self._catalog = catalog
        self._tax_strategy = tax_strategy

    def calculate(
        self,
        store_id: str,
        line_items: Sequence[CartLineItem],
        shipping_method_id: str,
        discount_code: str | None = None,
        shipping_region: str | None = None,
        now: datetime | None = None,
    ) -> CheckoutPricing:
        if not line_items:
            raise CheckoutValidationError("Cart cannot be empty")

        store = self._catalog.get_store(store_id)
        if store is None:
            raise CheckoutValidationError(f"Unknown store {store_id}", {"store_id": store_id})

        resolved: list[tuple[CartLineItem, CatalogProduct]] = []
        for line in line_items:
            if line.quantity <= 0:
                raise CheckoutValidationError(
                    f"Invalid quantity for product {line.product_id}",
                    {"product_id": line.product_id, "quantity": line.quantity},
                )
            product = self._catalog.get_product(store_id, line.product_id, line.variant_id)
            if product is None:
                raise ProductNotFoundError(line.product_id, line.variant_id)
            resolved.append((line, product))

        line_subtotals = [product.price * line.quantity for line, product in resolved]
        subtotal = sum(line_subtotals)

        shipping = self._catalog.get_shipping_method(store_id, shipping_method_id)
        if shipping is None:
            raise InvalidShippingMethodError(shipping_method_id)
        shipping_total = shipping.cost
        if shipping.free_shipping_threshold is not None and subtotal >= shipping.free_shipping_threshold:
            shipping_total = 0

        discount = NO_DISCOUNT
        if discount_code:
            coupon = self._catalog.get_coupon(store_id, discount_code)
            discount = evaluate_coupon(coupon, discount_code, subtotal, now=now)
            if discount.rejected:
                logger.info(
                    "discount_rejected",
                    store_id=store_id,
                    code=discount.code,
                    reason=discount.reason,
                )

        line_discounts = allocate_discount(discount.amount, line_subtotals)
        tax_strategy = self._tax_strategy or tax_strategy_for_store(store)

        items: list[PricedLineItem] = []
        for (line, product), line_subtotal, line_discount in zip(
            resolved, line_subtotals, line_discounts
        ):
            line_tax = tax_strategy.line_tax(line_subtotal - line_discount, region=shipping_region)
            items.append(
                PricedLineItem(
                    product_id=product.product_id,
                    variant_id=product.variant_id,
                    product_name=product.name,
                    variant_name=product.variant_name,
                    sku=product.sku,
                    quantity=line.quantity,
                    unit_price=product.price,
                    line_subtotal=line_subtotal,
                    line_discount=line_discount,
                    line_tax=line_tax,
                    line_total=line_subtotal - line_discount + line_tax,
                    available_stock=product.stock,
                    track_inventory=product.track_inventory,
                )
            )

        tax_total = sum(item.line_tax for item in items)
        discount_total = discount.amount
        grand_total = subtotal + tax_total + shipping_total - discount_total

        return CheckoutPricing(
            store_id=store_id,
            items=items,
            subtotal=subtotal,
            tax_total=tax_total,
            shipping_total=shipping_total,
            discount_total=discount_total,
            grand_total=grand_total,
            currency=store.currency,
            shipping_method_id=shipping.shipping_method_id,
            discount=discount,
        )
