from __future__ import annotations

from datetime import datetime, timezone

from packages.shared.schemas.order_v1 import DiscountTypeV1
from services.checkout.app.db.models import Coupon
from services.checkout.app.services.checkout_base import NO_DISCOUNT, DiscountOutcome
from services.checkout.app.services.tax import round_half_up_bps


def evaluate_coupon(
    coupon: Coupon | None,
    code: str | None,
    subtotal: int,
    now: datetime | None = None,
) -> DiscountOutcome:
    """Check a discount code against the store's rules.

    An unusable code is not an error: the outcome is marked rejected with a reason and the
    checkout continues without a discount.
    """

    if code is None or not code.strip():
        return NO_DISCOUNT

    code = code.strip()
    now = now or datetime.utcnow()

    def reject(reason: str) -> DiscountOutcome:
        return DiscountOutcome(code=code, amount=0, applied=False, rejected=True, reason=reason)

    if coupon is None:
        return reject("unknown discount code")
    if not coupon.is_active:
        return reject("discount code is inactive")
    if coupon.valid_from is not None and now < _naive(coupon.valid_from):
        return reject("discount code is not active yet")
    if coupon.valid_to is not None and now > _naive(coupon.valid_to):
        return reject("discount code has expired")
    if coupon.usage_limit is not None and coupon.usage_count >= coupon.usage_limit:
        return reject("discount code usage limit reached")
    if coupon.min_order_value is not None and subtotal < coupon.min_order_value:
        return reject("order subtotal is below the discount minimum")

    if coupon.discount_type == DiscountTypeV1.PERCENTAGE.value:
        amount = round_half_up_bps(subtotal, coupon.discount_value)
    elif coupon.discount_type == DiscountTypeV1.FIXED.value:
        amount = max(0, coupon.discount_value)
    else:
        return reject(f"unsupported discount type {coupon.discount_type}")

    if coupon.max_discount is not None:
        amount = min(amount, coupon.max_discount)
    amount = min(amount, subtotal)

    return DiscountOutcome(
        code=coupon.code,
        amount=amount,
        applied=amount > 0,
        rejected=False,
        coupon_id=coupon.id,
    )


def allocate_discount(total: int, line_subtotals: list[int]) -> list[int]:
    """Split a discount across lines proportionally; the shares always sum to ``total``.

    Largest-remainder apportionment, so no line is discounted past its own subtotal.
    """

    base = sum(line_subtotals)
    if total <= 0 or base <= 0:
        return [0 for _ in line_subtotals]

    shares = [total * s // base for s in line_subtotals]
    remainders = [total * s % base for s in line_subtotals]
    leftover = total - sum(shares)

    by_remainder = sorted(range(len(shares)), key=lambda i: (-remainders[i], i))
    for i in by_remainder[:leftover]:
        shares[i] += 1
    return shares


def _naive(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; all stored timestamps are UTC.
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
