from __future__ import annotations

from typing import Protocol

from services.checkout.app.db.models import Store


def round_half_up_bps(amount: int, rate_bps: int) -> int:
    """Return amount * rate_bps / 10000 rounded half-up, in integer minor units."""

    if amount <= 0 or rate_bps <= 0:
        return 0
    return (amount * rate_bps + 5_000) // 10_000


class TaxStrategy(Protocol):
    name: str

    def line_tax(self, taxable_amount: int, *, region: str | None = None) -> int: ...


class NoTax:
    name = "none"

    def line_tax(self, taxable_amount: int, *, region: str | None = None) -> int:
        del taxable_amount, region
        return 0


class FlatRateTax:
    name = "flat"

    def __init__(self, rate_bps: int) -> None:
        if rate_bps < 0:
            raise ValueError("rate_bps must be non-negative")
        self.rate_bps = rate_bps

    def line_tax(self, taxable_amount: int, *, region: str | None = None) -> int:
        del region
        return round_half_up_bps(taxable_amount, self.rate_bps)


class RegionRateTax:
    """Rate looked up by the shipping address region (state/province code)."""

    name = "region"

    def __init__(self, rates_bps: dict[str, int], default_bps: int = 0) -> None:
        self.rates_bps = {k.strip().upper(): int(v) for k, v in rates_bps.items()}
        self.default_bps = default_bps

    def line_tax(self, taxable_amount: int, *, region: str | None = None) -> int:
        rate = self.rates_bps.get((region or "").strip().upper(), self.default_bps)
        return round_half_up_bps(taxable_amount, rate)


def tax_strategy_for_store(store: Store) -> TaxStrategy:
    mode = (store.tax_mode or "none").strip().lower()

    if mode == "none":
        return NoTax()

    if mode == "flat":
        return FlatRateTax(store.tax_rate_bps or 0)

    if mode == "region":
        return RegionRateTax(store.tax_region_rates_json or {}, default_bps=store.tax_rate_bps or 0)

    raise ValueError(f"Unknown tax_mode={mode!r} for store {store.id}. Expected none, flat or region.")
