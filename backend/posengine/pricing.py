from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Iterable, Mapping, NamedTuple, Optional

from fastapi import HTTPException

from .models import Customer, CustomerPriceOverride, Product
from .validation import PricingTier, UnitType, coerce


class ResolvedPrice(NamedTuple):
    unit_price: Decimal
    is_special: bool


def pricing_tier(customer: Optional[Customer]) -> PricingTier:
    if customer is None:
        return "retail"
    return "wholesale" if (customer.customer_type or "").strip().lower() == "wholesale" else "retail"


def overrides_by_product(rows: Iterable[CustomerPriceOverride], on: Optional[date] = None) -> dict[str, CustomerPriceOverride]:
    """Index a customer's special prices by product id, keeping only rows effective on `on`."""
    day = on or date.today()
    out: dict[str, CustomerPriceOverride] = {}
    for r in rows:
        if not r.effective_on(day):
            continue
        out[r.product_id] = r
    return out


def tier_price(product: Product, unit_type: str, tier: str) -> Decimal:
    # Box prices are their own catalog columns; never derive them from the piece price.
    if unit_type == "second":
        return product.box_wholesale_price if tier == "wholesale" else product.box_retail_price
    return product.wholesale_price if tier == "wholesale" else product.retail_price


def _special_price(ov: Optional[CustomerPriceOverride], unit_type: str, on: date) -> Optional[Decimal]:
    if ov is None or not ov.effective_on(on):
        return None
    if unit_type == "second":
        return ov.box_special_price if ov.has_box_special_price else None
    return ov.special_price if ov.has_special_price else None


def resolve_price(
    product: Product,
    unit_type: UnitType = "base",
    customer: Optional[Customer] = None,
    overrides: Optional[Mapping[str, CustomerPriceOverride]] = None,
    on: Optional[date] = None,
) -> ResolvedPrice:
    """
    Unit price for one product/unit type:
    - a customer special price for that unit type wins (is_special=True)
    - otherwise the wholesale or retail column, by the customer's tier
    - no customer: retail, never special
    """
    ut = coerce(UnitType, unit_type, field="unit_type")
    if ut == "second" and not product.offers_second_unit:
        raise HTTPException(status_code=400, detail=f"product {product.product_id} has no second unit")

    if customer is not None and overrides:
        special = _special_price(overrides.get(product.product_id), ut, on or date.today())
        if special is not None:
            return ResolvedPrice(special, True)

    return ResolvedPrice(tier_price(product, ut, pricing_tier(customer)), False)


class PriceResolver:
    """Binds the active customer and their special prices so baskets can resolve lines with one call."""

    def __init__(
        self,
        customer: Optional[Customer] = None,
        overrides: Optional[Mapping[str, CustomerPriceOverride]] = None,
        on: Optional[date] = None,
    ):
        self.customer = customer
        self.overrides = dict(overrides or {}) if customer is not None else {}
        self.on = on

    def __call__(self, product: Product, unit_type: UnitType = "base") -> ResolvedPrice:
        return resolve_price(product, unit_type, self.customer, self.overrides, self.on)
