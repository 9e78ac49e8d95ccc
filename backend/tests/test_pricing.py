from datetime import date
from decimal import Decimal

import pytest
from fastapi import HTTPException

from backend.posengine.models import Customer, CustomerPriceOverride, Product
from backend.posengine.pricing import PriceResolver, overrides_by_product, resolve_price


def _product(**kw):
    base = dict(
        product_id="P1",
        name="Olive Oil",
        retail_price=Decimal("10"),
        wholesale_price=Decimal("8"),
        second_unit="box",
        units_per_second=Decimal("12"),
        box_retail_price=Decimal("110"),
        box_wholesale_price=Decimal("90"),
    )
    base.update(kw)
    return Product(**base)


def test_wholesale_customer_without_override_gets_wholesale_price():
    price = resolve_price(_product(), "base", Customer(customer_id="C1", customer_type="wholesale"))
    assert price.unit_price == Decimal("8")
    assert price.is_special is False


def test_customer_type_is_normalized():
    price = resolve_price(_product(), "box", Customer(customer_id="C1", customer_type=" Wholesale "))
    assert price.unit_price == Decimal("90")


def test_no_customer_gets_retail_and_ignores_overrides():
    ov = {"P1": CustomerPriceOverride(product_id="P1", special_price=Decimal("5"), has_special_price=True)}
    price = resolve_price(_product(), "base", None, ov)
    assert price == (Decimal("10"), False)


def test_special_price_wins_per_unit_type():
    c = Customer(customer_id="C1", customer_type="wholesale")
    ov = {
        "P1": CustomerPriceOverride(
            product_id="P1",
            special_price=Decimal("7"),
            has_special_price=True,
            box_special_price=Decimal("60"),
            has_box_special_price=False,
        )
    }
    assert resolve_price(_product(), "base", c, ov) == (Decimal("7"), True)
    # Box special price is not flagged, so the wholesale box column applies.
    assert resolve_price(_product(), "second", c, ov) == (Decimal("90"), False)


def test_second_unit_requires_product_to_offer_one():
    with pytest.raises(HTTPException) as exc_info:
        resolve_price(_product(second_unit=None), "second")
    assert exc_info.value.status_code == 400


def test_overrides_filtered_by_activity_and_date_window():
    rows = [
        CustomerPriceOverride(product_id="P1", special_price=Decimal("7"), has_special_price=True, is_active=False),
        CustomerPriceOverride(
            product_id="P2",
            special_price=Decimal("3"),
            has_special_price=True,
            start_date=date(2026, 1, 1),
            end_date=date(2026, 1, 31),
        ),
        CustomerPriceOverride(product_id="P3", special_price=Decimal("4"), has_special_price=True),
    ]
    assert set(overrides_by_product(rows, on=date(2026, 1, 15))) == {"P2", "P3"}
    assert set(overrides_by_product(rows, on=date(2026, 2, 1))) == {"P3"}


def test_price_resolver_binds_customer():
    c = Customer(customer_id="C1", customer_type="retail")
    ov = {"P1": CustomerPriceOverride(product_id="P1", special_price=Decimal("9.5"), has_special_price=True)}
    resolver = PriceResolver(c, ov)
    assert resolver(_product()) == (Decimal("9.5"), True)
    assert resolver(_product(product_id="P2")) == (Decimal("10"), False)
