from decimal import Decimal

from backend.posengine.catalog import Catalog, flatten
from backend.posengine.models import Product, Variant


def _shirt():
    return Product(
        product_id="P1",
        name="Shirt",
        sku="SH",
        quantity=Decimal("10"),
        retail_price=Decimal("20"),
        wholesale_price=Decimal("15"),
        variants=[
            Variant(variant_id="V1", color="Red", size="M", retail_price=Decimal("22"), quantity=Decimal("4")),
            Variant(variant_id="V2"),
        ],
    )


def test_flatten_expands_variants_with_parent_fallbacks():
    out = flatten([_shirt()])
    assert [(p.product_id, p.variant_id) for p in out] == [("P1", None), ("P1", "V1"), ("P1", "V2")]

    red = out[1]
    assert red.name == "Shirt - Red M"
    assert red.retail_price == Decimal("22")
    assert red.wholesale_price == Decimal("15")
    assert red.quantity == Decimal("4")

    plain = out[2]
    assert plain.variant_name == "Variant V2"
    assert plain.quantity == Decimal("0")
    assert plain.sku == "SH"


def test_flatten_deduplicates_repeated_products():
    out = flatten([_shirt(), _shirt()])
    assert len(out) == 3


def test_catalog_lookup_by_product_and_variant():
    catalog = Catalog([_shirt()])
    assert len(catalog) == 3
    assert catalog.has("P1")
    assert catalog.get(" P1 ", "V1").variant_name == "Red M"
    assert catalog.get("P1", "V9") is None
    assert catalog.get("P2") is None
