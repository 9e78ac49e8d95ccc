from __future__ import annotations

from decimal import Decimal
from typing import Iterable, Optional

from .models import Product, Variant

_PRICE_FIELDS = (
    "retail_price",
    "wholesale_price",
    "cost_price",
    "box_retail_price",
    "box_wholesale_price",
    "box_cost_price",
)


def apply_variant(product: Product, variant: Variant) -> Product:
    """
    Sellable snapshot for one variant:
    - price columns fall back to the parent's when the variant leaves them empty
    - stock is the variant's own quantity (0 when unknown)
    """
    patch = {f: (getattr(variant, f) if getattr(variant, f) is not None else getattr(product, f)) for f in _PRICE_FIELDS}
    label = variant.label
    return product.model_copy(
        update={
            **patch,
            "name": f"{product.name} - {label}",
            "sku": variant.sku or product.sku,
            "quantity": variant.quantity if variant.quantity is not None else Decimal("0"),
            "variant_id": variant.variant_id,
            "variant_name": label,
            "variants": [],
        }
    )


def flatten(products: Iterable[Product]) -> list[Product]:
    """Expand every product into its main entry plus one entry per variant, de-duplicated."""
    out: list[Product] = []
    seen: set[tuple[str, Optional[str]]] = set()
    expanded: set[str] = set()
    for p in products:
        main = p.model_copy(update={"variants": []})
        key = (main.product_id, main.variant_id)
        if key not in seen:
            seen.add(key)
            out.append(main)
        if p.variants and p.variant_id is None and p.product_id not in expanded:
            expanded.add(p.product_id)
            for v in p.variants:
                vp = apply_variant(p, v)
                vkey = (vp.product_id, vp.variant_id)
                if vkey in seen:
                    continue
                seen.add(vkey)
                out.append(vp)
    return out


class Catalog:
    """Products available at the selected location, as last fetched from the catalog collaborator."""

    def __init__(self, products: Iterable[Product] = ()):
        self._entries: dict[tuple[str, Optional[str]], Product] = {}
        for p in flatten(products):
            self._entries[(p.product_id, p.variant_id)] = p

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(self._entries.values())

    def get(self, product_id, variant_id=None) -> Optional[Product]:
        vid = str(variant_id).strip() if variant_id is not None else None
        return self._entries.get((str(product_id).strip(), vid))

    def has(self, product_id) -> bool:
        return self.get(product_id) is not None
