from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, NamedTuple, Optional, Union

from .models import CatalogProduct, Product, ResolvedProduct, SaleLineOut
from .money import ZERO, RateBook, dec
from .pricing import PriceResolver
from .validation import UnitType, coerce

# (product_id, variant_id, unit_type)
LineKey = tuple[str, Optional[str], str]


@dataclass
class SaleLine:
    entry: ResolvedProduct
    unit_type: str
    quantity: Decimal
    unit_price: Decimal
    discount: Decimal = ZERO
    is_special: bool = False

    @property
    def product(self) -> Product:
        return self.entry.product

    @property
    def key(self) -> LineKey:
        return (self.product.product_id, self.product.variant_id, self.unit_type)

    @property
    def currency(self) -> str:
        return self.product.currency

    @property
    def subtotal(self) -> Decimal:
        return self.quantity * self.unit_price

    @property
    def total(self) -> Decimal:
        return self.subtotal - self.discount

    def to_payload(self) -> SaleLineOut:
        return SaleLineOut(
            product_id=self.product.product_id,
            variant_id=self.product.variant_id,
            unit_type=self.unit_type,
            quantity=self.quantity,
            unit_price=self.unit_price,
            discount_amount=self.discount,
            line_total=self.total,
            currency=self.currency,
            synthesized=self.entry.synthesized,
        )


@dataclass
class CurrencyGroup:
    currency: str
    subtotal: Decimal = ZERO
    discount: Decimal = ZERO
    total: Decimal = ZERO
    lines: int = 0


class AmountDue(NamedTuple):
    amount: Decimal
    currency: str


@dataclass
class CartSummary:
    groups: list[CurrencyGroup] = field(default_factory=list)
    subtotal: Decimal = ZERO
    discount: Decimal = ZERO
    total: Decimal = ZERO
    item_count: Decimal = ZERO
    total_in_base: Decimal = ZERO
    amount_due: AmountDue = AmountDue(ZERO, "")

    @property
    def is_multi_currency(self) -> bool:
        return len(self.groups) > 1

    def group(self, currency: str) -> Optional[CurrencyGroup]:
        return next((g for g in self.groups if g.currency == currency), None)


def summarize(lines: Iterable[SaleLine], rates: RateBook) -> CartSummary:
    s = CartSummary()
    by_cur: dict[str, CurrencyGroup] = {}
    for line in lines:
        g = by_cur.get(line.currency)
        if g is None:
            g = by_cur[line.currency] = CurrencyGroup(currency=line.currency)
            s.groups.append(g)
        g.subtotal += line.subtotal
        g.discount += line.discount
        g.total += line.total
        g.lines += 1
        s.subtotal += line.subtotal
        s.discount += line.discount
        s.total += line.total
        s.item_count += line.quantity

    s.total_in_base = sum((rates.to_base(g.total, g.currency) for g in s.groups), ZERO)
    if s.is_multi_currency:
        s.amount_due = AmountDue(s.total_in_base, rates.base_code)
    elif s.groups:
        # Single currency: the basket total is payable as-is, no conversion round trip.
        only = s.groups[0]
        s.amount_due = AmountDue(only.total, only.currency)
    else:
        s.amount_due = AmountDue(ZERO, rates.base_code)
    return s


class Cart:
    """
    Ordered sale lines for one in-progress sale (or the exchange side of a
    return). Every mutation recomputes `summary` before returning.
    """

    def __init__(self, rates: RateBook, resolver: Optional[PriceResolver] = None):
        self.rates = rates
        self.resolver = resolver or PriceResolver()
        self.lines: list[SaleLine] = []
        self.summary = summarize(self.lines, self.rates)

    def __len__(self) -> int:
        return len(self.lines)

    def __bool__(self) -> bool:
        return bool(self.lines)

    def _recompute(self) -> None:
        self.summary = summarize(self.lines, self.rates)

    def line(self, key: LineKey) -> Optional[SaleLine]:
        pid, vid, ut = key
        k = (str(pid), str(vid) if vid is not None else None, coerce(UnitType, ut, field="unit_type"))
        return next((l for l in self.lines if l.key == k), None)

    def add(self, product: Union[Product, ResolvedProduct], unit_type: UnitType = "base") -> SaleLine:
        entry = CatalogProduct(product) if isinstance(product, Product) else product
        ut = coerce(UnitType, unit_type, field="unit_type")
        existing = self.line((entry.product.product_id, entry.product.variant_id, ut))
        if existing is not None:
            existing.quantity += 1
            self._recompute()
            return existing

        price = self.resolver(entry.product, ut)
        line = SaleLine(
            entry=entry,
            unit_type=ut,
            quantity=Decimal("1"),
            unit_price=price.unit_price,
            is_special=price.is_special,
        )
        self.lines.append(line)
        self._recompute()
        return line

    def set_quantity(self, key: LineKey, quantity) -> Optional[SaleLine]:
        line = self.line(key)
        if line is None:
            return None
        qty = dec(quantity, "quantity")
        if qty <= 0:
            self.lines.remove(line)
            self._recompute()
            return None
        line.quantity = qty
        self._recompute()
        return line

    def change_quantity(self, key: LineKey, delta) -> Optional[SaleLine]:
        line = self.line(key)
        if line is None:
            return None
        return self.set_quantity(key, line.quantity + dec(delta, "quantity"))

    def remove(self, key: LineKey) -> None:
        line = self.line(key)
        if line is not None:
            self.lines.remove(line)
            self._recompute()

    def apply_discount(self, key: LineKey, amount) -> Optional[SaleLine]:
        # Only floored at zero: a discount above the line subtotal is accepted as-is.
        line = self.line(key)
        if line is None:
            return None
        d = dec(amount, "discount")
        line.discount = d if d > 0 else ZERO
        self._recompute()
        return line

    def set_resolver(self, resolver: PriceResolver) -> None:
        """Switch the active customer; every line is repriced, quantity and discount kept."""
        self.resolver = resolver
        for line in self.lines:
            price = resolver(line.product, line.unit_type)
            line.unit_price = price.unit_price
            line.is_special = price.is_special
        self._recompute()

    def replace_lines(self, lines: Iterable[SaleLine]) -> None:
        self.lines = [l for l in lines if l.quantity > 0]
        self._recompute()

    def clear(self) -> None:
        self.lines = []
        self._recompute()

    def payload(self) -> list[SaleLineOut]:
        return [l.to_payload() for l in self.lines]
