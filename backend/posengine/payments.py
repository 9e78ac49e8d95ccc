from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from fastapi import HTTPException

from .cart import AmountDue, CartSummary
from .models import CurrencyAmount
from .money import MONEY_EPSILON, ZERO, RateBook, dec
from .validation import CurrencyCode, PaymentType, coerce


@dataclass
class Allocation:
    currency: str
    selected: bool = True
    amount: Decimal = ZERO


@dataclass
class Settlement:
    payment_type: str
    amount_due: Decimal
    currency: str
    paid: Decimal
    credit_amount: Decimal = ZERO
    change_amount: Decimal = ZERO
    payment_currencies: list[CurrencyAmount] = field(default_factory=list)


def available_currencies(rates: RateBook, summary: CartSummary) -> list[str]:
    """Basket currencies first, then every other active currency."""
    out = [g.currency for g in summary.groups]
    for code in rates.active_codes():
        if code not in out:
            out.append(code)
    return out


def assert_split_cash(cash: Decimal, total: Decimal) -> None:
    if cash <= 0 or cash >= total:
        raise HTTPException(status_code=400, detail="split payment needs a cash amount above 0 and below the total")


class PaymentAllocator:
    """
    Per-currency tender for one sale. Suggestions are made only when a
    currency is toggled on; manual amounts are never re-suggested afterwards.
    """

    def __init__(self, rates: RateBook, summary: Optional[CartSummary] = None):
        self.rates = rates
        self.allocations: dict[str, Allocation] = {}
        self.summary = summary or CartSummary(amount_due=AmountDue(ZERO, rates.base_code))

    def refresh(self, summary: CartSummary) -> None:
        self.summary = summary

    @property
    def amount_due(self) -> AmountDue:
        return self.summary.amount_due

    @property
    def required_in_base(self) -> Decimal:
        due = self.amount_due
        return self.rates.to_base(due.amount, due.currency)

    def _in_currency(self, amount_in_base: Decimal, code: str) -> Decimal:
        due = self.amount_due
        # Paying the whole due in its own currency must not pick up conversion noise.
        if code == due.currency and amount_in_base == self.required_in_base:
            return due.amount
        return self.rates.from_base(amount_in_base, code)

    def toggle(self, code, selected: bool = True) -> Optional[Allocation]:
        cur = coerce(CurrencyCode, code, field="currency")
        if not selected:
            self.allocations.pop(cur, None)
            return None

        self.allocations[cur] = Allocation(currency=cur)
        others = [a for c, a in self.allocations.items() if c != cur and a.selected]
        if not others:
            self.allocations[cur].amount = self._in_currency(self.required_in_base, cur)
            return self.allocations[cur]

        covered = ZERO
        for a in others:
            group = self.summary.group(a.currency)
            if group is not None:
                # Currencies carried by the basket are reset to their own basket total.
                a.amount = group.total
            covered += self.rates.to_base(a.amount, a.currency)
        remainder = self.required_in_base - covered
        if remainder < 0:
            remainder = ZERO
        self.allocations[cur].amount = self.rates.from_base(remainder, cur)
        return self.allocations[cur]

    def set_amount(self, code, amount) -> Allocation:
        cur = coerce(CurrencyCode, code, field="currency")
        a = self.allocations.get(cur)
        if a is None or not a.selected:
            raise HTTPException(status_code=400, detail=f"currency {cur} is not selected")
        a.amount = dec(amount)
        return a

    def selected(self) -> list[Allocation]:
        return [a for a in self.allocations.values() if a.selected]

    def tendered(self) -> list[Allocation]:
        return [a for a in self.selected() if a.amount > 0]

    def collected_in_base(self) -> Decimal:
        return sum((self.rates.to_base(a.amount, a.currency) for a in self.tendered()), ZERO)

    def clear(self) -> None:
        self.allocations = {}

    def resolve_paid_amount(self, payment_type: PaymentType, cash_amount=None) -> Decimal:
        """
        Paid amount at submission, in the amount-due currency:
        - credit: nothing collected now
        - explicit currency tender: sum of tenders through the base currency
        - cash: the whole amount due
        - split: the cash amount typed by the cashier
        """
        pt = coerce(PaymentType, payment_type, field="payment_type")
        if pt == "credit":
            return ZERO
        if self.tendered():
            return self._in_currency(self.collected_in_base(), self.amount_due.currency)
        if pt == "cash":
            return self.amount_due.amount
        return dec(cash_amount, "cash_amount")

    def payment_currencies(self) -> list[CurrencyAmount]:
        tendered = self.tendered()
        if tendered:
            return [CurrencyAmount(currency=a.currency, amount=a.amount) for a in tendered]
        return [CurrencyAmount(currency=g.currency, amount=g.total) for g in self.summary.groups]

    def settle(self, payment_type: PaymentType, cash_amount=None) -> Settlement:
        pt = coerce(PaymentType, payment_type, field="payment_type")
        due = self.amount_due
        paid = self.resolve_paid_amount(pt, cash_amount)
        balance = due.amount - paid
        eps = self.rates.from_base(MONEY_EPSILON, due.currency)
        return Settlement(
            payment_type=pt,
            amount_due=due.amount,
            currency=due.currency,
            paid=paid,
            credit_amount=balance if balance > eps else ZERO,
            change_amount=-balance if balance < -eps else ZERO,
            payment_currencies=self.payment_currencies(),
        )
