"""
Rounding policy and currency conversion.

All engine arithmetic keeps full Decimal precision; values are quantized only
when they are shown (receipts, status messages) via `display`/`q3`. Every
conversion goes through the base currency: amount_in_base = amount / rate.
"""
from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Iterable, Optional

from fastapi import HTTPException

from .config import settings
from .logs import json_log
from .models import CurrencyRate

ZERO = Decimal("0")
ONE = Decimal("1")
Q3 = Decimal("0.001")
Q4 = Decimal("0.0001")
# Tolerance used when comparing collected funds against an amount due.
MONEY_EPSILON = Decimal("0.001")


def dec(v, field: str = "amount") -> Decimal:
    """Decimal from user or collaborator input; blank is 0, anything non-numeric is HTTP 400."""
    if v is None or (isinstance(v, str) and v.strip() == ""):
        return ZERO
    try:
        out = v if isinstance(v, Decimal) else Decimal(str(v).strip())
    except InvalidOperation:
        raise HTTPException(status_code=400, detail=f"invalid {field}: {v!r}")
    if not out.is_finite():
        raise HTTPException(status_code=400, detail=f"invalid {field}: {v!r}")
    return out


def q3(v: Decimal) -> Decimal:
    return (v or ZERO).quantize(Q3, rounding=ROUND_HALF_UP)


def q4(v: Decimal) -> Decimal:
    return (v or ZERO).quantize(Q4, rounding=ROUND_HALF_UP)


def display(v: Decimal, dp: Optional[int] = None) -> str:
    places = settings.money_display_dp if dp is None else dp
    exp = Decimal(1).scaleb(-places)
    return str((v or ZERO).quantize(exp, rounding=ROUND_HALF_UP))


class RateBook:
    """Exchange rates keyed by currency code, anchored on exactly one base currency."""

    def __init__(self, rates: Iterable[CurrencyRate] = ()):
        self._rates: dict[str, CurrencyRate] = {}
        bases = []
        for r in rates:
            self._rates[r.code] = r
            if r.is_base:
                bases.append(r.code)
        if len(bases) > 1:
            raise HTTPException(status_code=400, detail=f"multiple base currencies: {', '.join(sorted(bases))}")
        self.base_code = bases[0] if bases else settings.base_currency

    def __contains__(self, code: str) -> bool:
        return code in self._rates

    def active_codes(self) -> list[str]:
        return [c for c, r in self._rates.items() if r.is_active]

    def rate(self, code: Optional[str]) -> Decimal:
        cur = (code or self.base_code).upper()
        if cur == self.base_code:
            return ONE
        r = self._rates.get(cur)
        if r is None or r.exchange_rate <= 0:
            # Same fallback the register uses: an unknown currency trades at par.
            json_log("warning", "fx.rate.missing", currency=cur, base_currency=self.base_code)
            return ONE
        return r.exchange_rate

    def to_base(self, amount: Decimal, code: Optional[str]) -> Decimal:
        return amount / self.rate(code)

    def from_base(self, amount: Decimal, code: Optional[str]) -> Decimal:
        return amount * self.rate(code)

    def convert(self, amount: Decimal, from_code: Optional[str], to_code: Optional[str]) -> Decimal:
        if (from_code or self.base_code) == (to_code or self.base_code):
            return amount
        return self.from_base(self.to_base(amount, from_code), to_code)

    def snapshot(self) -> dict[str, Decimal]:
        out = {c: r.exchange_rate for c, r in self._rates.items()}
        out[self.base_code] = ONE
        return out
