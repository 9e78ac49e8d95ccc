from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Iterable, Optional

from fastapi import HTTPException

from .cart import Cart
from .catalog import Catalog
from .logs import json_log
from .models import Customer, CustomerPriceOverride, SaleRequest, SaleResult
from .money import RateBook, dec
from .payments import PaymentAllocator, assert_split_cash
from .pricing import PriceResolver, overrides_by_product
from .returns import ReturnExchange
from .sinks import SaleSink, call_sink, try_sink
from .validation import PaymentType, SalesMode, coerce


class PosSession:
    """
    One register's in-progress work. The caller owns it; nothing here is shared
    between registers.
    """

    def __init__(self, rates: RateBook, catalog: Optional[Catalog] = None, warehouse_id: Optional[str] = None):
        self.rates = rates
        self.catalog = catalog or Catalog()
        self.warehouse_id = warehouse_id
        self.mode: str = "sale"
        self.customer: Optional[Customer] = None
        self.resolver = PriceResolver()
        self.cart = Cart(rates, self.resolver)
        self._allocator = PaymentAllocator(rates, self.cart.summary)
        self.returns = ReturnExchange(rates)
        self.notes: Optional[str] = None
        self.loaded_quote_id: Optional[str] = None

    @property
    def allocator(self) -> PaymentAllocator:
        self._allocator.refresh(self.cart.summary)
        return self._allocator

    def set_customer(
        self,
        customer: Optional[Customer],
        overrides: Iterable[CustomerPriceOverride] = (),
        on: Optional[date] = None,
    ) -> None:
        """Select (or clear) the sale customer; open sale lines are repriced for the new tier."""
        self.customer = customer
        self.resolver = PriceResolver(customer, overrides_by_product(overrides, on) if customer else None, on)
        self.cart.set_resolver(self.resolver)

    def switch_mode(self, mode: SalesMode) -> None:
        m = coerce(SalesMode, mode, field="mode")
        if m == self.mode:
            return
        if self.mode == "sale":
            self._reset_sale()
        else:
            self.returns.reset()
        self.mode = m

    def _reset_sale(self) -> None:
        self.cart.clear()
        self._allocator.clear()
        self.notes = None
        self.loaded_quote_id = None

    def build_sale_request(self, payment_type: PaymentType, cash_amount=None) -> SaleRequest:
        if self.mode != "sale":
            raise HTTPException(status_code=400, detail="register is in return mode")
        wh = str(self.warehouse_id or "").strip()
        if not wh:
            raise HTTPException(status_code=400, detail="warehouse is required")
        if not self.cart:
            raise HTTPException(status_code=400, detail="cart is empty")

        pt = coerce(PaymentType, payment_type, field="payment_type")
        allocator = self.allocator
        due = allocator.amount_due
        if pt == "split" and not allocator.tendered():
            assert_split_cash(dec(cash_amount, "cash_amount"), due.amount)
        settlement = allocator.settle(pt, cash_amount)
        if (pt == "credit" or settlement.credit_amount > 0) and self.customer is None:
            raise HTTPException(status_code=400, detail="a customer is required for credit")

        return SaleRequest(
            customer_id=self.customer.customer_id if self.customer else None,
            warehouse_id=wh,
            payment_type=pt,
            amount_due=settlement.amount_due,
            amount_due_currency=settlement.currency,
            paid_amount=settlement.paid,
            credit_amount=settlement.credit_amount,
            change_amount=settlement.change_amount,
            discount_amount=self.cart.summary.discount,
            tax_amount=Decimal("0"),
            notes=(self.notes or "").strip() or None,
            quote_id=self.loaded_quote_id,
            payment_currencies=settlement.payment_currencies,
            exchange_rate_snapshot=self.rates.snapshot(),
            lines=self.cart.payload(),
        )


def submit_sale(session: PosSession, sink: SaleSink, payment_type: PaymentType, cash_amount=None) -> SaleResult:
    req = session.build_sale_request(payment_type, cash_amount)
    raw = call_sink(lambda: sink.submit_sale(req), "pos.sale.submit_failed", warehouse_id=req.warehouse_id)
    result = raw if isinstance(raw, SaleResult) else SaleResult.model_validate(raw)
    json_log(
        "info",
        "pos.sale.submitted",
        order_id=result.order_id,
        order_number=result.order_number,
        payment_type=req.payment_type,
        amount_due=req.amount_due,
        currency=req.amount_due_currency,
        lines=len(req.lines),
    )

    quote_id = session.loaded_quote_id
    if quote_id:
        try_sink(
            lambda: sink.mark_quote_converted(quote_id, result.order_id),
            "pos.quote.convert_failed",
            quote_id=quote_id,
            order_id=result.order_id,
        )

    session._reset_sale()
    session.set_customer(None)
    return result
