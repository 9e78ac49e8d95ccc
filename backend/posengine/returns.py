"""
Return/exchange reconciliation against a prior sale.

A `ReturnExchange` owns two baskets: units coming back from the loaded invoice
(capped per line at the returnable quantity) and replacement items sold from
the live catalog. Totals are recomputed on every mutation; the sign of the net
amount decides whether the store refunds or collects.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Literal, Mapping, NamedTuple, Optional, Union

from fastapi import HTTPException

from .cart import Cart, LineKey, SaleLine
from .config import settings
from .logs import json_log
from .models import (
    Customer,
    CustomerPriceOverride,
    OriginalSaleLine,
    PriorSale,
    Product,
    ResolvedProduct,
    ReturnExchangeRequest,
    ReturnExchangeResult,
    ReturnLineOut,
    StockMovement,
)
from .money import ZERO, RateBook, dec, display, q3
from .pricing import PriceResolver
from .sinks import ReturnExchangeSink, call_sink
from .validation import (
    CollectionMethod,
    Disposition,
    ItemCondition,
    RefundMethod,
    ReturnReason,
    UnitType,
    coerce,
)

Outcome = Literal["refund", "payment", "even"]
State = Literal["empty", "invoice_loaded", "editing"]


@dataclass
class ReturnLine:
    original: OriginalSaleLine
    quantity: Decimal
    reason: str = "customer_changed_mind"
    condition: str = "resellable"
    disposition: str = "restock"

    @property
    def line_id(self) -> str:
        return self.original.line_id

    @property
    def ceiling(self) -> Decimal:
        return self.original.returnable_qty

    @property
    def unit_price(self) -> Decimal:
        return self.original.effective_unit_price

    @property
    def total(self) -> Decimal:
        return self.quantity * self.unit_price

    @property
    def base_quantity(self) -> Decimal:
        if self.original.unit_type == "second":
            return self.quantity * self.original.units_per_second
        return self.quantity

    def to_payload(self) -> ReturnLineOut:
        return ReturnLineOut(
            product_id=self.original.product_id,
            original_line_id=self.line_id,
            unit_type=self.original.unit_type,
            quantity=self.quantity,
            unit_price=self.unit_price,
            line_total=self.total,
            reason=self.reason,
            condition=self.condition,
            disposition=self.disposition,
        )


def classify(net_amount: Decimal) -> Outcome:
    rounded = q3(net_amount)
    if rounded < 0:
        return "refund"
    if rounded > 0:
        return "payment"
    return "even"


class ReconciliationTotals(NamedTuple):
    return_total: Decimal
    exchange_total: Decimal
    net_amount: Decimal

    @property
    def outcome(self) -> Outcome:
        return classify(self.net_amount)

    @property
    def refund_amount(self) -> Decimal:
        return -self.net_amount if self.outcome == "refund" else ZERO

    @property
    def payment_amount(self) -> Decimal:
        return self.net_amount if self.outcome == "payment" else ZERO


def default_status_message(outcome: Outcome, amount: Decimal) -> str:
    if outcome == "refund":
        return f"Refund of {display(amount)} processed"
    if outcome == "payment":
        return f"Additional payment of {display(amount)} collected"
    return "Even exchange completed"


class ReturnExchange:
    def __init__(self, rates: RateBook):
        self.rates = rates
        self.sale: Optional[PriorSale] = None
        self.customer: Optional[Customer] = None
        self.returns: list[ReturnLine] = []
        self.exchange = Cart(rates)
        self.totals = ReconciliationTotals(ZERO, ZERO, ZERO)

    @property
    def state(self) -> State:
        if self.sale is None:
            return "empty"
        if self.returns or self.exchange:
            return "editing"
        return "invoice_loaded"

    @property
    def outcome(self) -> Outcome:
        return self.totals.outcome

    def _recompute(self) -> None:
        # Prior-sale lines carry no currency of their own; they are valued in base.
        rt = sum((l.total for l in self.returns), ZERO)
        et = self.exchange.summary.total_in_base
        self.totals = ReconciliationTotals(rt, et, et - rt)

    def _require_invoice(self) -> PriorSale:
        if self.sale is None:
            raise HTTPException(status_code=400, detail="no invoice loaded")
        return self.sale

    def load_invoice(
        self,
        sale: PriorSale,
        customer: Optional[Customer] = None,
        overrides: Optional[Mapping[str, CustomerPriceOverride]] = None,
    ) -> None:
        if self.sale is not None and self.sale.sale_id != sale.sale_id:
            self.returns = []
            self.exchange.clear()
        self.sale = sale
        self.customer = customer
        self.exchange.set_resolver(PriceResolver(customer, overrides))
        self._recompute()

    def reset(self) -> None:
        self.sale = None
        self.customer = None
        self.returns = []
        self.exchange = Cart(self.rates)
        self._recompute()

    # -- return basket ----------------------------------------------------

    def return_line(self, line_id) -> Optional[ReturnLine]:
        key = str(line_id).strip()
        return next((l for l in self.returns if l.line_id == key), None)

    def add_return(self, line_id, quantity=1) -> Optional[ReturnLine]:
        sale = self._require_invoice()
        original = sale.line(line_id)
        if original is None:
            raise HTTPException(status_code=400, detail=f"line {line_id} is not on invoice {sale.order_number}")
        qty = dec(quantity, "quantity")
        if qty <= 0 or qty > original.returnable_qty:
            return None

        existing = self.return_line(original.line_id)
        if existing is not None:
            existing.quantity = min(existing.quantity + qty, existing.ceiling)
            self._recompute()
            return existing

        line = ReturnLine(original=original, quantity=qty)
        self.returns.append(line)
        self._recompute()
        return line

    def update_return_quantity(self, line_id, quantity) -> Optional[ReturnLine]:
        line = self.return_line(line_id)
        if line is None:
            return None
        qty = dec(quantity, "quantity")
        if qty > line.ceiling:
            qty = line.ceiling
        if qty <= 0:
            self.returns.remove(line)
            self._recompute()
            return None
        line.quantity = qty
        self._recompute()
        return line

    def remove_return(self, line_id) -> None:
        line = self.return_line(line_id)
        if line is not None:
            self.returns.remove(line)
            self._recompute()

    def update_return_line(self, line_id, reason=None, condition=None, disposition=None) -> Optional[ReturnLine]:
        line = self.return_line(line_id)
        if line is None:
            return None
        if reason is not None:
            line.reason = coerce(ReturnReason, reason, field="reason")
        if condition is not None:
            line.condition = coerce(ItemCondition, condition, field="condition")
        if disposition is not None:
            line.disposition = coerce(Disposition, disposition, field="disposition")
        return line

    # -- exchange basket --------------------------------------------------

    def add_exchange(self, product: Union[Product, ResolvedProduct], unit_type: UnitType = "base") -> SaleLine:
        self._require_invoice()
        line = self.exchange.add(product, unit_type)
        self._recompute()
        return line

    def change_exchange_quantity(self, key: LineKey, delta) -> Optional[SaleLine]:
        line = self.exchange.change_quantity(key, delta)
        self._recompute()
        return line

    def set_exchange_quantity(self, key: LineKey, quantity) -> Optional[SaleLine]:
        line = self.exchange.set_quantity(key, quantity)
        self._recompute()
        return line

    def remove_exchange(self, key: LineKey) -> None:
        self.exchange.remove(key)
        self._recompute()

    # -- submission -------------------------------------------------------

    def _stock_movements(self) -> list[StockMovement]:
        out: list[StockMovement] = []
        for l in self.returns:
            if l.disposition == "restock":
                out.append(StockMovement(product_id=l.original.product_id, movement_type="restock", quantity=l.base_quantity))
        for l in self.exchange.lines:
            out.append(
                StockMovement(
                    product_id=l.product.product_id,
                    variant_id=l.product.variant_id,
                    movement_type="exchange_out",
                    quantity=-l.product.base_quantity(l.quantity, l.unit_type),
                )
            )
        return out

    def build_request(
        self,
        warehouse_id,
        refund_method: Optional[RefundMethod] = None,
        payment_method: Optional[CollectionMethod] = None,
        notes: Optional[str] = None,
    ) -> ReturnExchangeRequest:
        sale = self._require_invoice()
        wh = str(warehouse_id or "").strip()
        if not wh:
            raise HTTPException(status_code=400, detail="warehouse is required")
        if not self.returns and not self.exchange:
            raise HTTPException(status_code=400, detail="return basket is empty")
        for l in self.returns:
            if l.quantity > l.ceiling:
                raise HTTPException(status_code=400, detail=f"line {l.line_id} exceeds its returnable quantity")

        t = self.totals
        customer_id = sale.customer_id or (self.customer.customer_id if self.customer else None)
        rm: Optional[str] = None
        pm: Optional[str] = None
        delta = ZERO
        if t.outcome == "refund":
            if refund_method is None:
                raise HTTPException(status_code=400, detail="refund method is required")
            rm = coerce(RefundMethod, refund_method, field="refund_method")
            if rm == "store_credit":
                if not customer_id:
                    raise HTTPException(status_code=400, detail="store credit needs a customer")
                delta = -t.refund_amount
        elif t.outcome == "payment":
            if payment_method is None:
                raise HTTPException(status_code=400, detail="payment method is required")
            pm = coerce(CollectionMethod, payment_method, field="payment_method")
            if pm == "credit":
                if not customer_id:
                    raise HTTPException(status_code=400, detail="credit payment needs a customer")
                delta = t.payment_amount

        return ReturnExchangeRequest(
            original_sale_id=sale.sale_id,
            original_order_number=sale.order_number,
            warehouse_id=wh,
            customer_id=customer_id,
            outcome=t.outcome,
            refund_method=rm,
            payment_method=pm,
            notes=(notes or "").strip() or None,
            return_lines=[l.to_payload() for l in self.returns],
            exchange_lines=self.exchange.payload(),
            return_total=t.return_total,
            exchange_total=t.exchange_total,
            net_amount=t.net_amount,
            refund_amount=t.refund_amount,
            payment_amount=t.payment_amount,
            requires_approval=t.refund_amount > settings.refund_approval_threshold,
            customer_balance_delta=delta,
            stock_movements=self._stock_movements(),
        )

    def submit(
        self,
        sink: ReturnExchangeSink,
        warehouse_id,
        refund_method: Optional[RefundMethod] = None,
        payment_method: Optional[CollectionMethod] = None,
        notes: Optional[str] = None,
    ) -> ReturnExchangeResult:
        req = self.build_request(warehouse_id, refund_method, payment_method, notes)
        raw = call_sink(
            lambda: sink.submit_return_exchange(req),
            "pos.return_exchange.submit_failed",
            original_order_number=req.original_order_number,
        )
        result = raw if isinstance(raw, ReturnExchangeResult) else ReturnExchangeResult.model_validate(raw)
        if not result.message:
            amount = req.refund_amount if req.outcome == "refund" else req.payment_amount
            result = result.model_copy(update={"message": default_status_message(req.outcome, amount)})

        json_log(
            "info",
            "pos.return_exchange.submitted",
            transaction_id=result.transaction_id,
            transaction_number=result.transaction_number,
            original_order_number=req.original_order_number,
            outcome=req.outcome,
            net_amount=req.net_amount,
            requires_approval=req.requires_approval,
        )
        self.reset()
        return result
