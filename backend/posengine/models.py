"""
Snapshots consumed from the catalog/customer/currency/prior-sale/quote
collaborators, and the payloads the engine hands to the submission sinks.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, Field

from .config import settings
from .validation import (
    CollectionMethod,
    CurrencyCode,
    Disposition,
    Ident,
    ItemCondition,
    PaymentType,
    RefundMethod,
    ReturnReason,
    UnitType,
)


def _default_currency() -> str:
    return settings.base_currency


class CurrencyRate(BaseModel):
    code: CurrencyCode
    exchange_rate: Decimal = Decimal("1")
    is_base: bool = False
    is_active: bool = True


class Variant(BaseModel):
    variant_id: Ident
    sku: Optional[str] = None
    color: Optional[str] = None
    size: Optional[str] = None
    retail_price: Optional[Decimal] = None
    wholesale_price: Optional[Decimal] = None
    cost_price: Optional[Decimal] = None
    box_retail_price: Optional[Decimal] = None
    box_wholesale_price: Optional[Decimal] = None
    box_cost_price: Optional[Decimal] = None
    quantity: Optional[Decimal] = None

    @property
    def label(self) -> str:
        attrs = [a for a in (self.color, self.size) if a]
        return " ".join(attrs) if attrs else f"Variant {self.variant_id}"


class Product(BaseModel):
    product_id: Ident
    name: str = ""
    sku: Optional[str] = None
    currency: CurrencyCode = Field(default_factory=_default_currency)
    quantity: Decimal = Decimal("0")
    base_unit: str = "piece"
    second_unit: Optional[str] = None
    units_per_second: Decimal = Decimal("1")
    retail_price: Decimal = Decimal("0")
    wholesale_price: Decimal = Decimal("0")
    cost_price: Decimal = Decimal("0")
    box_retail_price: Decimal = Decimal("0")
    box_wholesale_price: Decimal = Decimal("0")
    box_cost_price: Decimal = Decimal("0")
    variant_id: Optional[Ident] = None
    variant_name: Optional[str] = None
    variants: List[Variant] = Field(default_factory=list)

    @property
    def offers_second_unit(self) -> bool:
        return bool((self.second_unit or "").strip()) and self.units_per_second > 0

    def base_quantity(self, quantity: Decimal, unit_type: str) -> Decimal:
        if unit_type == "second" and self.units_per_second > 0:
            return quantity * self.units_per_second
        return quantity


class Customer(BaseModel):
    customer_id: Ident
    name: str = ""
    customer_type: str = "retail"
    debt_balance: Decimal = Decimal("0")
    credit_limit: Decimal = Decimal("0")


class CustomerPriceOverride(BaseModel):
    product_id: Ident
    special_price: Optional[Decimal] = None
    box_special_price: Optional[Decimal] = None
    has_special_price: bool = False
    has_box_special_price: bool = False
    is_active: bool = True
    start_date: Optional[date] = None
    end_date: Optional[date] = None

    def effective_on(self, on: date) -> bool:
        if not self.is_active:
            return False
        if self.start_date is not None and on < self.start_date:
            return False
        if self.end_date is not None and on > self.end_date:
            return False
        return True


class OriginalSaleLine(BaseModel):
    line_id: Ident
    product_id: Ident
    product_name: str = ""
    product_sku: Optional[str] = None
    unit_type: UnitType = "base"
    quantity: Decimal
    unit_price: Decimal
    discount_amount: Decimal = Decimal("0")
    already_returned_qty: Decimal = Decimal("0")
    units_per_second: Decimal = Decimal("1")

    @property
    def returnable_qty(self) -> Decimal:
        left = self.quantity - self.already_returned_qty
        return left if left > 0 else Decimal("0")

    @property
    def effective_unit_price(self) -> Decimal:
        # Spread the original line discount evenly over the units sold.
        if self.quantity <= 0:
            return self.unit_price
        return self.unit_price - (self.discount_amount / self.quantity)


class PriorSale(BaseModel):
    sale_id: Ident
    order_number: str
    customer_id: Optional[Ident] = None
    customer_name: Optional[str] = None
    order_date: Optional[date] = None
    subtotal: Decimal = Decimal("0")
    discount_amount: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")
    total_amount: Decimal = Decimal("0")
    paid_amount: Decimal = Decimal("0")
    payment_status: Optional[str] = None
    notes: Optional[str] = None
    lines: List[OriginalSaleLine] = Field(default_factory=list)

    def line(self, line_id) -> Optional[OriginalSaleLine]:
        key = str(line_id).strip()
        return next((l for l in self.lines if l.line_id == key), None)


class QuoteLine(BaseModel):
    product_id: Ident
    product_name: str = ""
    product_sku: Optional[str] = None
    quantity: Decimal
    unit_price: Decimal
    discount_amount: Decimal = Decimal("0")


class Quote(BaseModel):
    quote_id: Ident
    quote_number: str
    customer_id: Optional[Ident] = None
    notes: Optional[str] = None
    lines: List[QuoteLine] = Field(default_factory=list)


@dataclass(frozen=True)
class CatalogProduct:
    product: Product
    synthesized = False


@dataclass(frozen=True)
class SynthesizedProduct:
    """Stand-in for a product the live catalog no longer carries; never persisted as catalog data."""

    product: Product
    synthesized = True


ResolvedProduct = Union[CatalogProduct, SynthesizedProduct]


# -- submission payloads --------------------------------------------------


class CurrencyAmount(BaseModel):
    currency: CurrencyCode
    amount: Decimal


class SaleLineOut(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    unit_type: UnitType
    quantity: Decimal
    unit_price: Decimal
    discount_amount: Decimal
    line_total: Decimal
    currency: CurrencyCode
    synthesized: bool = False


class SaleRequest(BaseModel):
    customer_id: Optional[str] = None
    warehouse_id: str
    payment_type: PaymentType
    amount_due: Decimal
    amount_due_currency: CurrencyCode
    paid_amount: Decimal
    credit_amount: Decimal
    change_amount: Decimal
    discount_amount: Decimal
    tax_amount: Decimal = Decimal("0")
    notes: Optional[str] = None
    quote_id: Optional[str] = None
    payment_currencies: List[CurrencyAmount] = Field(default_factory=list)
    exchange_rate_snapshot: dict[str, Decimal] = Field(default_factory=dict)
    lines: List[SaleLineOut]


class SaleResult(BaseModel):
    order_id: str
    order_number: str


class ReturnLineOut(BaseModel):
    product_id: str
    original_line_id: str
    unit_type: UnitType
    quantity: Decimal
    unit_price: Decimal
    discount_amount: Decimal = Decimal("0")
    line_total: Decimal
    reason: ReturnReason
    condition: ItemCondition
    disposition: Disposition


class StockMovement(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    movement_type: Literal["restock", "exchange_out"]
    # Signed, in base units: positive back into stock, negative out of stock.
    quantity: Decimal


class ReturnExchangeRequest(BaseModel):
    original_sale_id: str
    original_order_number: str
    warehouse_id: str
    customer_id: Optional[str] = None
    outcome: Literal["refund", "payment", "even"]
    refund_method: Optional[RefundMethod] = None
    payment_method: Optional[CollectionMethod] = None
    notes: Optional[str] = None
    return_lines: List[ReturnLineOut] = Field(default_factory=list)
    exchange_lines: List[SaleLineOut] = Field(default_factory=list)
    return_total: Decimal
    exchange_total: Decimal
    net_amount: Decimal
    refund_amount: Decimal
    payment_amount: Decimal
    requires_approval: bool = False
    customer_balance_delta: Decimal = Decimal("0")
    stock_movements: List[StockMovement] = Field(default_factory=list)


class ReturnExchangeResult(BaseModel):
    transaction_id: str
    transaction_number: str
    status: str = "completed"
    message: Optional[str] = None


class QuoteRequestLine(BaseModel):
    product_id: str
    quantity: Decimal
    unit_price: Decimal
    discount_percent: Decimal = Decimal("0")


class QuoteRequest(BaseModel):
    customer_id: str
    valid_until: datetime
    discount_amount: Decimal
    tax_amount: Decimal = Decimal("0")
    notes: Optional[str] = None
    terms: str = ""
    lines: List[QuoteRequestLine]
