from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Iterable, Mapping, Optional

from fastapi import HTTPException

from .cart import Cart, SaleLine
from .catalog import Catalog
from .config import settings
from .logs import json_log
from .models import (
    CatalogProduct,
    Customer,
    CustomerPriceOverride,
    Product,
    Quote,
    QuoteLine,
    QuoteRequest,
    QuoteRequestLine,
    ResolvedProduct,
    SynthesizedProduct,
)
from .money import ZERO

if TYPE_CHECKING:
    from .session import PosSession


def placeholder_product(line: QuoteLine, currency: str) -> Product:
    """Sellable stand-in for a quoted product that is no longer in the catalog."""
    return Product(
        product_id=line.product_id,
        name=line.product_name or f"Product {line.product_id}",
        sku=line.product_sku,
        currency=currency,
        quantity=settings.placeholder_stock,
        retail_price=line.unit_price,
        wholesale_price=line.unit_price,
        box_retail_price=line.unit_price,
        box_wholesale_price=line.unit_price,
    )


def import_quote(quote: Quote, catalog: Catalog, base_currency: Optional[str] = None) -> list[SaleLine]:
    """
    Quote lines as sale lines. Live catalog data wins when the product is still
    carried; otherwise a placeholder is synthesized. Either way the quoted unit
    price and discount are kept.
    """
    currency = base_currency or settings.base_currency
    out: list[SaleLine] = []
    for ql in quote.lines:
        live = catalog.get(ql.product_id)
        entry: ResolvedProduct
        if live is not None:
            entry = CatalogProduct(live)
        else:
            json_log("warning", "pos.quote.placeholder", quote_number=quote.quote_number, product_id=ql.product_id)
            entry = SynthesizedProduct(placeholder_product(ql, currency))
        out.append(
            SaleLine(
                entry=entry,
                unit_type="base",
                quantity=ql.quantity,
                unit_price=ql.unit_price,
                discount=ql.discount_amount if ql.discount_amount > 0 else ZERO,
            )
        )
    return out


def load_quote_into(
    session: "PosSession",
    quote: Quote,
    catalog: Optional[Catalog] = None,
    customers: Optional[Mapping[str, Customer]] = None,
    prices_by_customer: Optional[Mapping[str, Iterable[CustomerPriceOverride]]] = None,
) -> list[SaleLine]:
    """
    Replace the sale basket with a quote. The quote's customer is selected,
    with their special prices, before the quoted lines go in; quoted lines
    keep their quoted prices.
    """
    if session.mode != "sale":
        session.switch_mode("sale")
    customer = customers.get(quote.customer_id) if (quote.customer_id and customers) else None
    if customer is not None:
        prices = (prices_by_customer or {}).get(customer.customer_id)
        already = session.customer is not None and session.customer.customer_id == customer.customer_id
        # Keep the live resolver when the same customer is selected and no fresh prices were given.
        if prices is not None or not already:
            session.set_customer(customer, prices or ())

    lines = import_quote(quote, catalog or session.catalog, session.rates.base_code)
    session.cart.replace_lines(lines)
    session.allocator.clear()
    session.loaded_quote_id = quote.quote_id
    note = f"Quote: {quote.quote_number}"
    if (quote.notes or "").strip():
        note = f"{note} - {quote.notes.strip()}"
    session.notes = note
    return session.cart.lines


def build_quote_request(
    cart: Cart,
    customer: Optional[Customer],
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> QuoteRequest:
    if customer is None:
        raise HTTPException(status_code=400, detail="a customer is required to save a quote")
    if not cart:
        raise HTTPException(status_code=400, detail="cart is empty")

    lines = []
    for l in cart.lines:
        pct = (l.discount / l.subtotal * Decimal("100")) if l.subtotal > 0 else ZERO
        lines.append(
            QuoteRequestLine(
                product_id=l.product.product_id,
                quantity=l.quantity,
                unit_price=l.unit_price,
                discount_percent=pct,
            )
        )
    start = now or datetime.now(timezone.utc)
    return QuoteRequest(
        customer_id=customer.customer_id,
        valid_until=start + timedelta(days=settings.quote_valid_days),
        discount_amount=cart.summary.discount,
        notes=(notes or "").strip() or None,
        lines=lines,
    )
