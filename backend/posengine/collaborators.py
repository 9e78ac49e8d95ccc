"""
psycopg adapters for the engine's collaborators.

Loaders take an open cursor (dict rows) and return immutable snapshots; the
caller owns the connection and the company context. `OutboxSink` records
finalized transactions as events in `pos_events_outbox` for the posting worker.
"""
import json
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional

from fastapi import HTTPException

from .catalog import Catalog
from .db import get_conn, set_company_context
from .models import (
    CurrencyRate,
    Customer,
    CustomerPriceOverride,
    OriginalSaleLine,
    PriorSale,
    Product,
    Quote,
    QuoteLine,
    ReturnExchangeRequest,
    ReturnExchangeResult,
    SaleRequest,
    SaleResult,
    Variant,
)
from .validation import UnitType, coerce


def next_document_no(cur, company_id: str, doc_type: str) -> str:
    cur.execute("SELECT next_document_no(%s, %s) AS doc_no", (company_id, doc_type))
    return cur.fetchone()["doc_no"]


def load_currencies(cur, company_id: str) -> list[CurrencyRate]:
    cur.execute(
        """
        SELECT code, exchange_rate, is_base, is_active
        FROM currencies
        WHERE company_id = %s
        ORDER BY is_base DESC, code
        """,
        (company_id,),
    )
    return [
        CurrencyRate(
            code=r["code"],
            exchange_rate=r["exchange_rate"] if r["exchange_rate"] is not None else Decimal("1"),
            is_base=bool(r["is_base"]),
            is_active=bool(r["is_active"]),
        )
        for r in cur.fetchall()
    ]


def load_customer(cur, company_id: str, customer_id: str) -> Customer:
    cur.execute(
        """
        SELECT id, name, customer_type, debt_balance, credit_limit
        FROM customers
        WHERE company_id = %s AND id = %s
        """,
        (company_id, customer_id),
    )
    r = cur.fetchone()
    if not r:
        raise HTTPException(status_code=404, detail="customer not found")
    return Customer(
        customer_id=str(r["id"]),
        name=r["name"] or "",
        customer_type=r["customer_type"] or "retail",
        debt_balance=r["debt_balance"] or 0,
        credit_limit=r["credit_limit"] or 0,
    )


def load_customer_prices(cur, company_id: str, customer_id: str) -> list[CustomerPriceOverride]:
    cur.execute(
        """
        SELECT product_id, special_price, box_special_price,
               has_special_price, has_box_special_price,
               is_active, start_date, end_date
        FROM customer_special_prices
        WHERE company_id = %s AND customer_id = %s
        """,
        (company_id, customer_id),
    )
    return [
        CustomerPriceOverride(
            product_id=str(r["product_id"]),
            special_price=r["special_price"],
            box_special_price=r["box_special_price"],
            has_special_price=bool(r["has_special_price"]),
            has_box_special_price=bool(r["has_box_special_price"]),
            is_active=bool(r["is_active"]),
            start_date=r["start_date"],
            end_date=r["end_date"],
        )
        for r in cur.fetchall()
    ]


def load_catalog(cur, company_id: str, warehouse_id: str) -> Catalog:
    cur.execute(
        """
        SELECT p.id, p.name, p.sku, p.currency, p.base_unit, p.second_unit, p.units_per_second,
               p.retail_price, p.wholesale_price, p.cost_price,
               p.box_retail_price, p.box_wholesale_price, p.box_cost_price,
               COALESCE(s.quantity, 0) AS quantity
        FROM products p
        LEFT JOIN warehouse_stock s
          ON s.product_id = p.id AND s.warehouse_id = %s AND s.variant_id IS NULL
        WHERE p.company_id = %s AND p.is_active = true
        ORDER BY p.name
        """,
        (warehouse_id, company_id),
    )
    products = cur.fetchall()

    cur.execute(
        """
        SELECT v.id, v.product_id, v.sku, v.color, v.size,
               v.retail_price, v.wholesale_price, v.cost_price,
               v.box_retail_price, v.box_wholesale_price, v.box_cost_price,
               s.quantity
        FROM product_variants v
        JOIN products p ON p.id = v.product_id
        LEFT JOIN warehouse_stock s
          ON s.variant_id = v.id AND s.warehouse_id = %s
        WHERE p.company_id = %s AND v.is_active = true
        ORDER BY v.product_id, v.id
        """,
        (warehouse_id, company_id),
    )
    variants: dict[str, list[Variant]] = {}
    for r in cur.fetchall():
        variants.setdefault(str(r["product_id"]), []).append(
            Variant(
                variant_id=str(r["id"]),
                sku=r["sku"],
                color=r["color"],
                size=r["size"],
                retail_price=r["retail_price"],
                wholesale_price=r["wholesale_price"],
                cost_price=r["cost_price"],
                box_retail_price=r["box_retail_price"],
                box_wholesale_price=r["box_wholesale_price"],
                box_cost_price=r["box_cost_price"],
                quantity=r["quantity"],
            )
        )

    out = []
    for r in products:
        pid = str(r["id"])
        fields = {
            "product_id": pid,
            "name": r["name"] or "",
            "sku": r["sku"],
            "quantity": r["quantity"],
            "base_unit": r["base_unit"] or "piece",
            "second_unit": r["second_unit"],
            "units_per_second": r["units_per_second"] or 1,
            "variants": variants.get(pid, []),
        }
        if r["currency"]:
            fields["currency"] = r["currency"]
        for col in ("retail_price", "wholesale_price", "cost_price", "box_retail_price", "box_wholesale_price", "box_cost_price"):
            fields[col] = r[col] or 0
        out.append(Product(**fields))
    return Catalog(out)


def load_prior_sale(cur, company_id: str, order_no: str) -> PriorSale:
    no = (order_no or "").strip()
    if not no:
        raise HTTPException(status_code=400, detail="order number is required")
    cur.execute(
        """
        SELECT o.id, o.order_no, o.customer_id, c.name AS customer_name, o.order_date,
               o.subtotal, o.discount_amount, o.tax_amount, o.total_amount,
               o.paid_amount, o.payment_status, o.notes
        FROM sales_orders o
        LEFT JOIN customers c ON c.id = o.customer_id
        WHERE o.company_id = %s AND o.order_no = %s AND o.status = 'completed'
        """,
        (company_id, no),
    )
    o = cur.fetchone()
    if not o:
        raise HTTPException(status_code=404, detail=f"invoice {no} not found")

    # Already-returned quantity is summed over every earlier return against each line.
    cur.execute(
        """
        SELECT l.id, l.product_id, p.name AS product_name, p.sku AS product_sku,
               l.unit_type, l.quantity, l.unit_price, l.discount_amount,
               COALESCE(p.units_per_second, 1) AS units_per_second,
               COALESCE((
                 SELECT SUM(rl.quantity)
                 FROM sales_return_lines rl
                 WHERE rl.original_line_id = l.id
               ), 0) AS already_returned_qty
        FROM sales_order_lines l
        LEFT JOIN products p ON p.id = l.product_id
        WHERE l.order_id = %s
        ORDER BY l.line_no, l.id
        """,
        (o["id"],),
    )
    lines = [
        OriginalSaleLine(
            line_id=str(r["id"]),
            product_id=str(r["product_id"]),
            product_name=r["product_name"] or "",
            product_sku=r["product_sku"],
            unit_type=coerce(UnitType, r["unit_type"], field="unit_type"),
            quantity=r["quantity"],
            unit_price=r["unit_price"],
            discount_amount=r["discount_amount"] or 0,
            already_returned_qty=r["already_returned_qty"] or 0,
            units_per_second=r["units_per_second"] or 1,
        )
        for r in cur.fetchall()
    ]
    return PriorSale(
        sale_id=str(o["id"]),
        order_number=o["order_no"],
        customer_id=str(o["customer_id"]) if o["customer_id"] else None,
        customer_name=o["customer_name"],
        order_date=o["order_date"],
        subtotal=o["subtotal"] or 0,
        discount_amount=o["discount_amount"] or 0,
        tax_amount=o["tax_amount"] or 0,
        total_amount=o["total_amount"] or 0,
        paid_amount=o["paid_amount"] or 0,
        payment_status=o["payment_status"],
        notes=o["notes"],
        lines=lines,
    )


def load_quote(cur, company_id: str, quote_no: str) -> Quote:
    cur.execute(
        """
        SELECT id, quote_no, customer_id, notes
        FROM quotes
        WHERE company_id = %s AND quote_no = %s
        """,
        (company_id, (quote_no or "").strip()),
    )
    q = cur.fetchone()
    if not q:
        raise HTTPException(status_code=404, detail="quote not found")
    cur.execute(
        """
        SELECT l.product_id, l.product_name, l.product_sku, l.quantity, l.unit_price, l.discount_amount
        FROM quote_lines l
        WHERE l.quote_id = %s
        ORDER BY l.line_no
        """,
        (q["id"],),
    )
    return Quote(
        quote_id=str(q["id"]),
        quote_number=q["quote_no"],
        customer_id=str(q["customer_id"]) if q["customer_id"] else None,
        notes=q["notes"],
        lines=[
            QuoteLine(
                product_id=str(r["product_id"]),
                product_name=r["product_name"] or "",
                product_sku=r["product_sku"],
                quantity=r["quantity"],
                unit_price=r["unit_price"],
                discount_amount=r["discount_amount"] or 0,
            )
            for r in cur.fetchall()
        ],
    )


class OutboxSink:
    """
    Submission sink backed by `pos_events_outbox`. Each submission is one
    pending event; retries with the same idempotency key return the event
    already recorded instead of inserting a second one.
    """

    def __init__(self, company_id: str, device_id: str, connect: Callable = get_conn):
        self.company_id = company_id
        self.device_id = device_id
        self._connect = connect

    def _find(self, cur, event_type: str, idempotency_key: Optional[str]) -> Optional[dict]:
        if not idempotency_key:
            return None
        cur.execute(
            """
            SELECT id, payload_json
            FROM pos_events_outbox
            WHERE device_id = %s
              AND event_type = %s
              AND idempotency_key = %s
            ORDER BY created_at ASC
            LIMIT 1
            """,
            (self.device_id, event_type, idempotency_key),
        )
        row = cur.fetchone()
        if not row:
            return None
        payload = row["payload_json"]
        if isinstance(payload, (str, bytes)):
            payload = json.loads(payload)
        return {"id": str(row["id"]), "payload": payload or {}}

    def _insert(self, cur, event_type: str, payload: dict, idempotency_key: Optional[str]) -> dict:
        event_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc)
        cur.execute(
            """
            INSERT INTO pos_events_outbox
              (id, device_id, event_type, payload_json, created_at, status, idempotency_key, next_attempt_at)
            VALUES
              (%s, %s, %s, %s::jsonb, %s, 'pending', %s, %s)
            ON CONFLICT DO NOTHING
            RETURNING id
            """,
            (event_id, self.device_id, event_type, json.dumps(payload, default=str), now, idempotency_key, now),
        )
        inserted = cur.fetchone()
        if inserted:
            return {"id": str(inserted["id"]), "payload": payload}
        # Lost a race with a concurrent replay of the same key.
        existing = self._find(cur, event_type, idempotency_key)
        if existing is None:
            raise HTTPException(status_code=409, detail="duplicate event without a recorded original")
        return existing

    def _record(self, cur, event_type: str, doc_type: Optional[str], payload: dict, idempotency_key: Optional[str]) -> dict:
        """
        Replays of a known idempotency key return the stored event and its
        document number; a number is allocated only for a new event.
        """
        existing = self._find(cur, event_type, idempotency_key)
        if existing is not None:
            return existing
        if doc_type:
            payload = {**payload, "doc_no": next_document_no(cur, self.company_id, doc_type)}
        return self._insert(cur, event_type, payload, idempotency_key)

    def submit_sale(self, request: SaleRequest, idempotency_key: Optional[str] = None) -> SaleResult:
        with self._connect() as conn:
            set_company_context(conn, self.company_id)
            with conn.cursor() as cur:
                ev = self._record(cur, "sale.completed", "SO", request.model_dump(mode="json"), idempotency_key)
                return SaleResult(order_id=ev["id"], order_number=ev["payload"]["doc_no"])

    def submit_return_exchange(self, request: ReturnExchangeRequest, idempotency_key: Optional[str] = None) -> ReturnExchangeResult:
        with self._connect() as conn:
            set_company_context(conn, self.company_id)
            with conn.cursor() as cur:
                ev = self._record(cur, "sale.return_exchange", "RX", request.model_dump(mode="json"), idempotency_key)
                stored = ev["payload"]
                status = "pending_approval" if stored.get("requires_approval") else "completed"
                return ReturnExchangeResult(transaction_id=ev["id"], transaction_number=stored["doc_no"], status=status)

    def mark_quote_converted(self, quote_id: str, order_id: str) -> None:
        with self._connect() as conn:
            set_company_context(conn, self.company_id)
            with conn.cursor() as cur:
                self._record(
                    cur,
                    "quote.converted",
                    None,
                    {"quote_id": quote_id, "order_id": order_id},
                    f"quote:{quote_id}",
                )
