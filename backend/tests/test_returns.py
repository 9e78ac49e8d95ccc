from decimal import Decimal

import pytest
from fastapi import HTTPException

from backend.posengine.models import (
    CurrencyRate,
    Customer,
    OriginalSaleLine,
    PriorSale,
    Product,
    ReturnExchangeResult,
)
from backend.posengine.money import RateBook
from backend.posengine.returns import ReturnExchange, default_status_message


class _FakeSink:
    def __init__(self, fail: Exception = None, message=None):
        self.fail = fail
        self.message = message
        self.requests = []

    def submit_return_exchange(self, request):
        self.requests.append(request)
        if self.fail is not None:
            raise self.fail
        return ReturnExchangeResult(transaction_id="t-1", transaction_number="RX-20260101-0001", message=self.message)


def _rates():
    return RateBook([CurrencyRate(code="USD", is_base=True), CurrencyRate(code="LBP", exchange_rate=Decimal("90000"))])


def _sale(sale_id="S1", customer_id="C1"):
    return PriorSale(
        sale_id=sale_id,
        order_number=f"ORD-{sale_id}",
        customer_id=customer_id,
        lines=[
            OriginalSaleLine(
                line_id="L1",
                product_id="P1",
                quantity=Decimal("5"),
                already_returned_qty=Decimal("2"),
                unit_price=Decimal("10"),
                discount_amount=Decimal("5"),
            ),
            OriginalSaleLine(
                line_id="L2",
                product_id="P2",
                unit_type="second",
                quantity=Decimal("2"),
                unit_price=Decimal("100"),
                units_per_second=Decimal("12"),
            ),
            OriginalSaleLine(line_id="L3", product_id="P3", quantity=Decimal("4"), unit_price=Decimal("10")),
            OriginalSaleLine(
                line_id="L4",
                product_id="P4",
                quantity=Decimal("1"),
                already_returned_qty=Decimal("3"),
                unit_price=Decimal("10"),
            ),
        ],
    )


def _session(**kw):
    rx = ReturnExchange(_rates())
    rx.load_invoice(_sale(**kw))
    return rx


def _product(pid="N1", price="25"):
    return Product(product_id=pid, name="Replacement", retail_price=Decimal(price), wholesale_price=Decimal(price))


def test_returnable_quantity_and_effective_price():
    line = _sale().line("L1")
    assert line.returnable_qty == Decimal("3")
    assert line.effective_unit_price == Decimal("9")
    assert _sale().line("L4").returnable_qty == Decimal("0")


def test_update_request_above_returnable_is_clamped():
    rx = _session()
    rx.add_return("L1")
    line = rx.update_return_quantity("L1", 5)
    assert line.quantity == Decimal("3")
    assert rx.totals.return_total == Decimal("27")


def test_add_above_returnable_is_a_no_op():
    rx = _session()
    assert rx.add_return("L1", 5) is None
    assert rx.add_return("L1", 0) is None
    assert rx.add_return("L4") is None
    assert rx.returns == []
    assert rx.state == "invoice_loaded"


def test_repeated_add_is_capped_at_ceiling():
    rx = _session()
    rx.add_return("L1", 2)
    line = rx.add_return("L1", 2)
    assert line.quantity == Decimal("3")
    assert len(rx.returns) == 1


def test_ceiling_holds_for_any_requested_quantity():
    rx = _session()
    for requested in ("-1", "0.5", "1", "2", "3", "4", "10"):
        if rx.return_line("L1") is None:
            rx.add_return("L1")
        rx.update_return_quantity("L1", requested)
        line = rx.return_line("L1")
        if line is not None:
            assert Decimal("0") < line.quantity <= Decimal("3")


def test_zero_quantity_removes_line():
    rx = _session()
    rx.add_return("L3")
    assert rx.update_return_quantity("L3", 0) is None
    assert rx.return_line("L3") is None
    assert rx.state == "invoice_loaded"


def test_new_return_line_defaults_and_metadata_updates():
    rx = _session()
    line = rx.add_return("L3")
    assert (line.reason, line.condition, line.disposition) == ("customer_changed_mind", "resellable", "restock")
    rx.update_return_line("L3", reason="Damaged", disposition="scrap")
    assert (line.reason, line.condition, line.disposition) == ("damaged", "resellable", "scrap")
    assert line.quantity == Decimal("1")
    with pytest.raises(HTTPException):
        rx.update_return_line("L3", condition="melted")


def test_return_requires_loaded_invoice_and_known_line():
    rx = ReturnExchange(_rates())
    assert rx.state == "empty"
    with pytest.raises(HTTPException):
        rx.add_return("L1")
    rx.load_invoice(_sale())
    with pytest.raises(HTTPException) as exc_info:
        rx.add_return("L99")
    assert exc_info.value.status_code == 400


def test_net_amount_refund_path():
    rx = _session()
    rx.add_return("L3", 4)
    rx.add_exchange(_product())
    t = rx.totals
    assert t.return_total == Decimal("40")
    assert t.exchange_total == Decimal("25")
    assert t.net_amount == Decimal("-15")
    assert rx.outcome == "refund"
    assert t.refund_amount == Decimal("15")
    assert rx.state == "editing"


def test_net_amount_sign_law():
    rx = _session()
    rx.add_return("L3")
    rx.add_exchange(_product(price="10"))
    assert rx.totals.net_amount == rx.totals.exchange_total - rx.totals.return_total
    assert rx.outcome == "even"

    rx.change_exchange_quantity(("N1", None, "base"), 1)
    assert rx.outcome == "payment"
    assert rx.totals.payment_amount == Decimal("10")

    rx.set_exchange_quantity(("N1", None, "base"), 0)
    assert rx.outcome == "refund"


def test_exchange_in_foreign_currency_is_valued_in_base():
    rx = _session()
    rx.add_return("L3")
    rx.add_exchange(Product(product_id="N2", currency="LBP", retail_price=Decimal("900000")))
    assert rx.totals.exchange_total == Decimal("10")
    assert rx.outcome == "even"


def test_loading_different_invoice_clears_baskets():
    rx = _session()
    rx.add_return("L3")
    rx.add_exchange(_product())
    rx.load_invoice(_sale())
    assert len(rx.returns) == 1
    rx.load_invoice(_sale(sale_id="S2"))
    assert rx.returns == []
    assert not rx.exchange
    assert rx.totals.net_amount == Decimal("0")


def test_exchange_uses_invoice_customer_tier():
    rx = ReturnExchange(_rates())
    rx.load_invoice(_sale(), Customer(customer_id="C1", customer_type="wholesale"))
    p = Product(product_id="N1", retail_price=Decimal("25"), wholesale_price=Decimal("20"))
    assert rx.add_exchange(p).unit_price == Decimal("20")


def test_submit_refund_to_store_credit():
    rx = _session()
    rx.add_return("L3", 4)
    rx.add_exchange(_product())
    sink = _FakeSink()
    result = rx.submit(sink, "W1", refund_method="credit")

    req = sink.requests[0]
    assert req.outcome == "refund"
    assert req.refund_method == "store_credit"
    assert req.refund_amount == Decimal("15")
    assert req.payment_amount == Decimal("0")
    assert req.customer_balance_delta == Decimal("-15")
    assert req.requires_approval is False
    assert [(m.product_id, m.movement_type, m.quantity) for m in req.stock_movements] == [
        ("P3", "restock", Decimal("4")),
        ("N1", "exchange_out", Decimal("-1")),
    ]
    assert result.message == "Refund of 15.000 processed"
    assert rx.state == "empty"


def test_submit_restocks_second_unit_in_base_quantity_and_flags_approval():
    rx = _session()
    rx.add_return("L2", 2)
    sink = _FakeSink(message="done")
    result = rx.submit(sink, "W1", refund_method="cash")

    req = sink.requests[0]
    assert req.refund_amount == Decimal("200")
    assert req.requires_approval is True
    assert req.customer_balance_delta == Decimal("0")
    assert req.stock_movements[0].quantity == Decimal("24")
    assert result.message == "done"


def test_scrapped_lines_are_not_restocked():
    rx = _session()
    rx.add_return("L3")
    rx.update_return_line("L3", disposition="scrap")
    sink = _FakeSink()
    rx.submit(sink, "W1", refund_method="cash")
    assert sink.requests[0].stock_movements == []


def test_credit_payment_increases_customer_balance():
    rx = _session()
    rx.add_return("L3")
    rx.add_exchange(_product())
    sink = _FakeSink()
    result = rx.submit(sink, "W1", payment_method="credit")
    req = sink.requests[0]
    assert req.payment_method == "credit"
    assert req.customer_balance_delta == Decimal("15")
    assert result.message == "Additional payment of 15.000 collected"


def test_submit_validations_never_reach_sink():
    sink = _FakeSink()
    rx = _session()
    with pytest.raises(HTTPException):
        rx.submit(sink, "W1", refund_method="cash")
    rx.add_return("L3")
    with pytest.raises(HTTPException):
        rx.submit(sink, "", refund_method="cash")
    with pytest.raises(HTTPException):
        rx.submit(sink, "W1")

    walk_in = _session(customer_id=None)
    walk_in.add_return("L3")
    with pytest.raises(HTTPException):
        walk_in.submit(sink, "W1", refund_method="store_credit")
    assert sink.requests == []


def test_sink_failure_keeps_state_and_maps_to_502(capsys):
    rx = _session()
    rx.add_return("L3", 2)
    sink = _FakeSink(fail=RuntimeError("db down"))
    with pytest.raises(HTTPException) as exc_info:
        rx.submit(sink, "W1", refund_method="cash")
    assert exc_info.value.status_code == 502
    assert rx.state == "editing"
    assert rx.return_line("L3").quantity == Decimal("2")
    assert "pos.return_exchange.submit_failed" in capsys.readouterr().err


def test_default_status_messages():
    assert default_status_message("even", Decimal("0")) == "Even exchange completed"
    assert default_status_message("refund", Decimal("15")) == "Refund of 15.000 processed"
    assert default_status_message("payment", Decimal("2.5")) == "Additional payment of 2.500 collected"


def test_non_numeric_return_quantity_is_a_400():
    rx = _session()
    rx.add_return("L1")
    with pytest.raises(HTTPException) as exc_info:
        rx.update_return_quantity("L1", "lots")
    assert exc_info.value.status_code == 400
    with pytest.raises(HTTPException) as exc_info:
        rx.add_return("L3", "x")
    assert exc_info.value.status_code == 400
    assert rx.return_line("L1").quantity == Decimal("1")
    assert rx.return_line("L3") is None
