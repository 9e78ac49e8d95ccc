import pytest
from fastapi import HTTPException
from pydantic import BaseModel, ValidationError

from backend.posengine.validation import (
    CurrencyCode,
    Disposition,
    Ident,
    PaymentType,
    RefundMethod,
    UnitType,
    coerce,
)


class _M(BaseModel):
    currency: CurrencyCode
    unit_type: UnitType
    payment_type: PaymentType
    refund_method: RefundMethod
    disposition: Disposition


def test_validation_types_normalize_case_and_legacy_labels():
    m = _M(currency="usd", unit_type="Box", payment_type=" Cash ", refund_method="credit", disposition="back to stock")
    assert m.currency == "USD"
    assert m.unit_type == "second"
    assert m.payment_type == "cash"
    assert m.refund_method == "store_credit"
    assert m.disposition == "restock"


def test_unit_type_defaults_to_base_when_blank():
    m = _M(currency="LBP", unit_type="", payment_type="split", refund_method="cash", disposition="scrap")
    assert m.unit_type == "base"
    assert coerce(UnitType, "piece", field="unit_type") == "base"
    assert coerce(UnitType, None, field="unit_type") == "base"


def test_currency_code_rejects_internal_spaces():
    with pytest.raises(ValidationError):
        _M(currency="US D", unit_type="base", payment_type="cash", refund_method="cash", disposition="restock")


def test_coerce_raises_http_400_on_unknown_value():
    with pytest.raises(HTTPException) as exc_info:
        coerce(UnitType, "crate", field="unit_type")
    exc = exc_info.value
    assert exc.status_code == 400
    assert "unit_type" in str(exc.detail)


def test_ident_accepts_integers_and_strips():
    assert coerce(Ident, 42, field="id") == "42"
    assert coerce(Ident, "  abc ", field="id") == "abc"
    with pytest.raises(HTTPException):
        coerce(Ident, "   ", field="id")
