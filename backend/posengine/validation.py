from __future__ import annotations

from typing import Annotated, Literal

from fastapi import HTTPException
from pydantic import BeforeValidator, StringConstraints, TypeAdapter, ValidationError


def _to_upper_str(v):
    if v is None:
        return v
    return str(v).strip().upper()


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower().replace(" ", "_")


# Catalog and POS clients still send the legacy piece/box labels.
_UNIT_TYPE_ALIASES = {"piece": "base", "pc": "base", "box": "second"}


def _to_unit_type(v):
    if v is None or str(v).strip() == "":
        return "base"
    raw = _to_lower_str(v)
    return _UNIT_TYPE_ALIASES.get(raw, raw)


# The POS screen labels store credit as plain "credit" on the refund toggle.
def _to_refund_method(v):
    raw = _to_lower_str(v)
    if raw == "credit":
        return "store_credit"
    return raw


def _to_disposition(v):
    raw = _to_lower_str(v)
    if raw == "back_to_stock":
        return "restock"
    return raw


CurrencyCode = Annotated[
    str,
    BeforeValidator(_to_upper_str),
    StringConstraints(min_length=2, max_length=10, pattern=r"^[A-Z]+$"),
]
UnitType = Annotated[Literal["base", "second"], BeforeValidator(_to_unit_type)]
PricingTier = Literal["retail", "wholesale"]

PaymentType = Annotated[Literal["cash", "credit", "split"], BeforeValidator(_to_lower_str)]
RefundMethod = Annotated[Literal["cash", "store_credit"], BeforeValidator(_to_refund_method)]
CollectionMethod = Annotated[Literal["cash", "credit"], BeforeValidator(_to_lower_str)]

ReturnReason = Annotated[
    Literal["damaged", "wrong_item", "expired", "customer_changed_mind", "defective", "other"],
    BeforeValidator(_to_lower_str),
]
ItemCondition = Annotated[Literal["resellable", "damaged", "opened"], BeforeValidator(_to_lower_str)]
Disposition = Annotated[Literal["restock", "scrap", "return_to_vendor"], BeforeValidator(_to_disposition)]

SalesMode = Annotated[Literal["sale", "return"], BeforeValidator(_to_lower_str)]


_adapters: dict = {}


def coerce(tp, value, *, field: str):
    """Validate a single value against one of the annotated types above (HTTP 400 on failure)."""
    key = (id(tp), field)
    adapter = _adapters.get(key)
    if adapter is None:
        adapter = _adapters[key] = TypeAdapter(tp)
    try:
        return adapter.validate_python(value)
    except ValidationError:
        raise HTTPException(status_code=400, detail=f"invalid {field}: {value!r}")


def _to_ident(v):
    if v is None:
        return v
    return str(v).strip()


# Collaborators hand out integer ids or uuids depending on the deployment.
Ident = Annotated[str, BeforeValidator(_to_ident), StringConstraints(min_length=1)]
