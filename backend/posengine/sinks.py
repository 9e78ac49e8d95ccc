from typing import Any, Callable, Optional, Protocol

from fastapi import HTTPException

from .logs import json_log
from .models import (
    ReturnExchangeRequest,
    ReturnExchangeResult,
    SaleRequest,
    SaleResult,
)


class SaleSink(Protocol):
    def submit_sale(self, request: SaleRequest) -> SaleResult: ...

    def mark_quote_converted(self, quote_id: str, order_id: str) -> None: ...


class ReturnExchangeSink(Protocol):
    def submit_return_exchange(self, request: ReturnExchangeRequest) -> ReturnExchangeResult: ...


def call_sink(fn: Callable[[], Any], failed_event: str, **fields) -> Any:
    """
    Run one collaborator call. HTTP errors pass through untouched; anything else
    is logged and surfaced as a 502 so the caller keeps its basket and can retry.
    """
    try:
        return fn()
    except HTTPException:
        raise
    except Exception as e:
        json_log("error", failed_event, error=str(e), error_type=type(e).__name__, **fields)
        raise HTTPException(status_code=502, detail=f"submission failed: {e}") from e


def try_sink(fn: Callable[[], Any], failed_event: str, **fields) -> Optional[Any]:
    """Best-effort follow-up call: failures are logged and never raised."""
    try:
        return fn()
    except Exception as e:
        json_log("warning", failed_event, error=str(e), error_type=type(e).__name__, **fields)
        return None
