"""Market-data provider interface consumed by the options pipeline.

Payloads follow Yahoo's option-chain JSON shape::

    options(symbol)             -> {"expirationDates": [epoch, ...],
                                    "options": [{"calls": [...], "puts": [...]}]}
    options(symbol, expiration) -> same shape for that one expiration
    quote(symbol)               -> {"symbol": ..., "regularMarketPrice": ..., ...}

Raw contracts carry ``contractSymbol``, ``strike``, ``lastPrice``, ``bid``,
``ask``, ``volume``, ``openInterest``, ``impliedVolatility``,
``percentChange``, ``inTheMoney`` and ``expiration`` (epoch seconds).
"""
from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple

from config import settings


class QuoteSource(Protocol):
    async def options(self, symbol: str, expiration: Optional[int] = None) -> Dict[str, Any]:
        ...

    async def quote(self, symbol: str) -> Dict[str, Any]:
        ...


def first_chain(payload: Mapping[str, Any]) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    """Return ``(calls, puts)`` of the first expiration block, or two empty lists."""
    blocks = (payload or {}).get("options") or []
    if not blocks:
        return [], []
    block = blocks[0] or {}
    return list(block.get("calls") or []), list(block.get("puts") or [])


def has_chain(payload: Mapping[str, Any]) -> bool:
    blocks = (payload or {}).get("options") or []
    return bool(blocks) and blocks[0] is not None


def spot_price(quote: Mapping[str, Any]) -> float:
    price = (quote or {}).get("regularMarketPrice")
    try:
        return float(price)
    except (TypeError, ValueError):
        return 0.0


def build_quote_source(provider: Optional[str] = None) -> QuoteSource:
    provider = (provider or settings.quote_provider or "yfinance").lower()
    if provider == "yahoo":
        from services.providers.yahoo_http import YahooHttpSource

        return YahooHttpSource()
    from services.providers.yahoo_options import YFinanceSource

    return YFinanceSource()


__all__ = ["QuoteSource", "build_quote_source", "first_chain", "has_chain", "spot_price"]
