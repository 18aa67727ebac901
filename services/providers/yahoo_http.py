"""Yahoo Finance options provider using the public v7 JSON endpoints."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from config import settings
from services import http_client
from services.errors import UpstreamFetchError

logger = logging.getLogger(__name__)

OPTIONS_URL = "https://query2.finance.yahoo.com/v7/finance/options/{symbol}"
QUOTE_URL = "https://query1.finance.yahoo.com/v7/finance/quote"

# All callers share one request budget per Yahoo host.
for _host in ("query1.finance.yahoo.com", "query2.finance.yahoo.com"):
    http_client.set_rate_limit(_host, settings.yf_max_rps, settings.yf_max_burst)


async def _get_json(symbol: str, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    try:
        data = await http_client.get_json(url, params=params)
    except (httpx.HTTPError, ValueError) as exc:
        raise UpstreamFetchError(symbol, f"yahoo: request failed: {exc!r}") from exc
    if not isinstance(data, dict):
        raise UpstreamFetchError(symbol, "yahoo: malformed payload")
    return data


class YahooHttpSource:
    async def options(self, symbol: str, expiration: Optional[int] = None) -> Dict[str, Any]:
        params = {"date": int(expiration)} if expiration is not None else None
        data = await _get_json(symbol, OPTIONS_URL.format(symbol=symbol), params)
        chain = data.get("optionChain") or {}
        if chain.get("error"):
            raise UpstreamFetchError(symbol, f"yahoo: {chain['error']}")
        results = chain.get("result") or []
        if not results:
            raise UpstreamFetchError(symbol, "yahoo: empty option chain")
        result = results[0]
        logger.debug(
            "yahoo_options_fetch symbol=%s expiration=%s expirations=%d",
            symbol,
            expiration,
            len(result.get("expirationDates") or []),
        )
        return {
            "underlyingSymbol": result.get("underlyingSymbol", symbol),
            "expirationDates": list(result.get("expirationDates") or []),
            "options": list(result.get("options") or []),
        }

    async def quote(self, symbol: str) -> Dict[str, Any]:
        data = await _get_json(symbol, QUOTE_URL, {"symbols": symbol})
        results = (data.get("quoteResponse") or {}).get("result") or []
        if not results:
            raise UpstreamFetchError(symbol, "yahoo: empty quote")
        return dict(results[0])


__all__ = ["YahooHttpSource", "OPTIONS_URL", "QUOTE_URL"]
