"""Yahoo Finance options provider backed by ``yfinance``."""
from __future__ import annotations

import asyncio
import datetime as dt
import logging
from typing import Any, Dict, List, Optional

import pandas as pd
import yfinance as yf

from services.errors import UpstreamFetchError

logger = logging.getLogger(__name__)

_CONTRACT_COLUMNS = [
    "contractSymbol",
    "strike",
    "lastPrice",
    "bid",
    "ask",
    "change",
    "percentChange",
    "volume",
    "openInterest",
    "impliedVolatility",
    "inTheMoney",
]


def _ticker(symbol: str) -> yf.Ticker:
    return yf.Ticker(symbol)


def _expiry_epoch(expiry: str) -> int:
    return int(pd.Timestamp(expiry, tz="UTC").timestamp())


def _expiry_label(epoch: int) -> str:
    return dt.datetime.fromtimestamp(int(epoch), tz=dt.timezone.utc).strftime("%Y-%m-%d")


def _records(df: Optional[pd.DataFrame], expiration: int) -> List[Dict[str, Any]]:
    if df is None or df.empty:
        return []
    frame = df.reindex(columns=_CONTRACT_COLUMNS)
    frame = frame.astype(object).where(pd.notna(frame), None)
    rows = frame.to_dict(orient="records")
    for row in rows:
        row["expiration"] = expiration
        if row.get("inTheMoney") is not None:
            row["inTheMoney"] = bool(row["inTheMoney"])
    return rows


def _list_expiries(ticker: yf.Ticker, symbol: str) -> List[str]:
    try:
        expiries = ticker.options
    except Exception as exc:
        raise UpstreamFetchError(symbol, f"yfinance: expiries error: {exc}") from exc
    if not expiries:
        raise UpstreamFetchError(symbol, "yfinance: no expiries available")
    return [str(e) for e in expiries]


def fetch_options(symbol: str, expiration: Optional[int] = None) -> Dict[str, Any]:
    ticker = _ticker(symbol)
    expiries = _list_expiries(ticker, symbol)
    label = _expiry_label(expiration) if expiration is not None else expiries[0]
    try:
        chain = ticker.option_chain(label)
    except Exception as exc:
        raise UpstreamFetchError(symbol, f"yfinance: option_chain error: {exc}") from exc
    epoch = _expiry_epoch(label)
    calls = _records(getattr(chain, "calls", None), epoch)
    puts = _records(getattr(chain, "puts", None), epoch)
    logger.debug(
        "yfinance_options_fetch symbol=%s expiry=%s calls=%d puts=%d",
        symbol,
        label,
        len(calls),
        len(puts),
    )
    return {
        "underlyingSymbol": symbol,
        "expirationDates": [_expiry_epoch(e) for e in expiries],
        "options": [{"expirationDate": epoch, "calls": calls, "puts": puts}],
    }


def fetch_quote(symbol: str) -> Dict[str, Any]:
    ticker = _ticker(symbol)
    try:
        info = ticker.fast_info
        price = info["lastPrice"]
        previous = info["previousClose"]
    except Exception as exc:
        raise UpstreamFetchError(symbol, f"yfinance: quote error: {exc}") from exc
    if price is None or pd.isna(price):
        raise UpstreamFetchError(symbol, "yfinance: no price")
    return {
        "symbol": symbol,
        "regularMarketPrice": float(price),
        "regularMarketPreviousClose": float(previous) if previous is not None and not pd.isna(previous) else None,
        "source": "yfinance",
    }


class YFinanceSource:
    """QuoteSource running the blocking ``yfinance`` calls in worker threads."""

    async def options(self, symbol: str, expiration: Optional[int] = None) -> Dict[str, Any]:
        return await asyncio.to_thread(fetch_options, symbol, expiration)

    async def quote(self, symbol: str) -> Dict[str, Any]:
        return await asyncio.to_thread(fetch_quote, symbol)


__all__ = ["YFinanceSource", "fetch_options", "fetch_quote"]
