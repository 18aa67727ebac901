"""Canonical option contract records and the raw-to-canonical mapping."""
from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

CALL = "CALL"
PUT = "PUT"
BOUGHT = "BOUGHT"
SOLD = "SOLD"

CONTRACT_MULTIPLIER = 100
UNUSUAL_VOLUME_RATIO = 0.1
_SECONDS_PER_DAY = 24 * 60 * 60

# OCC layout: root, YYMMDD expiry, C/P, strike * 1000 padded to 8 digits.
_OCC_RE = re.compile(r"^(?P<root>[A-Z0-9.]{1,6}?)(?P<expiry>\d{6})(?P<cp>[CP])(?P<strike>\d{8})$")


def contract_type(contract_symbol: str) -> str:
    """Return ``CALL`` or ``PUT`` from an OCC contract symbol."""
    match = _OCC_RE.match(str(contract_symbol or "").strip().upper().replace(" ", ""))
    if not match:
        raise ValueError(f"unrecognised contract symbol: {contract_symbol!r}")
    return CALL if match.group("cp") == "C" else PUT


def _num(value: Any, default: float = 0.0) -> float:
    try:
        out = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(out):
        return default
    return out


def _count(value: Any) -> int:
    return max(0, int(_num(value)))


def _as_utc(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    seconds = _num(value, default=-1.0)
    if seconds < 0:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


@dataclass(frozen=True)
class Contract:
    ticker: str
    contract_symbol: str
    strike: float
    expiration: datetime
    type: str
    last_price: float
    bid: float
    ask: float
    volume: int
    open_interest: int
    implied_volatility: float
    percent_change: float
    in_the_money: bool
    underlying_price: float
    days_to_expiration: int

    @property
    def total_premium(self) -> float:
        return self.last_price * self.volume * CONTRACT_MULTIPLIER

    @property
    def volume_to_open_interest(self) -> float:
        return self.volume / self.open_interest if self.open_interest > 0 else 0.0

    @property
    def unusual_volume(self) -> bool:
        return self.volume > self.open_interest * UNUSUAL_VOLUME_RATIO

    @property
    def action(self) -> str:
        return BOUGHT if self.volume > self.open_interest else SOLD

    @property
    def is_itm(self) -> bool:
        """Moneyness from spot versus strike; the provider flag is not consulted."""
        if self.type == CALL:
            return self.underlying_price > self.strike
        return self.underlying_price < self.strike

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ticker": self.ticker,
            "contractSymbol": self.contract_symbol,
            "strike": self.strike,
            "expiration": self.expiration.date().isoformat(),
            "type": self.type,
            "lastPrice": self.last_price,
            "bid": self.bid,
            "ask": self.ask,
            "volume": self.volume,
            "openInterest": self.open_interest,
            "impliedVolatility": self.implied_volatility,
            "percentChange": self.percent_change,
            "inTheMoney": self.in_the_money,
            "underlyingPrice": self.underlying_price,
            "totalPremium": self.total_premium,
            "daysToExpiration": self.days_to_expiration,
            "volumeToOpenInterest": self.volume_to_open_interest,
            "unusualVolume": self.unusual_volume,
            "action": self.action,
        }


def days_until(expiration: datetime, now: datetime) -> int:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return math.ceil((expiration - now).total_seconds() / _SECONDS_PER_DAY)


def normalize(
    symbol: str,
    raw: Mapping[str, Any],
    underlying_price: Any,
    *,
    now: datetime,
    expiration: Any = None,
) -> Optional[Contract]:
    """Map one raw provider contract to a :class:`Contract`.

    Returns ``None`` for contracts without volume, without a positive last
    price, or whose identifier does not parse.  Stricter liquidity floors are
    left to the calling view.  ``expiration`` overrides the raw record's own
    field when the caller already knows which expiry it requested.
    """

    volume = _count(raw.get("volume"))
    last_price = _num(raw.get("lastPrice"))
    if volume <= 0 or last_price <= 0:
        return None

    contract_symbol = str(raw.get("contractSymbol") or "")
    try:
        opt_type = contract_type(contract_symbol)
    except ValueError:
        logger.debug("normalize_skip symbol=%s contract=%r", symbol, contract_symbol)
        return None

    exp = _as_utc(expiration if expiration is not None else raw.get("expiration"))
    if exp is None:
        logger.debug("normalize_skip symbol=%s contract=%s reason=no_expiration", symbol, contract_symbol)
        return None

    return Contract(
        ticker=symbol,
        contract_symbol=contract_symbol,
        strike=_num(raw.get("strike")),
        expiration=exp,
        type=opt_type,
        last_price=last_price,
        bid=_num(raw.get("bid")),
        ask=_num(raw.get("ask")),
        volume=volume,
        open_interest=_count(raw.get("openInterest")),
        implied_volatility=_num(raw.get("impliedVolatility")),
        percent_change=_num(raw.get("percentChange")),
        in_the_money=bool(raw.get("inTheMoney") or False),
        underlying_price=_num(underlying_price),
        days_to_expiration=days_until(exp, now),
    )


__all__ = [
    "BOUGHT",
    "CALL",
    "CONTRACT_MULTIPLIER",
    "Contract",
    "PUT",
    "SOLD",
    "contract_type",
    "days_until",
    "normalize",
]
