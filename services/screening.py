"""Multi-criteria option screening.

Every constraint in :class:`ScreenCriteria` is optional and independent.  A
contract passes when each *set* constraint passes; an unset constraint never
rejects anything, so ``ScreenCriteria()`` admits every contract.
"""
from __future__ import annotations

import json
import logging
import math
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, List, Mapping, Optional, Tuple

from indices import SCREENER_SYMBOLS, clean_symbols
from services.contracts import CALL, PUT, Contract

logger = logging.getLogger(__name__)

OPTION_TYPES = ("all", "calls", "puts")
MONEYNESS = ("all", "itm", "otm")

# Substituted for missing or unparsable request values.
DEFAULT_MIN_VOLUME = 50
DEFAULT_MIN_DAYS = 0
DEFAULT_MAX_DAYS = 30


@dataclass(frozen=True)
class ScreenCriteria:
    min_volume: Optional[int] = None
    min_open_interest: Optional[int] = None
    min_iv: Optional[float] = None
    max_iv: Optional[float] = None
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    min_days: Optional[int] = None
    max_days: Optional[int] = None
    option_type: str = "all"
    moneyness: str = "all"
    symbols: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def has_days_window(self) -> bool:
        return self.min_days is not None or self.max_days is not None

    def days_in_window(self, days: int) -> bool:
        if self.min_days is not None and days < self.min_days:
            return False
        if self.max_days is not None and days > self.max_days:
            return False
        return True

    def cache_token(self) -> str:
        """Canonical serialisation; distinct criteria never share a token."""
        data = asdict(self)
        data["symbols"] = list(self.symbols)
        return json.dumps(data, sort_keys=True, separators=(",", ":"))


def _within(value: float, low: Optional[float], high: Optional[float]) -> bool:
    if low is not None and value < low:
        return False
    if high is not None and value > high:
        return False
    return True


def matches(contract: Contract, criteria: ScreenCriteria) -> bool:
    if criteria.min_volume is not None and contract.volume < criteria.min_volume:
        return False
    if criteria.min_open_interest is not None and contract.open_interest < criteria.min_open_interest:
        return False
    if not _within(contract.implied_volatility, criteria.min_iv, criteria.max_iv):
        return False
    if not _within(contract.last_price, criteria.min_price, criteria.max_price):
        return False
    if criteria.option_type == "calls" and contract.type != CALL:
        return False
    if criteria.option_type == "puts" and contract.type != PUT:
        return False
    if criteria.moneyness == "itm" and not contract.is_itm:
        return False
    if criteria.moneyness == "otm" and contract.is_itm:
        return False
    if not criteria.days_in_window(contract.days_to_expiration):
        return False
    return True


def screen(contracts: Iterable[Contract], criteria: ScreenCriteria) -> List[Contract]:
    return [c for c in contracts if matches(c, criteria)]


# --- request parsing ---------------------------------------------------------


def _coerce(value: Any, caster, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, str) and not value.strip():
        return default
    try:
        out = caster(value)
    except (TypeError, ValueError, OverflowError):
        return default
    # nan and inf never make a usable bound.
    if isinstance(out, float) and not math.isfinite(out):
        return default
    return out


def _int_like(value: Any) -> int:
    return int(float(value))


def _pick(value: Any, allowed: Tuple[str, ...], default: str) -> str:
    lowered = str(value or "").strip().lower()
    return lowered if lowered in allowed else default


def criteria_from_params(params: Mapping[str, Any]) -> ScreenCriteria:
    """Build criteria from request values, substituting defaults for bad input.

    Accepts the flat query-string names (``minDays``/``maxDays``) as well as
    the nested body form ``daysToExpiration: {"min": .., "max": ..}``.
    """

    days = params.get("daysToExpiration")
    days = days if isinstance(days, Mapping) else {}
    min_days = _coerce(days.get("min", params.get("minDays")), _int_like, DEFAULT_MIN_DAYS)
    max_days = _coerce(days.get("max", params.get("maxDays")), _int_like, DEFAULT_MAX_DAYS)
    if min_days > max_days:
        logger.info("screen_params days_swapped min=%s max=%s", min_days, max_days)
        min_days, max_days = max_days, min_days

    criteria = ScreenCriteria(
        min_volume=_coerce(params.get("minVolume"), _int_like, DEFAULT_MIN_VOLUME),
        min_open_interest=_coerce(params.get("minOpenInterest"), _int_like, None),
        min_iv=_coerce(params.get("minIV"), float, None),
        max_iv=_coerce(params.get("maxIV"), float, None),
        min_price=_coerce(params.get("minPrice"), float, None),
        max_price=_coerce(params.get("maxPrice"), float, None),
        min_days=min_days,
        max_days=max_days,
        option_type=_pick(params.get("optionType"), OPTION_TYPES, "all"),
        moneyness=_pick(params.get("inTheMoney"), MONEYNESS, "all"),
        symbols=tuple(clean_symbols(params.get("symbols"), SCREENER_SYMBOLS)),
    )
    return criteria


__all__ = [
    "MONEYNESS",
    "OPTION_TYPES",
    "ScreenCriteria",
    "criteria_from_params",
    "matches",
    "screen",
]
