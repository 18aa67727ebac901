"""Cross-symbol volume statistics."""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional


@dataclass(frozen=True)
class SymbolVolume:
    symbol: str
    volume: int = 0
    calls: int = 0
    puts: int = 0

    @classmethod
    def from_chain(cls, symbol: str, calls: Iterable[Mapping[str, Any]], puts: Iterable[Mapping[str, Any]]) -> "SymbolVolume":
        call_volume = sum(_volume(c) for c in calls)
        put_volume = sum(_volume(p) for p in puts)
        return cls(symbol, call_volume + put_volume, call_volume, put_volume)


def _volume(contract: Mapping[str, Any]) -> int:
    value = contract.get("volume")
    try:
        out = float(value)
    except (TypeError, ValueError):
        return 0
    if math.isnan(out) or out < 0:
        return 0
    return int(out)


def put_call_ratio(total_puts: int, total_calls: int) -> float:
    """``puts / calls``; ``inf`` with puts but no calls, ``nan`` with neither."""
    if total_calls == 0:
        return math.inf if total_puts > 0 else math.nan
    return total_puts / total_calls


def summarize(volumes: Iterable[SymbolVolume]) -> Dict[str, Any]:
    total_volume = 0
    total_calls = 0
    total_puts = 0
    most_active = {"symbol": "", "volume": 0}
    for item in volumes:
        total_volume += item.volume
        total_calls += item.calls
        total_puts += item.puts
        # Strict comparison keeps the first symbol on ties.
        if item.volume > most_active["volume"]:
            most_active = {"symbol": item.symbol, "volume": item.volume}
    return {
        "totalVolume": total_volume,
        "totalCalls": total_calls,
        "totalPuts": total_puts,
        "mostActive": most_active,
        "putCallRatio": put_call_ratio(total_puts, total_calls),
    }


def finite_or_none(value: float) -> Optional[float]:
    return value if math.isfinite(value) else None


__all__ = ["SymbolVolume", "finite_or_none", "put_call_ratio", "summarize"]
