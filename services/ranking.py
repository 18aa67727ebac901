"""Rank contracts by total premium traded."""
from __future__ import annotations

from operator import attrgetter
from typing import Iterable, List, Sequence

from services.contracts import Contract

_premium = attrgetter("total_premium")


def top_n(contracts: Iterable[Contract], n: int) -> List[Contract]:
    """Return the ``n`` largest contracts by total premium, descending.

    ``sorted`` is stable with ``reverse=True`` too, so equal premiums keep
    their encounter order.
    """
    if n <= 0:
        return []
    return sorted(contracts, key=_premium, reverse=True)[:n]


def merge_top(batches: Iterable[Sequence[Contract]], n: int) -> List[Contract]:
    """Merge per-batch top-K lists into a global top-``n``."""
    merged: List[Contract] = []
    for batch in batches:
        merged.extend(batch)
    return top_n(merged, n)


__all__ = ["merge_top", "top_n"]
