"""Market hours helpers used by the options pipeline."""

from datetime import datetime
from typing import Optional

from utils import market_is_open


def is_open(ts: Optional[datetime] = None) -> bool:
    """Return ``True`` when regular US equity options trading is live at ``ts``."""

    return market_is_open(ts)


__all__ = ["is_open"]
