"""Per-operation fetch cooldowns.

The gate answers one question: given that a cached payload exists, is it
worth going back to the provider?  When the market is closed the answer is
always no.  While it is open a fresh fetch is allowed once the operation's
cooldown has elapsed since the last *successful* fetch cycle.
"""
from __future__ import annotations

import logging
from typing import Dict, Mapping, Optional

logger = logging.getLogger(__name__)


class ThrottleGate:
    def __init__(self, cooldowns: Mapping[str, float], default_cooldown: float = 0.0) -> None:
        self._cooldowns: Dict[str, float] = dict(cooldowns)
        self._default = float(default_cooldown)
        self._last_fetch: Dict[str, float] = {}

    def cooldown(self, operation: str) -> float:
        return float(self._cooldowns.get(operation, self._default))

    def last_fetch(self, slot: str) -> float:
        # Unknown slots start at the epoch so the first call always proceeds.
        return self._last_fetch.get(slot, 0.0)

    def should_fetch(
        self,
        operation: str,
        now: float,
        market_open: bool,
        has_cached: bool,
        *,
        slot: Optional[str] = None,
    ) -> bool:
        """Return ``True`` when a fresh fetch is warranted.

        ``slot`` narrows the last-fetch bookkeeping below the operation (for
        example one slot per symbol for the chain view); the cooldown itself
        is always looked up by ``operation``.
        """

        if not has_cached:
            return True
        if not market_open:
            return False
        elapsed = now - self.last_fetch(slot or operation)
        if elapsed < self.cooldown(operation):
            logger.debug(
                "throttle_suppressed op=%s slot=%s elapsed=%.1fs cooldown=%.1fs",
                operation,
                slot or operation,
                elapsed,
                self.cooldown(operation),
            )
            return False
        return True

    def record_fetch(self, operation: str, now: float, *, slot: Optional[str] = None) -> None:
        """Mark a completed fetch cycle; failed cycles must not call this."""
        self._last_fetch[slot or operation] = float(now)

    def reset(self) -> None:
        self._last_fetch.clear()


__all__ = ["ThrottleGate"]
