"""Paced, failure-isolating fan-out of per-symbol fetches.

Symbols are split into consecutive groups.  Each group runs concurrently and
is joined before the next group starts; between groups the orchestrator
sleeps so the upstream provider is not hammered.  A symbol that raises (or
times out) occupies its slot with an empty result instead of aborting the
run.
"""
from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Generic,
    List,
    Optional,
    Sequence,
    TypeVar,
)

from prometheus_client import Counter, Histogram

logger = logging.getLogger(__name__)

T = TypeVar("T")

symbol_failures = Counter(
    "optionflow_symbol_failures_total", "Per-symbol upstream fetch failures"
)
batch_duration = Histogram(
    "optionflow_batch_duration_seconds", "Duration of one concurrent symbol group"
)


@dataclass
class SymbolResult(Generic[T]):
    symbol: str
    value: Optional[T] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def value_or(self, default: T) -> T:
        return self.value if self.ok and self.value is not None else default


def partition(items: Sequence[str], size: int) -> List[List[str]]:
    size = max(1, int(size))
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


class BatchOrchestrator:
    def __init__(
        self,
        *,
        timeout: Optional[float] = None,
        retries: int = 0,
        retry_base: float = 0.3,
        retry_cap: float = 5.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.timeout = timeout if timeout and timeout > 0 else None
        self.retries = max(0, int(retries))
        self.retry_base = retry_base
        self.retry_cap = retry_cap
        self._sleep = sleep

    async def _call(
        self, op: Callable[[str], Awaitable[T]], symbol: str, timeout: Optional[float]
    ) -> T:
        if timeout is None:
            return await op(symbol)
        return await asyncio.wait_for(op(symbol), timeout)

    async def _guarded(
        self,
        op: Callable[[str], Awaitable[T]],
        symbol: str,
        timeout: Optional[float],
    ) -> SymbolResult[T]:
        attempt = 0
        while True:
            try:
                return SymbolResult(symbol, await self._call(op, symbol, timeout))
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if attempt >= self.retries:
                    symbol_failures.inc()
                    logger.warning(
                        "upstream_error symbol=%s attempts=%d err=%r",
                        symbol,
                        attempt + 1,
                        exc,
                    )
                    return SymbolResult(symbol, None, exc)
                wait = min(self.retry_cap, self.retry_base * (2**attempt))
                wait += random.uniform(0, wait * 0.2)
                logger.info(
                    "upstream_retry symbol=%s attempt=%d wait=%.2fs err=%r",
                    symbol,
                    attempt + 1,
                    wait,
                    exc,
                )
                attempt += 1
                await self._sleep(wait)

    async def iter_batches(
        self,
        symbols: Sequence[str],
        op: Callable[[str], Awaitable[T]],
        batch_size: int,
        delay: float,
        *,
        timeout: Optional[float] = None,
    ) -> AsyncIterator[List[SymbolResult[T]]]:
        """Yield each group's settled results in symbol order.

        ``timeout`` overrides the per-symbol limit for heavier operations.
        """

        limit = timeout if timeout and timeout > 0 else self.timeout
        groups = partition(symbols, batch_size)
        total = len(groups)
        logger.info(
            "batch_start symbols=%d batch_size=%d batches=%d",
            len(symbols),
            max(1, int(batch_size)),
            total,
        )
        for index, group in enumerate(groups, start=1):
            started = time.perf_counter()
            results = await asyncio.gather(
                *(self._guarded(op, sym, limit) for sym in group)
            )
            elapsed = time.perf_counter() - started
            batch_duration.observe(elapsed)
            failed = sum(1 for r in results if not r.ok)
            logger.info(
                "batch_done batch=%d/%d symbols=%d failed=%d elapsed=%.2fs",
                index,
                total,
                len(group),
                failed,
                elapsed,
            )
            yield list(results)
            if index < total and delay > 0:
                await self._sleep(delay)

    async def fetch_all(
        self,
        symbols: Sequence[str],
        op: Callable[[str], Awaitable[T]],
        batch_size: int,
        delay: float,
        *,
        timeout: Optional[float] = None,
    ) -> List[SymbolResult[T]]:
        out: List[SymbolResult[T]] = []
        async for results in self.iter_batches(
            symbols, op, batch_size, delay, timeout=timeout
        ):
            out.extend(results)
        return out


__all__ = ["BatchOrchestrator", "SymbolResult", "partition"]
