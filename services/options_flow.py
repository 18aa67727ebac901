"""Options-flow pipeline: fetch, cache and aggregate named views.

One :class:`OptionsFlowService` is built per process and handed to the
request handlers.  It owns the shared mutable state (view cache, fetch
cooldowns, in-flight fetch cycles), so tests can build isolated instances
with a fake quote source and a fixed clock.

Every view follows the same cycle:

1. read the market state and the cached payload for the view's key;
2. serve the cached payload when the throttle gate says a refetch is not
   warranted;
3. otherwise run one fetch+aggregate cycle (shared by concurrent callers of
   the same key), record the fetch with the gate and store the payload with a
   TTL picked from the market state at write time.

A failed cycle raises :class:`AggregationError` and leaves both the cache and
the cooldown untouched, so the next request retries immediately.
"""
from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import pandas as pd
from prometheus_client import Counter, Histogram

from config import Settings, settings as default_settings
from indices import (
    COMMON_OPTION_SYMBOLS,
    LONG_DATED_LARGE_SYMBOLS,
    SCREENER_SYMBOLS,
    SUMMARY_SYMBOLS,
    clean_symbols,
)
from services import market_calendar
from services.batch import BatchOrchestrator, SymbolResult
from services.contracts import CONTRACT_MULTIPLIER, Contract, days_until, normalize
from services.errors import AggregationError, UpstreamFetchError
from services.freshness_cache import FreshnessCache
from services.quote_source import QuoteSource, first_chain, has_chain, spot_price
from services.ranking import merge_top, top_n
from services.screening import ScreenCriteria, screen
from services.summary import SymbolVolume, finite_or_none, summarize
from services.throttle import ThrottleGate
from utils import isoformat_utc, now_et

logger = logging.getLogger(__name__)

SUMMARY_STATS = "summaryStats"
OPTIONS_CHAIN = "optionsChain"
TOP_MOVERS = "topMovers"
LONG_DATED = "longDated"
LONG_DATED_LARGE = "longDatedLarge"
SCREEN = "screen"
OPTION_DETAILS = "optionDetails"
EXPIRATIONS = "expirations"

ERROR_MESSAGES = {
    SUMMARY_STATS: "Failed to fetch summary statistics",
    OPTIONS_CHAIN: "Failed to fetch options chain",
    TOP_MOVERS: "Failed to fetch top movers",
    LONG_DATED: "Failed to fetch long-dated options",
    LONG_DATED_LARGE: "Failed to fetch long-dated large options",
    SCREEN: "Failed to screen options",
    OPTION_DETAILS: "Failed to fetch option details",
    EXPIRATIONS: "Failed to fetch expirations",
}

views_served = Counter(
    "optionflow_views_total", "Views served by source", ["view", "source"]
)
cycle_duration = Histogram(
    "optionflow_fetch_cycle_seconds", "Duration of fetch+aggregate cycles", ["view"]
)

Build = Callable[[datetime, bool], Awaitable[Dict[str, Any]]]


def add_months(ts: datetime, months: int) -> datetime:
    """Calendar-month offset (Jan 31 + 1 month lands on the last day of Feb)."""
    return (pd.Timestamp(ts) + pd.DateOffset(months=months)).to_pydatetime()


def _require_any(view: str, results: Sequence[SymbolResult]) -> None:
    if results and not any(r.ok for r in results):
        logger.error("view_all_symbols_failed view=%s symbols=%d", view, len(results))
        raise AggregationError(view, ERROR_MESSAGES[view])


def _view_key(view: str, symbols: List[str], default: Sequence[str]) -> str:
    if list(symbols) == list(default):
        return view
    return f"{view}:{','.join(symbols)}"


class OptionsFlowService:
    def __init__(
        self,
        source: QuoteSource,
        *,
        config: Optional[Settings] = None,
        clock: Callable[[], datetime] = now_et,
        market_clock: Callable[[datetime], bool] = market_calendar.is_open,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        cfg = config or default_settings
        self.source = source
        self.config = cfg
        self._clock = clock
        self._is_open = market_clock
        self.cache = FreshnessCache(
            cfg.cache_ttl_market_open,
            cfg.cache_ttl_market_closed,
            clock=lambda: self._clock().timestamp(),
        )
        self.gate = ThrottleGate(
            {
                SUMMARY_STATS: cfg.cooldown_summary_stats,
                OPTIONS_CHAIN: cfg.cooldown_options_chain,
                TOP_MOVERS: cfg.cooldown_top_movers,
                LONG_DATED: cfg.cooldown_long_dated,
                LONG_DATED_LARGE: cfg.cooldown_long_dated_large,
                SCREEN: cfg.cooldown_screen,
            }
        )
        self.batches = BatchOrchestrator(
            timeout=cfg.fetch_timeout,
            retries=cfg.fetch_retry_max,
            retry_base=cfg.fetch_retry_base_ms / 1000.0,
            retry_cap=cfg.fetch_retry_cap_ms / 1000.0,
            sleep=sleep,
        )
        self._inflight: Dict[str, asyncio.Task] = {}

    # --- cache / throttle cycle ------------------------------------------

    async def _serve(self, view: str, key: str, build: Build, *, slot: Optional[str] = None) -> Dict[str, Any]:
        now = self._clock()
        market_open = self._is_open(now)
        cached = self.cache.get(key)
        if cached is not None and not self.gate.should_fetch(
            view, now.timestamp(), market_open, True, slot=slot
        ):
            logger.info("view_cached view=%s key=%s market_open=%s", view, key, market_open)
            views_served.labels(view=view, source="cache").inc()
            return cached

        inflight = self._inflight.get(key)
        if inflight is not None:
            logger.info("view_join_inflight view=%s key=%s", view, key)
            return await asyncio.shield(inflight)

        task = asyncio.create_task(self._cycle(view, key, build, now, market_open, slot))
        self._inflight[key] = task
        try:
            return await asyncio.shield(task)
        finally:
            if task.done():
                self._inflight.pop(key, None)
            else:
                task.add_done_callback(lambda t: self._settle(key, t))

    def _settle(self, key: str, task: asyncio.Task) -> None:
        self._inflight.pop(key, None)
        # Read the outcome so an orphaned failure is not reported as unretrieved.
        if not task.cancelled():
            task.exception()

    async def _cycle(
        self,
        view: str,
        key: str,
        build: Build,
        now: datetime,
        market_open: bool,
        slot: Optional[str],
    ) -> Dict[str, Any]:
        logger.info("view_fetch view=%s key=%s market_open=%s", view, key, market_open)
        started = time.perf_counter()
        try:
            payload = await build(now, market_open)
        except AggregationError:
            raise
        except Exception as exc:
            logger.exception("view_failed view=%s key=%s", view, key)
            raise AggregationError(view, ERROR_MESSAGES[view]) from exc
        cycle_duration.labels(view=view).observe(time.perf_counter() - started)
        self.gate.record_fetch(view, now.timestamp(), slot=slot)
        self.cache.set(key, payload, self._is_open(self._clock()))
        views_served.labels(view=view, source="fetch").inc()
        return payload

    def _stamp(self, payload: Dict[str, Any], now: datetime, market_open: bool) -> Dict[str, Any]:
        payload["marketStatus"] = market_open
        payload["lastUpdate"] = isoformat_utc(now)
        return payload

    # --- per-symbol fetch helpers ---------------------------------------

    async def _chain_and_quote(self, symbol: str) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        options, quote = await asyncio.gather(
            self.source.options(symbol), self.source.quote(symbol)
        )
        if not has_chain(options):
            raise UpstreamFetchError(symbol, "no options data")
        return options, quote

    async def _expiration_chains(
        self, symbol: str, options: Dict[str, Any], expirations: Iterable[int]
    ) -> List[Tuple[int, List[Dict[str, Any]]]]:
        """Return ``(expiration, calls + puts)`` per expiry, fetched one at a time.

        The nearest expiry's chain already sits in ``options`` and is reused.
        """
        nearest = (options.get("options") or [{}])[0] or {}
        out: List[Tuple[int, List[Dict[str, Any]]]] = []
        for exp in expirations:
            if nearest.get("expirationDate") == exp:
                calls, puts = first_chain(options)
            else:
                chain = await self.source.options(symbol, exp)
                if not has_chain(chain):
                    logger.info("expiration_empty symbol=%s expiration=%s", symbol, exp)
                    continue
                calls, puts = first_chain(chain)
            out.append((exp, calls + puts))
        return out

    def _normalize_all(
        self,
        symbol: str,
        raws: Iterable[Dict[str, Any]],
        spot: float,
        now: datetime,
        expiration: Optional[int] = None,
    ) -> List[Contract]:
        out: List[Contract] = []
        for raw in raws:
            contract = normalize(symbol, raw, spot, now=now, expiration=expiration)
            if contract is not None:
                out.append(contract)
        return out

    # --- views ------------------------------------------------------------

    async def summary_stats(self, symbols: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        syms = clean_symbols(symbols, SUMMARY_SYMBOLS)
        cfg = self.config

        async def per_symbol(symbol: str) -> SymbolVolume:
            options = await self.source.options(symbol)
            if not has_chain(options):
                raise UpstreamFetchError(symbol, "no options data")
            calls, puts = first_chain(options)
            return SymbolVolume.from_chain(symbol, calls, puts)

        async def build(now: datetime, market_open: bool) -> Dict[str, Any]:
            results = await self.batches.fetch_all(
                syms, per_symbol, cfg.summary_batch_size, cfg.summary_batch_delay
            )
            _require_any(SUMMARY_STATS, results)
            stats = summarize(r.value_or(SymbolVolume(r.symbol)) for r in results)
            # A non-finite ratio (no call volume) is rendered as null.
            stats["putCallRatio"] = finite_or_none(stats["putCallRatio"])
            return self._stamp(stats, now, market_open)

        return await self._serve(SUMMARY_STATS, _view_key(SUMMARY_STATS, syms, SUMMARY_SYMBOLS), build)

    async def options_chain(self, symbol: str) -> Dict[str, Any]:
        sym = clean_symbols([symbol], ["SPY"])[0]
        key = f"{OPTIONS_CHAIN}:{sym}"

        async def build(now: datetime, market_open: bool) -> Dict[str, Any]:
            fetch = self._chain_and_quote(sym)
            if self.batches.timeout:
                fetch = asyncio.wait_for(fetch, self.batches.timeout)
            options, quote = await fetch
            calls, puts = first_chain(options)
            payload = {
                "symbol": sym,
                "underlying": quote,
                "expirations": list(options.get("expirationDates") or []),
                "calls": calls,
                "puts": puts,
            }
            return self._stamp(payload, now, market_open)

        return await self._serve(OPTIONS_CHAIN, key, build, slot=key)

    async def top_movers(self, symbols: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        syms = clean_symbols(symbols, COMMON_OPTION_SYMBOLS)
        cfg = self.config

        async def build(now: datetime, market_open: bool) -> Dict[str, Any]:
            async def per_symbol(symbol: str) -> List[Contract]:
                options, quote = await self._chain_and_quote(symbol)
                calls, puts = first_chain(options)
                contracts = self._normalize_all(symbol, calls + puts, spot_price(quote), now)
                return [
                    c
                    for c in contracts
                    if c.volume > cfg.top_movers_min_volume and c.open_interest > 0
                ]

            ranked = await self._ranked(
                TOP_MOVERS,
                syms,
                per_symbol,
                cfg.top_movers_batch_size,
                cfg.top_movers_batch_delay,
                cfg.batch_top_k,
            )
            return self._stamp({"data": [c.to_dict() for c in ranked]}, now, market_open)

        return await self._serve(TOP_MOVERS, _view_key(TOP_MOVERS, syms, COMMON_OPTION_SYMBOLS), build)

    async def _ranked(
        self,
        view: str,
        symbols: List[str],
        per_symbol: Callable[[str], Awaitable[List[Contract]]],
        batch_size: int,
        delay: float,
        batch_k: int,
        *,
        timeout: Optional[float] = None,
    ) -> List[Contract]:
        """Keep only each batch's top-K, then merge into the global top-N."""
        seen: List[SymbolResult] = []
        kept: List[List[Contract]] = []
        async for results in self.batches.iter_batches(
            symbols, per_symbol, batch_size, delay, timeout=timeout
        ):
            seen.extend(results)
            flat = [c for r in results for c in r.value_or([])]
            kept.append(top_n(flat, batch_k))
        _require_any(view, seen)
        ranked = merge_top(kept, self.config.top_n)
        logger.info("view_ranked view=%s symbols=%d kept=%d", view, len(symbols), len(ranked))
        if ranked:
            best = ranked[0]
            logger.info(
                "view_largest view=%s ticker=%s type=%s premium=%.0f",
                view,
                best.ticker,
                best.type,
                best.total_premium,
            )
        return ranked

    async def long_dated(self, symbols: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        syms = clean_symbols(symbols, COMMON_OPTION_SYMBOLS)
        cfg = self.config

        async def build(now: datetime, market_open: bool) -> Dict[str, Any]:
            start = now.timestamp()
            window_end = add_months(now, cfg.long_dated_months)
            end = window_end.timestamp()

            async def per_symbol(symbol: str) -> List[Contract]:
                options, quote = await self._chain_and_quote(symbol)
                spot = spot_price(quote)
                wanted = [e for e in options.get("expirationDates") or [] if start < e <= end]
                out: List[Contract] = []
                for exp, raws in await self._expiration_chains(symbol, options, wanted):
                    out.extend(
                        c
                        for c in self._normalize_all(symbol, raws, spot, now, exp)
                        if c.volume > cfg.long_dated_min_volume and c.open_interest > 0
                    )
                return out

            ranked = await self._ranked(
                LONG_DATED,
                syms,
                per_symbol,
                cfg.long_dated_batch_size,
                cfg.long_dated_batch_delay,
                cfg.batch_top_k,
                timeout=cfg.long_dated_fetch_timeout,
            )
            payload = {
                "windowEnd": isoformat_utc(window_end),
                "data": [c.to_dict() for c in ranked],
            }
            return self._stamp(payload, now, market_open)

        return await self._serve(LONG_DATED, _view_key(LONG_DATED, syms, COMMON_OPTION_SYMBOLS), build)

    async def long_dated_large(self, symbols: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        syms = clean_symbols(symbols, LONG_DATED_LARGE_SYMBOLS)
        cfg = self.config
        spots: Dict[str, float] = {}

        async def build(now: datetime, market_open: bool) -> Dict[str, Any]:
            start = add_months(now, cfg.long_dated_large_min_months).timestamp()
            end = add_months(now, cfg.long_dated_large_max_months).timestamp()

            async def per_symbol(symbol: str) -> List[Contract]:
                options, quote = await self._chain_and_quote(symbol)
                spot = spots[symbol] = spot_price(quote)
                wanted = [e for e in options.get("expirationDates") or [] if start <= e <= end]
                out: List[Contract] = []
                for exp, raws in await self._expiration_chains(symbol, options, wanted):
                    out.extend(
                        c
                        for c in self._normalize_all(symbol, raws, spot, now, exp)
                        if c.volume >= cfg.long_dated_large_min_volume
                        and c.total_premium >= cfg.long_dated_large_min_value
                    )
                logger.info("long_dated_large_symbol symbol=%s trades=%d", symbol, len(out))
                return out

            # Per-batch top-N keeps the merge exact for this smaller universe.
            ranked = await self._ranked(
                LONG_DATED_LARGE,
                syms,
                per_symbol,
                cfg.long_dated_large_batch_size,
                cfg.long_dated_large_batch_delay,
                cfg.top_n,
                timeout=cfg.long_dated_fetch_timeout,
            )
            data = []
            for c in ranked:
                row = c.to_dict()
                spot = spots.get(c.ticker) or c.underlying_price
                row["totalValue"] = c.total_premium
                row["notional"] = c.strike * c.volume * CONTRACT_MULTIPLIER
                row["distanceFromPrice"] = (
                    round(abs(c.strike - spot) / spot * 100, 2) if spot else None
                )
                data.append(row)
            payload = {
                "count": len(data),
                "totalValue": sum(c.total_premium for c in ranked),
                "data": data,
            }
            return self._stamp(payload, now, market_open)

        return await self._serve(
            LONG_DATED_LARGE, _view_key(LONG_DATED_LARGE, syms, LONG_DATED_LARGE_SYMBOLS), build
        )

    async def screen(self, criteria: ScreenCriteria) -> Dict[str, Any]:
        cfg = self.config
        syms = list(criteria.symbols) or list(SCREENER_SYMBOLS)
        key = f"{SCREEN}:{criteria.cache_token()}"

        async def build(now: datetime, market_open: bool) -> Dict[str, Any]:
            async def per_symbol(symbol: str) -> List[Contract]:
                options, quote = await self._chain_and_quote(symbol)
                dates = sorted(options.get("expirationDates") or [])
                if criteria.has_days_window:
                    wanted = [e for e in dates if criteria.days_in_window(days_until(_utc(e), now))]
                    wanted = wanted[: max(1, cfg.screen_max_expirations)]
                else:
                    wanted = dates[:1]
                contracts: List[Contract] = []
                for exp, raws in await self._expiration_chains(symbol, options, wanted):
                    contracts.extend(self._normalize_all(symbol, raws, spot_price(quote), now, exp))
                matched = screen(contracts, criteria)
                logger.info(
                    "screen_symbol symbol=%s expirations=%d contracts=%d matched=%d",
                    symbol,
                    len(wanted),
                    len(contracts),
                    len(matched),
                )
                return matched

            results = await self.batches.fetch_all(
                syms, per_symbol, cfg.screen_batch_size, cfg.screen_batch_delay
            )
            _require_any(SCREEN, results)
            matched = [c for r in results for c in r.value_or([])]
            return {
                "count": len(matched),
                "results": [c.to_dict() for c in matched],
                "timestamp": isoformat_utc(now),
                "marketStatus": market_open,
            }

        return await self._serve(SCREEN, key, build)

    # --- uncached passthroughs -------------------------------------------

    async def option_details(self, option_symbol: str) -> Dict[str, Any]:
        try:
            return await self.source.quote(option_symbol.strip().upper())
        except Exception as exc:
            logger.warning("option_details_failed contract=%s err=%r", option_symbol, exc)
            raise AggregationError(OPTION_DETAILS, ERROR_MESSAGES[OPTION_DETAILS]) from exc

    async def expirations(self, symbol: str) -> List[int]:
        sym = symbol.strip().upper()
        try:
            options = await self.source.options(sym)
        except Exception as exc:
            logger.warning("expirations_failed symbol=%s err=%r", sym, exc)
            raise AggregationError(EXPIRATIONS, ERROR_MESSAGES[EXPIRATIONS]) from exc
        return list(options.get("expirationDates") or [])


def _utc(epoch: int) -> datetime:
    return pd.Timestamp(int(epoch), unit="s", tz="UTC").to_pydatetime()


__all__ = ["OptionsFlowService", "add_months"]
