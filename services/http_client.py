import asyncio
import logging
import os
import random
import time
from typing import Any, Dict, Mapping, Optional, Tuple

import httpx
from prometheus_client import Counter, Histogram

from config import settings

logger = logging.getLogger(__name__)

MAX_CONCURRENCY = settings.http_max_concurrency
# Waits are capped at 64s; a retry budget of a handful keeps one symbol from
# stalling its batch for minutes.
MAX_RETRIES = int(os.getenv("HTTP_MAX_RETRIES", "4"))
USER_AGENT = os.getenv(
    "HTTP_USER_AGENT",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0 Safari/537.36",
)
# A host answering 429 for longer than this is paused for CIRCUIT_COOLDOWN.
CIRCUIT_WINDOW = 60.0
CIRCUIT_COOLDOWN = 90.0

_client: Optional[httpx.AsyncClient] = None
_semaphore = asyncio.Semaphore(MAX_CONCURRENCY)
_rate_limiters: Dict[str, "TokenBucket"] = {}

# Chain and quote GETs repeat across views within a cycle; identical ones share
# one upstream call while in flight and for CACHE_TTL seconds after.
_CACHE: Dict[str, Tuple[float, httpx.Response]] = {}
_INFLIGHT: Dict[str, asyncio.Future] = {}
CACHE_TTL = int(os.getenv("HTTP_CACHE_TTL", "30"))  # seconds

rate_limited = Counter(
    "optionflow_http_rate_limited_total", "Upstream responses answered with 429"
)
circuit_open = Counter("optionflow_http_circuit_open_total", "Hosts paused after sustained 429s")
request_duration = Histogram(
    "optionflow_http_request_duration_seconds", "Time to a usable upstream response, retries included"
)


class TokenBucket:
    def __init__(self, rate: float, capacity: int) -> None:
        self.rate = rate
        self.capacity = capacity
        self.tokens: float = capacity
        self.updated = time.monotonic()

    def _refill(self) -> None:
        now = time.monotonic()
        self.tokens = min(self.capacity, self.tokens + (now - self.updated) * self.rate)
        self.updated = now

    async def consume(self, amount: int = 1) -> float:
        """Take ``amount`` tokens, sleeping until they accrue; returns the time waited."""
        if self.rate <= 0:
            raise RuntimeError("token bucket rate must be positive")
        waited = 0.0
        while True:
            self._refill()
            if self.tokens >= amount:
                self.tokens -= amount
                return waited
            pause = (amount - self.tokens) / self.rate
            await asyncio.sleep(pause)
            waited += pause


class HostCircuit:
    """Tracks how long a host has been answering 429."""

    def __init__(self) -> None:
        self.limited_since = 0.0
        self.paused_until = 0.0

    def reset(self) -> None:
        self.limited_since = 0.0

    def trip(self, now: float) -> bool:
        """Record a 429 at ``now``; True when the host should be paused."""
        if not self.limited_since:
            self.limited_since = now
        if now - self.limited_since <= CIRCUIT_WINDOW:
            return False
        self.paused_until = now + CIRCUIT_COOLDOWN
        self.limited_since = 0.0
        return True


_circuit: Dict[str, HostCircuit] = {}


def get_client() -> httpx.AsyncClient:
    global _client
    if _client is None:
        _client = httpx.AsyncClient(
            timeout=settings.http_timeout,
            headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
            follow_redirects=True,
            limits=httpx.Limits(
                max_connections=MAX_CONCURRENCY * 4,
                max_keepalive_connections=MAX_CONCURRENCY * 2,
            ),
        )
    return _client


def set_rate_limit(host: str, rate: float, capacity: int) -> None:
    """Configure a token bucket rate limiter for a host."""
    _rate_limiters[host] = TokenBucket(rate, capacity)


def clear_cache() -> None:
    """Forget cached responses and circuit state.  Mainly used in tests."""
    _CACHE.clear()
    _circuit.clear()


def cache_key(url: str, params: Optional[Mapping[str, Any]] = None) -> str:
    """Key for a GET; params are sorted so their order does not matter."""
    query = sorted((str(k), str(v)) for k, v in params.items()) if params else []
    return f"GET:{url}:{query}"


def retry_after(resp: Optional[httpx.Response]) -> Optional[float]:
    """Seconds from a Retry-After header, or None when absent or not numeric."""
    if resp is None:
        return None
    try:
        return float(resp.headers["Retry-After"])
    except (KeyError, TypeError, ValueError):
        return None


def backoff(status: Optional[int], attempt: int, hint: Optional[float]) -> float:
    if status == 429:
        return hint if hint is not None else min(64, 2**attempt)
    base = hint if hint is not None else 0.5 * (2**attempt)
    return base + random.uniform(0.2, 0.3)


async def _send(method: str, url: str, key: Optional[str], kwargs: Dict[str, Any]) -> httpx.Response:
    client = get_client()
    host = httpx.URL(url).host
    limiter = _rate_limiters.get(host)
    circuit = _circuit.setdefault(host, HostCircuit())
    started = time.monotonic()
    attempt = 0

    while True:
        paused = circuit.paused_until - time.monotonic()
        if paused > 0:
            await asyncio.sleep(paused)
        if limiter:
            waited = await limiter.consume()
            if waited > 0:
                logger.info("rate_wait host=%s wait=%.2fs", host, waited)

        try:
            async with _semaphore:
                resp = await client.request(method, url, **kwargs)
        except httpx.RequestError as exc:
            logger.warning("http_request_error host=%s err=%r", host, exc)
            resp = None

        if resp is not None and resp.status_code < 400:
            circuit.reset()
            if key:
                _CACHE[key] = (time.monotonic() + CACHE_TTL, resp)
            elapsed = time.monotonic() - started
            request_duration.observe(elapsed)
            logger.info(
                "http_request method=%s url=%s retries=%d duration=%.2f", method, url, attempt, elapsed
            )
            return resp

        status = resp.status_code if resp is not None else None
        # Other 4xx answers will not change on retry.
        if status is not None and status != 429 and status < 500:
            resp.raise_for_status()
        if attempt >= MAX_RETRIES:
            if resp is not None:
                resp.raise_for_status()
            raise httpx.RequestError("max retries exceeded", request=None)

        hint = retry_after(resp)
        if status == 429:
            rate_limited.inc()
            if circuit.trip(time.monotonic()):
                circuit_open.inc()
                logger.warning("http_circuit_open host=%s cooldown=%.0fs", host, CIRCUIT_COOLDOWN)
                await asyncio.sleep(CIRCUIT_COOLDOWN)
                attempt = 0
                continue

        wait = backoff(status, attempt, hint)
        logger.warning("http_retry host=%s status=%s wait=%.2fs retry_after=%s", host, status, wait, hint)
        attempt += 1
        await asyncio.sleep(wait)


async def request(method: str, url: str, **kwargs) -> httpx.Response:
    """HTTP request with retries, caching, coalescing and a 429 circuit breaker.

    Pass ``no_cache=True`` to bypass the response cache for a GET.
    """
    key = None
    no_cache = kwargs.pop("no_cache", False)
    if method.upper() == "GET" and not no_cache:
        key = cache_key(url, kwargs.get("params"))
        cached = _CACHE.get(key)
        if cached and cached[0] > time.monotonic():
            logger.info("http_cache_hit url=%s", url)
            return cached[1]
        inflight = _INFLIGHT.get(key)
        if inflight:
            return await inflight

    if not key:
        return await _send(method, url, None, kwargs)

    task = asyncio.create_task(_send(method, url, key, kwargs))
    _INFLIGHT[key] = task
    try:
        return await task
    finally:
        _INFLIGHT.pop(key, None)


async def get_json(url: str, **kwargs) -> Any:
    resp = await request("GET", url, **kwargs)
    return resp.json()


async def aclose() -> None:
    """Close the underlying AsyncClient and reset global state."""
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
