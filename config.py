import logging
import os
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Tuple


DEFAULT_ENV_FILE = "/etc/optionflow/optionflow.env"


logger = logging.getLogger(__name__)


def _bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() not in {"0", "false", ""}


def _csv(name: str, default: str = "") -> Tuple[str, ...]:
    raw = os.getenv(name, default)
    if not raw:
        return ()
    parts = [segment.strip() for segment in raw.split(",")]
    return tuple(part for part in parts if part)


def _choice(name: str, default: str, *, allowed: Tuple[str, ...] | None = None) -> str:
    raw = os.getenv(name, default)
    value = raw if raw is not None else default
    value = str(value).strip() or default
    if allowed:
        lowered = value.lower()
        for option in allowed:
            if lowered == option.lower():
                return option
        return default
    return value


def _float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        return float(str(raw).strip() or default)
    except (TypeError, ValueError):
        return float(default)


def _int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        return int(str(raw).strip() or default)
    except (TypeError, ValueError):
        return int(default)


def _env_files() -> Iterable[Path]:
    """Yield candidate environment files in priority order."""

    paths: list[str] = []
    override = os.getenv("OPTIONFLOW_ENV_FILE")
    if override:
        paths.append(override)
    paths.append(DEFAULT_ENV_FILE)

    seen: set[Path] = set()
    for raw in paths:
        if not raw:
            continue
        candidate = Path(raw).expanduser()
        if candidate in seen:
            continue
        seen.add(candidate)
        yield candidate


def _load_environment_from_file(path: Path) -> None:
    """Load KEY=VALUE pairs from *path* into ``os.environ`` if missing."""

    try:
        text = path.read_text()
    except FileNotFoundError:
        return
    except OSError:
        # Ignore unreadable files so a missing optional file does not abort import.
        return

    for raw_line in text.splitlines():
        stripped = raw_line.strip()
        if not stripped or stripped.startswith("#"):
            continue

        lexer = shlex.shlex(raw_line, posix=True)
        lexer.whitespace_split = True
        lexer.commenters = ""
        try:
            tokens = list(lexer)
        except ValueError:
            # Skip malformed lines.
            continue

        for token in tokens:
            if token == "export" or "=" not in token:
                continue
            name, value = token.split("=", 1)
            name = name.strip()
            if not name:
                continue
            value = value.strip()
            current = os.getenv(name)
            if current is None or (isinstance(current, str) and not current.strip()):
                os.environ[name] = value


def _load_environment() -> None:
    for candidate in _env_files():
        _load_environment_from_file(candidate)


_load_environment()


@dataclass
class Settings:
    # Freshness policy
    cache_ttl_market_open: float = _float("CACHE_TTL_MARKET_OPEN", 600)
    cache_ttl_market_closed: float = _float("CACHE_TTL_MARKET_CLOSED", 24 * 60 * 60)

    # Minimum seconds between fetch cycles, per view
    cooldown_top_movers: float = _float("COOLDOWN_TOP_MOVERS", 300)
    cooldown_summary_stats: float = _float("COOLDOWN_SUMMARY_STATS", 900)
    cooldown_options_chain: float = _float("COOLDOWN_OPTIONS_CHAIN", 300)
    cooldown_long_dated: float = _float("COOLDOWN_LONG_DATED", 900)
    cooldown_long_dated_large: float = _float("COOLDOWN_LONG_DATED_LARGE", 1800)
    cooldown_screen: float = _float("COOLDOWN_SCREEN", 300)

    # Batch pacing against the upstream provider
    top_movers_batch_size: int = _int("TOP_MOVERS_BATCH_SIZE", 5)
    top_movers_batch_delay: float = _float("TOP_MOVERS_BATCH_DELAY", 2.0)
    summary_batch_size: int = _int("SUMMARY_BATCH_SIZE", 2)
    summary_batch_delay: float = _float("SUMMARY_BATCH_DELAY", 1.0)
    long_dated_batch_size: int = _int("LONG_DATED_BATCH_SIZE", 5)
    long_dated_batch_delay: float = _float("LONG_DATED_BATCH_DELAY", 2.0)
    long_dated_large_batch_size: int = _int("LONG_DATED_LARGE_BATCH_SIZE", 1)
    long_dated_large_batch_delay: float = _float("LONG_DATED_LARGE_BATCH_DELAY", 1.0)
    screen_batch_size: int = _int("SCREEN_BATCH_SIZE", 1)
    screen_batch_delay: float = _float("SCREEN_BATCH_DELAY", 1.0)

    fetch_timeout: float = _float("FETCH_TIMEOUT", 15.0)
    long_dated_fetch_timeout: float = _float("LONG_DATED_FETCH_TIMEOUT", 90.0)
    fetch_retry_max: int = _int("FETCH_RETRY_MAX", 0)
    fetch_retry_base_ms: int = _int("FETCH_RETRY_BASE_MS", 300)
    fetch_retry_cap_ms: int = _int("FETCH_RETRY_CAP_MS", 5000)

    # Ranking and per-view thresholds
    top_n: int = _int("TOP_N", 20)
    batch_top_k: int = _int("BATCH_TOP_K", 10)
    top_movers_min_volume: int = _int("TOP_MOVERS_MIN_VOLUME", 50)
    long_dated_min_volume: int = _int("LONG_DATED_MIN_VOLUME", 10)
    long_dated_months: int = _int("LONG_DATED_MONTHS", 6)
    long_dated_large_min_volume: int = _int("LONG_DATED_LARGE_MIN_VOLUME", 5)
    long_dated_large_min_value: float = _float("LONG_DATED_LARGE_MIN_VALUE", 10_000)
    long_dated_large_min_months: int = _int("LONG_DATED_LARGE_MIN_MONTHS", 6)
    long_dated_large_max_months: int = _int("LONG_DATED_LARGE_MAX_MONTHS", 12)
    screen_max_expirations: int = _int("SCREEN_MAX_EXPIRATIONS", 4)

    # Market data provider configuration
    quote_provider: str = _choice(
        "QUOTE_PROVIDER", "yfinance", allowed=("yfinance", "yahoo")
    )
    http_max_concurrency: int = _int("HTTP_MAX_CONCURRENCY", 4)
    http_timeout: float = _float("HTTP_TIMEOUT", 10.0)
    yf_max_rps: float = _float("YF_MAX_RPS", 2.0)
    yf_max_burst: int = _int("YF_MAX_BURST", 2)

    cors_origins: Tuple[str, ...] = _csv("CORS_ORIGINS", "http://localhost:3000")
    metrics_enabled: bool = _bool("METRICS_ENABLED", "true")


settings = Settings()

if settings.http_max_concurrency <= 0:
    settings.http_max_concurrency = 1
if settings.cache_ttl_market_closed < settings.cache_ttl_market_open:
    logger.warning(
        "config closed_ttl_shorter_than_open closed=%s open=%s",
        settings.cache_ttl_market_closed,
        settings.cache_ttl_market_open,
    )

logger.info(
    "config startup quote_provider=%s ttl_open=%s ttl_closed=%s",
    settings.quote_provider,
    settings.cache_ttl_market_open,
    settings.cache_ttl_market_closed,
)
