import dataclasses
import sys
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import pytest

# Ensure the project root is on the import path when running ``pytest`` directly.
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from config import Settings
from services import http_client
from services.errors import UpstreamFetchError
from services.options_flow import OptionsFlowService
from utils import TZ

# Wednesday mid-session and the following Saturday.
OPEN_TS = datetime(2024, 3, 13, 11, 0, tzinfo=TZ)
CLOSED_TS = datetime(2024, 3, 16, 11, 0, tzinfo=TZ)

# Expiries relative to OPEN_TS: days away, inside six months, inside the
# six-to-twelve month band, beyond twelve months.
NEAR = date(2024, 3, 15)
MID = date(2024, 6, 21)
FAR = date(2024, 12, 20)
FARTHER = date(2025, 6, 20)


def occ(root: str, expiry: date, cp: str, strike: float) -> str:
    return f"{root}{expiry:%y%m%d}{cp}{int(round(strike * 1000)):08d}"


def epoch(expiry: date) -> int:
    return int(datetime(expiry.year, expiry.month, expiry.day, tzinfo=timezone.utc).timestamp())


def make_raw(root, expiry, cp, strike, last, volume, oi=0, **extra):
    row = {
        "contractSymbol": occ(root, expiry, cp, strike),
        "strike": strike,
        "lastPrice": last,
        "bid": round(last * 0.98, 2),
        "ask": round(last * 1.02, 2),
        "volume": volume,
        "openInterest": oi,
        "impliedVolatility": 0.3,
        "percentChange": 1.5,
        "inTheMoney": False,
        "expiration": epoch(expiry),
    }
    row.update(extra)
    return row


class FakeSource:
    """In-memory quote source.

    ``chains`` maps symbol -> expiry date -> list of raw contracts; calls and
    puts are split on the contract symbol.
    """

    def __init__(self, chains=None, quotes=None, failures=()):
        self.chains = chains or {}
        self.quotes = quotes or {}
        self.failures = set(failures)
        self.calls = []

    def _dates(self, symbol):
        return sorted(epoch(d) for d in self.chains.get(symbol, {}))

    async def options(self, symbol, expiration=None):
        self.calls.append(("options", symbol, expiration))
        if symbol in self.failures:
            raise UpstreamFetchError(symbol, "boom")
        dates = self._dates(symbol)
        if not dates:
            return {"expirationDates": [], "options": []}
        exp = dates[0] if expiration is None else int(expiration)
        rows = None
        for day, contracts in self.chains[symbol].items():
            if epoch(day) == exp:
                rows = contracts
        if rows is None:
            return {"expirationDates": dates, "options": []}
        calls = [r for r in rows if r["contractSymbol"][-9] == "C"]
        puts = [r for r in rows if r["contractSymbol"][-9] == "P"]
        return {
            "expirationDates": dates,
            "options": [{"expirationDate": exp, "calls": calls, "puts": puts}],
        }

    async def quote(self, symbol):
        self.calls.append(("quote", symbol))
        if symbol in self.failures:
            raise UpstreamFetchError(symbol, "boom")
        return {"symbol": symbol, "regularMarketPrice": self.quotes.get(symbol, 100.0)}

    def fetches(self, kind="options"):
        return [c for c in self.calls if c[0] == kind]


class Clock:
    def __init__(self, ts: datetime) -> None:
        self.ts = ts

    def __call__(self) -> datetime:
        return self.ts

    def advance(self, seconds: float) -> None:
        self.ts = self.ts + timedelta(seconds=seconds)


@pytest.fixture(autouse=True)
def _reset_http_client():
    http_client.clear_cache()
    yield
    http_client.clear_cache()


@pytest.fixture
def raw_contract():
    return make_raw


@pytest.fixture
def fake_source():
    return FakeSource


@pytest.fixture
def clock():
    return Clock(OPEN_TS)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_service(clock, sleeps):
    async def fake_sleep(seconds):
        sleeps.append(seconds)

    def _make(source, **overrides) -> OptionsFlowService:
        cfg = dataclasses.replace(Settings(), **overrides)
        return OptionsFlowService(source, config=cfg, clock=clock, sleep=fake_sleep)

    return _make


def sample_chains():
    return {
        "SPY": {
            NEAR: [
                make_raw("SPY", NEAR, "C", 500.0, 2.0, 1000, 5000),
                make_raw("SPY", NEAR, "P", 490.0, 1.0, 51, 10),
                make_raw("SPY", NEAR, "P", 480.0, 3.0, 50, 100),
                make_raw("SPY", NEAR, "C", 510.0, 1.0, 400, 0),
            ],
            MID: [make_raw("SPY", MID, "C", 520.0, 8.0, 30, 100)],
            FAR: [
                make_raw("SPY", FAR, "C", 550.0, 20.0, 10, 0),
                make_raw("SPY", FAR, "P", 450.0, 5.0, 10, 5),
            ],
            FARTHER: [make_raw("SPY", FARTHER, "C", 600.0, 30.0, 100, 0)],
        },
        "QQQ": {
            NEAR: [
                make_raw("QQQ", NEAR, "P", 400.0, 5.0, 2000, 1000),
                make_raw("QQQ", NEAR, "C", 410.0, 0.5, 60, 20),
            ],
            FAR: [make_raw("QQQ", FAR, "P", 350.0, 12.0, 20, 40)],
        },
    }


@pytest.fixture
def source():
    return FakeSource(sample_chains(), quotes={"SPY": 500.0, "QQQ": 400.0})
