import asyncio
from datetime import date, datetime, timezone
from types import SimpleNamespace

import pandas as pd
import pytest

from conftest import epoch
from services.contracts import normalize
from services.errors import UpstreamFetchError
from services.providers import yahoo_options
from services.providers.yahoo_options import YFinanceSource


class FakeTicker:
    def __init__(self, expiries=("2024-03-15", "2024-03-22")):
        self.options = expiries
        self.fast_info = {"lastPrice": 501.25, "previousClose": 499.0}
        self.requested = []

    def option_chain(self, label):
        self.requested.append(label)
        calls = pd.DataFrame(
            [
                {
                    "contractSymbol": "SPY240315C00500000",
                    "strike": 500.0,
                    "lastPrice": 2.0,
                    "volume": float("nan"),
                    "openInterest": 100,
                    "impliedVolatility": 0.2,
                    "inTheMoney": True,
                },
                {
                    "contractSymbol": "SPY240315C00505000",
                    "strike": 505.0,
                    "lastPrice": 1.0,
                    "volume": 12.0,
                    "openInterest": 3,
                    "impliedVolatility": 0.25,
                    "inTheMoney": False,
                },
            ]
        )
        return SimpleNamespace(calls=calls, puts=pd.DataFrame())


@pytest.fixture
def ticker(monkeypatch):
    fake = FakeTicker()
    monkeypatch.setattr(yahoo_options, "_ticker", lambda symbol: fake)
    return fake


def test_options_nearest_expiry(ticker):
    payload = asyncio.run(YFinanceSource().options("SPY"))

    assert payload["expirationDates"] == [epoch(date(2024, 3, 15)), epoch(date(2024, 3, 22))]
    block = payload["options"][0]
    assert block["expirationDate"] == epoch(date(2024, 3, 15))
    assert block["puts"] == []
    first, second = block["calls"]
    assert first["volume"] is None
    assert first["inTheMoney"] is True
    assert first["change"] is None
    assert second["volume"] == 12
    assert second["expiration"] == epoch(date(2024, 3, 15))
    assert ticker.requested == ["2024-03-15"]


def test_options_requested_expiry(ticker):
    payload = asyncio.run(YFinanceSource().options("SPY", epoch(date(2024, 3, 22))))
    assert ticker.requested == ["2024-03-22"]
    assert payload["options"][0]["expirationDate"] == epoch(date(2024, 3, 22))


def test_rows_normalize(ticker):
    payload = asyncio.run(YFinanceSource().options("SPY"))
    now = datetime(2024, 3, 13, 15, 0, tzinfo=timezone.utc)
    contracts = [normalize("SPY", row, 501.25, now=now) for row in payload["options"][0]["calls"]]
    assert contracts[0] is None
    assert contracts[1].total_premium == 1_200.0
    assert contracts[1].is_itm is False


def test_quote(ticker):
    quote = asyncio.run(YFinanceSource().quote("SPY"))
    assert quote["regularMarketPrice"] == 501.25
    assert quote["regularMarketPreviousClose"] == 499.0


def test_no_expiries(monkeypatch):
    monkeypatch.setattr(yahoo_options, "_ticker", lambda symbol: FakeTicker(expiries=()))
    with pytest.raises(UpstreamFetchError) as excinfo:
        asyncio.run(YFinanceSource().options("ZZZ"))
    assert excinfo.value.symbol == "ZZZ"
