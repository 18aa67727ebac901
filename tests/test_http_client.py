import asyncio

import httpx
import pytest

from services import http_client


def install_mock(monkeypatch, handler):
    transport = httpx.MockTransport(handler)
    client = httpx.AsyncClient(transport=transport)
    monkeypatch.setattr(http_client, "get_client", lambda: client)
    return client


@pytest.fixture
def sleeps(monkeypatch):
    recorded = []

    async def fake_sleep(sec):
        recorded.append(sec)

    monkeypatch.setattr(http_client.asyncio, "sleep", fake_sleep)
    return recorded


async def _run_request(url: str):
    resp = await http_client.request("GET", url, no_cache=True)
    return resp.json()


def test_retry_after(monkeypatch, sleeps):
    class DummyClient:
        def __init__(self):
            self.calls = 0

        async def request(self, method, url, **kwargs):
            self.calls += 1
            if self.calls == 1:
                return httpx.Response(429, headers={"Retry-After": "1"})
            return httpx.Response(200, json={"ok": True})

    dummy = DummyClient()
    monkeypatch.setattr(http_client, "get_client", lambda: dummy)

    result = asyncio.run(_run_request("http://example.com"))
    assert result == {"ok": True}
    assert sleeps == [1.0]
    assert dummy.calls == 2


def test_circuit_breaker(monkeypatch):
    class DummyClient:
        def __init__(self):
            self.calls = 0

        async def request(self, method, url, **kwargs):
            self.calls += 1
            if self.calls == 1:
                return httpx.Response(429, headers={"Retry-After": "61"})
            if self.calls == 2:
                return httpx.Response(429)
            return httpx.Response(200, json={"ok": True})

    dummy = DummyClient()
    monkeypatch.setattr(http_client, "get_client", lambda: dummy)

    current = {"t": 100.0}
    sleeps = []

    def fake_monotonic():
        return current["t"]

    async def fake_sleep(sec):
        sleeps.append(sec)
        current["t"] += sec

    monkeypatch.setattr(http_client.time, "monotonic", fake_monotonic)
    monkeypatch.setattr(http_client.asyncio, "sleep", fake_sleep)

    result = asyncio.run(_run_request("http://example.com"))
    assert result == {"ok": True}
    assert sleeps == [61.0, 90.0]


def test_server_error_retries_with_jitter(monkeypatch, sleeps):
    calls = []

    async def handler(request):
        calls.append(request.url.path)
        if len(calls) <= 2:
            return httpx.Response(503)
        return httpx.Response(200, json={"ok": True})

    install_mock(monkeypatch, handler)
    assert asyncio.run(http_client.get_json("http://test/flaky", no_cache=True)) == {"ok": True}
    assert len(sleeps) == 2
    assert 0.7 <= sleeps[0] <= 0.8
    assert 1.2 <= sleeps[1] <= 1.3


def test_client_error_is_not_retried(monkeypatch, sleeps):
    calls = []

    async def handler(request):
        calls.append(request.url.path)
        return httpx.Response(404)

    install_mock(monkeypatch, handler)
    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(http_client.get_json("http://test/missing"))
    assert len(calls) == 1
    assert sleeps == []


def test_coalesce_and_cache(monkeypatch):
    count = 0

    async def handler(request):
        nonlocal count
        count += 1
        return httpx.Response(200, json={"ok": True})

    install_mock(monkeypatch, handler)

    async def do_request():
        return await http_client.get_json("http://test/cache")

    async def run_all():
        await asyncio.gather(*[do_request() for _ in range(5)])

    # concurrent calls coalesce
    asyncio.run(run_all())
    assert count == 1
    # second round hits cache
    asyncio.run(do_request())
    assert count == 1


def test_cache_key_includes_params(monkeypatch):
    seen = []

    async def handler(request):
        seen.append(request.url.params.get("date"))
        return httpx.Response(200, json={"date": request.url.params.get("date")})

    install_mock(monkeypatch, handler)

    async def fetch(date):
        return await http_client.get_json("http://test/options", params={"date": date})

    assert asyncio.run(fetch(1)) == {"date": "1"}
    assert asyncio.run(fetch(2)) == {"date": "2"}
    assert asyncio.run(fetch(1)) == {"date": "1"}
    assert seen == ["1", "2"]


def test_cache_key_ignores_param_order():
    a = http_client.cache_key("http://test/q", {"symbols": "SPY", "date": 1})
    b = http_client.cache_key("http://test/q", {"date": "1", "symbols": "SPY"})
    assert a == b
    assert http_client.cache_key("http://test/q") != a


def test_retry_after_parsing():
    assert http_client.retry_after(httpx.Response(429, headers={"Retry-After": "2.5"})) == 2.5
    assert http_client.retry_after(httpx.Response(429, headers={"Retry-After": "soon"})) is None
    assert http_client.retry_after(httpx.Response(503)) is None
    assert http_client.retry_after(None) is None


def test_host_circuit_trips_after_sustained_rate_limiting():
    circuit = http_client.HostCircuit()
    assert circuit.trip(100.0) is False
    assert circuit.trip(150.0) is False
    assert circuit.trip(161.0) is True
    assert circuit.paused_until == 161.0 + http_client.CIRCUIT_COOLDOWN
    # a tripped circuit starts a fresh window
    assert circuit.trip(170.0) is False
    circuit.reset()
    assert circuit.limited_since == 0.0
