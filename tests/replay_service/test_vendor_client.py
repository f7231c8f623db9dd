import httpx
import pytest

from factories import H4, T0

from historical_replay.errors import RateLimited
from replay_service.vendor_client import HttpVendorClient

pytestmark = pytest.mark.asyncio


def _row(t, close):
    return {"time_ms": t, "open": close, "high": close + 1, "low": close - 1, "close": close,
            "volume": 10, "open_interest": 500, "funding_rate": 0.0001,
            "taker_buy_volume": 6, "taker_sell_volume": 4}


async def test_fetch_series_parses_rows():
    seen = {}

    def handler(request: httpx.Request):
        seen["url"] = str(request.url)
        seen["key"] = request.headers.get("X-API-Key")
        return httpx.Response(200, json={"rows": [_row(T0 + H4, 2.0), _row(T0, 1.0)]})

    client = HttpVendorClient("https://vendor.test/", api_key="k", transport=httpx.MockTransport(handler))
    bundle = await client.fetch_series("Binance", "BTC", "4h", end_ms=T0 + H4, limit=2, start_ms=T0)

    assert [c.time_ms for c in bundle.candles] == [T0, T0 + H4]
    assert bundle.open_interest[0].value == 500
    assert bundle.taker[1].buy == 6
    assert seen["url"].startswith("https://vendor.test/v1/series?")
    assert "start_time=" in seen["url"] and "interval=4h" in seen["url"]
    assert seen["key"] == "k"


async def test_429_raises_rate_limited_without_retry():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(429, headers={"Retry-After": "12"})

    client = HttpVendorClient("https://vendor.test", transport=httpx.MockTransport(handler))
    with pytest.raises(RateLimited) as exc:
        await client.fetch_series("Binance", "BTC", "4h", end_ms=T0, limit=10)
    assert exc.value.retry_after == 12.0
    assert len(calls) == 1


async def test_transport_errors_are_retried():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={"rows": []})

    client = HttpVendorClient("https://vendor.test", max_attempts=2, transport=httpx.MockTransport(handler))
    bundle = await client.fetch_series("Binance", "BTC", "4h", end_ms=T0, limit=10)
    assert bundle.candles == []
    assert len(calls) == 2


async def test_server_error_propagates():
    client = HttpVendorClient("https://vendor.test", transport=httpx.MockTransport(lambda r: httpx.Response(500)))
    with pytest.raises(httpx.HTTPStatusError):
        await client.fetch_series("Binance", "BTC", "4h", end_ms=T0, limit=10)
