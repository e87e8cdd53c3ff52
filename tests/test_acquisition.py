"""
HMA service unit tests: Fyers data adapter error mapping
"""

from datetime import datetime, timezone

import httpx
import pytest

from hma_service.errors import (
    AuthExpiredError,
    InvalidSymbolError,
    NoDataError,
    UpstreamThrottledError,
    UpstreamUnavailableError,
)
from hma_service.layers.acquisition import FyersDataClient

SYMBOL = "NSE:NIFTY50-INDEX"
START = datetime(2025, 1, 15, 3, 45, tzinfo=timezone.utc)
END = datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)


def _client(handler, app_id="APP-100", token="tok"):
    transport = httpx.MockTransport(handler)
    return FyersDataClient(app_id, token, base_url="https://broker.test/data",
                           client=httpx.AsyncClient(transport=transport))


def _json(payload, status=200):
    return lambda request: httpx.Response(status, json=payload)


class TestHistory:
    @pytest.mark.asyncio
    async def test_rows_become_candles(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"s": "ok", "candles": [
                [1736912700, 23500.0, 23510.0, 23490.0, 23505.5, 1200],
                [1736913000, 23505.5, 23520.0, 23500.0, 23515.0, 900],
            ]})

        candles = await _client(handler).fetch_history(SYMBOL, 5, START, END)

        assert [c.close for c in candles] == [23505.5, 23515.0]
        assert candles[0].timestamp == datetime(2025, 1, 15, 3, 45, tzinfo=timezone.utc)
        request = seen[0]
        assert request.url.path == "/data/history"
        assert request.url.params["resolution"] == "5"
        assert request.url.params["range_from"] == str(int(START.timestamp()))
        assert request.headers["Authorization"] == "APP-100:tok"

    @pytest.mark.asyncio
    async def test_no_data(self):
        with pytest.raises(NoDataError):
            await _client(_json({"s": "no_data", "candles": []})).fetch_history(SYMBOL, 5, START, END)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 422])
    async def test_http_throttle(self, status):
        with pytest.raises(UpstreamThrottledError):
            await _client(_json({}, status=status)).fetch_history(SYMBOL, 5, START, END)

    @pytest.mark.asyncio
    async def test_body_throttle_code(self):
        client = _client(_json({"s": "error", "code": 429, "message": "request limit reached"}))
        with pytest.raises(UpstreamThrottledError):
            await client.fetch_history(SYMBOL, 5, START, END)

    @pytest.mark.asyncio
    async def test_expired_token(self):
        client = _client(_json({"s": "error", "code": -16, "message": "token expired"}))
        with pytest.raises(AuthExpiredError):
            await client.fetch_history(SYMBOL, 5, START, END)

    @pytest.mark.asyncio
    async def test_invalid_symbol(self):
        client = _client(_json({"s": "error", "code": -300, "message": "Invalid symbol provided"}))
        with pytest.raises(InvalidSymbolError):
            await client.fetch_history("NSE:NOPE-INDEX", 5, START, END)

    @pytest.mark.asyncio
    async def test_missing_credentials_skip_the_call(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={"s": "ok", "candles": []})

        with pytest.raises(AuthExpiredError):
            await _client(handler, token="").fetch_history(SYMBOL, 5, START, END)
        assert calls == []

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(UpstreamUnavailableError):
            await _client(handler).fetch_history(SYMBOL, 5, START, END)

    @pytest.mark.asyncio
    async def test_server_error(self):
        with pytest.raises(UpstreamUnavailableError):
            await _client(_json({}, status=502)).fetch_history(SYMBOL, 5, START, END)


class TestQuoteAndDepth:
    @pytest.mark.asyncio
    async def test_quote(self):
        payload = {"s": "ok", "d": [{"n": SYMBOL, "s": "ok", "v": {"lp": 23512.4, "ch": 12.4, "chp": 0.05}}]}
        quote = await _client(_json(payload)).fetch_quote(SYMBOL)
        assert quote.ltp == 23512.4
        assert quote.open_interest is None

    @pytest.mark.asyncio
    async def test_quote_missing_symbol(self):
        with pytest.raises(NoDataError):
            await _client(_json({"s": "ok", "d": []})).fetch_quote(SYMBOL)

    @pytest.mark.asyncio
    async def test_depth(self):
        payload = {"s": "ok", "d": {SYMBOL: {
            "bids": [{"price": 23510.0, "volume": 75, "ord": 3}],
            "ask": [{"price": 23511.0, "volume": 150, "ord": 1}],
            "totalbuyqty": 75, "totalsellqty": 150,
        }}}
        depth = await _client(_json(payload)).fetch_depth(SYMBOL)
        assert depth.bids[0].orders == 3
        assert depth.asks[0].price == 23511.0
        assert depth.total_sell_qty == 150
