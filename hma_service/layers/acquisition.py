"""
Acquisition layer
Broker market-data access behind one interface; the Fyers v3 REST adapter is the production client.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from hma_service.errors import (
    AuthExpiredError,
    InvalidSymbolError,
    NoDataError,
    UpstreamThrottledError,
    UpstreamUnavailableError,
)
from hma_service.models.market import Candle, Depth, DepthLevel, Quote

logger = logging.getLogger(__name__)

# Fyers error codes that mean the access token is no longer usable
_AUTH_CODES = {-8, -15, -16, -17, -100}
_INVALID_SYMBOL_CODES = {-300, -50}
_THROTTLE_CODES = {429, -429}
_THROTTLE_HTTP = {429, 422}


class MarketDataClient:
    """
    Market data capability consumed by the core.

    Implementations raise InvalidSymbolError, AuthExpiredError,
    UpstreamThrottledError, NoDataError or UpstreamUnavailableError.
    """

    async def fetch_quote(self, symbol: str) -> Quote:
        raise NotImplementedError

    async def fetch_history(
        self, symbol: str, resolution: int, start: datetime, end: datetime
    ) -> List[Candle]:
        raise NotImplementedError

    async def fetch_depth(self, symbol: str) -> Depth:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class FyersDataClient(MarketDataClient):
    """Thin async wrapper around the Fyers v3 data endpoints (history / quotes / depth)"""

    def __init__(
        self,
        app_id: str,
        access_token: str,
        base_url: str = "https://api-t1.fyers.in/data",
        timeout_sec: float = 12.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._app_id = app_id
        self._access_token = access_token
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout_sec)

    async def aclose(self) -> None:
        await self._client.aclose()

    # ── HTTP ──────────────────────────────────────────────

    async def _get(self, path: str, params: Dict[str, Any], symbol: Optional[str] = None) -> Dict[str, Any]:
        if not self._app_id or not self._access_token:
            raise AuthExpiredError("Fyers credentials are not configured", symbol=symbol)
        url = f"{self._base_url}/{path}"
        headers = {"Authorization": f"{self._app_id}:{self._access_token}"}
        try:
            resp = await self._client.get(url, params=params, headers=headers)
        except httpx.TimeoutException as exc:
            raise UpstreamUnavailableError(f"Timeout calling {path}: {exc}", symbol=symbol) from exc
        except httpx.HTTPError as exc:
            raise UpstreamUnavailableError(f"Network error calling {path}: {exc}", symbol=symbol) from exc

        if resp.status_code in _THROTTLE_HTTP:
            raise UpstreamThrottledError(f"{path} throttled (HTTP {resp.status_code})", symbol=symbol)
        if resp.status_code == 401:
            raise AuthExpiredError("Fyers access token rejected", symbol=symbol)
        if resp.status_code >= 500:
            raise UpstreamUnavailableError(f"{path} returned HTTP {resp.status_code}", symbol=symbol)

        try:
            body = resp.json()
        except ValueError as exc:
            raise UpstreamUnavailableError(f"Malformed response from {path}", symbol=symbol) from exc
        self._raise_for_body(body, path, symbol)
        return body

    @staticmethod
    def _raise_for_body(body: Dict[str, Any], path: str, symbol: Optional[str]) -> None:
        status = body.get("s")
        if status in ("ok", "no_data"):
            return
        code = body.get("code")
        message = body.get("message") or f"{path} failed"
        if code in _THROTTLE_CODES:
            raise UpstreamThrottledError(message, symbol=symbol)
        if code in _AUTH_CODES:
            raise AuthExpiredError(message, symbol=symbol)
        if code in _INVALID_SYMBOL_CODES or "invalid symbol" in message.lower():
            raise InvalidSymbolError(message, symbol=symbol)
        raise UpstreamUnavailableError(f"{message} (code {code})", symbol=symbol)

    # ── Endpoints ─────────────────────────────────────────

    async def fetch_history(
        self, symbol: str, resolution: int, start: datetime, end: datetime
    ) -> List[Candle]:
        params = {
            "symbol": symbol,
            "resolution": str(resolution),
            "date_format": "0",
            "range_from": str(int(start.timestamp())),
            "range_to": str(int(end.timestamp())),
            "cont_flag": "1",
        }
        body = await self._get("history", params, symbol=symbol)
        rows = body.get("candles") or []
        if body.get("s") == "no_data" or not rows:
            raise NoDataError(f"No candles for {symbol} between {start} and {end}", symbol=symbol)
        logger.debug(f"Received {len(rows)} candles for {symbol}")
        return [Candle.from_epoch_row(row) for row in rows]

    async def fetch_quote(self, symbol: str) -> Quote:
        body = await self._get("quotes", {"symbols": symbol}, symbol=symbol)
        entries = body.get("d") or []
        for entry in entries:
            if entry.get("n") == symbol:
                if entry.get("s") != "ok":
                    raise InvalidSymbolError(f"Quote rejected for {symbol}", symbol=symbol)
                v = entry.get("v") or {}
                return Quote(
                    symbol=symbol,
                    ltp=float(v.get("lp", 0)),
                    change=float(v.get("ch", 0)),
                    change_percent=float(v.get("chp", 0)),
                    volume=float(v.get("volume", 0)),
                    open_interest=float(v["oi"]) if v.get("oi") is not None else None,
                )
        raise NoDataError(f"No quote returned for {symbol}", symbol=symbol)

    async def fetch_depth(self, symbol: str) -> Depth:
        body = await self._get("depth", {"symbol": symbol, "ohlcv_flag": "1"}, symbol=symbol)
        data = (body.get("d") or {}).get(symbol)
        if not data:
            raise NoDataError(f"No depth returned for {symbol}", symbol=symbol)

        def _levels(raw: List[dict]) -> List[DepthLevel]:
            return [
                DepthLevel(
                    price=float(lvl.get("price", 0)),
                    volume=float(lvl.get("volume", 0)),
                    orders=int(lvl.get("ord", 0)),
                )
                for lvl in raw or []
            ]

        return Depth(
            symbol=symbol,
            bids=_levels(data.get("bids")),
            asks=_levels(data.get("ask")),
            total_buy_qty=float(data.get("totalbuyqty", 0)),
            total_sell_qty=float(data.get("totalsellqty", 0)),
        )
