"""
Error taxonomy
Upstream failures are recovered inside the layers; only typed results reach callers.
"""

from typing import Optional


class HMAServiceError(Exception):
    """Base class for every error raised by the service"""

    kind = "error"

    def __init__(self, message: str, symbol: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.symbol = symbol

    def to_dict(self) -> dict:
        return {"kind": self.kind, "symbol": self.symbol, "message": self.message}


class InvalidSymbolError(HMAServiceError):
    """Malformed or unrecognised instrument symbol"""

    kind = "invalid_symbol"


class InsufficientDataError(HMAServiceError):
    """
    Fewer valid candles than the indicator needs after the day budget is exhausted.
    """

    kind = "insufficient_data"

    def __init__(self, symbol: str, found: int, required: int):
        super().__init__(
            f"Not enough trading data to calculate HMA for {symbol}: "
            f"found {found} candles, need {required}",
            symbol=symbol,
        )
        self.found = found
        self.required = required

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({"found": self.found, "required": self.required})
        return data


class UpstreamThrottledError(HMAServiceError):
    """Broker rejected the call for rate limiting (HTTP 429 / 422 or s=error code=429)"""

    kind = "upstream_throttled"


class UpstreamUnavailableError(HMAServiceError):
    """Timeout or network failure talking to the broker"""

    kind = "upstream_unavailable"


class AuthExpiredError(HMAServiceError):
    """Broker access token missing or expired"""

    kind = "auth_expired"


class NoDataError(HMAServiceError):
    """Broker returned no candles for the requested range"""

    kind = "no_data"


class MarketClosedError(HMAServiceError):
    """Live action requested outside session hours with no fallback data"""

    kind = "market_closed"
