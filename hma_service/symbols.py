"""
Instrument symbols
Index registry plus parsing / validation of broker symbols (NSE:NIFTY50-INDEX, NSE:NIFTY25JANFUT, NSE:NIFTY25JAN24500CE)
"""

import re
from dataclasses import dataclass
from typing import Dict, Optional

from hma_service.errors import InvalidSymbolError
from hma_service.models.market import DataType

_SYMBOL_RE = re.compile(r"^(?P<exchange>NSE|BSE|MCX):(?P<body>[A-Z0-9&_-]+)$")
_OPTION_RE = re.compile(
    r"^(?P<underlying>[A-Z&]+?)"
    r"(?P<expiry>\d{2}(?:[A-Z]{3}|[1-9OND]\d{2}))?"
    r"(?P<strike>\d+(?:\.\d+)?)"
    r"(?P<option_type>CE|PE)$"
)
_FUTURES_RE = re.compile(r"^(?P<underlying>[A-Z&]+?)(?P<expiry>\d{2}[A-Z]{3})FUT$")


@dataclass(frozen=True)
class IndexConfig:
    name: str
    symbol: str
    exchange: str
    lot_size: int
    strike_interval: int


INDEX_CONFIGS: Dict[str, IndexConfig] = {
    "NIFTY": IndexConfig("Nifty 50", "NSE:NIFTY50-INDEX", "NSE", 75, 50),
    "BANKNIFTY": IndexConfig("Nifty Bank", "NSE:NIFTYBANK-INDEX", "NSE", 30, 100),
    "FINNIFTY": IndexConfig("Nifty Financial Services", "NSE:FINNIFTY-INDEX", "NSE", 65, 50),
    "MIDCPNIFTY": IndexConfig("Nifty Midcap Select", "NSE:MIDCPNIFTY-INDEX", "NSE", 120, 25),
    "SENSEX": IndexConfig("BSE Sensex", "BSE:SENSEX-INDEX", "BSE", 20, 100),
}

# Aliases seen in broker payloads and older configs
_INDEX_ALIASES = {"NIFTYBANK": "BANKNIFTY", "NIFTY50": "NIFTY"}


@dataclass(frozen=True)
class ParsedSymbol:
    symbol: str
    exchange: str
    data_type: DataType
    underlying: str
    expiry: Optional[str] = None
    strike: Optional[float] = None
    option_type: Optional[str] = None


def get_index_config(index_name: str) -> IndexConfig:
    key = _INDEX_ALIASES.get(index_name.upper(), index_name.upper())
    config = INDEX_CONFIGS.get(key)
    if config is None:
        raise InvalidSymbolError(f"Unknown index: {index_name}", symbol=index_name)
    return config


def parse_symbol(symbol: str) -> ParsedSymbol:
    """Validate and classify a broker symbol; raises InvalidSymbolError"""
    if not symbol or not isinstance(symbol, str):
        raise InvalidSymbolError("Symbol must be a non-empty string", symbol=symbol)
    match = _SYMBOL_RE.match(symbol.strip())
    if not match:
        raise InvalidSymbolError(f"Invalid symbol format: {symbol}", symbol=symbol)
    exchange, body = match.group("exchange"), match.group("body")

    if body.endswith("-INDEX"):
        return ParsedSymbol(symbol, exchange, DataType.INDEX, body[: -len("-INDEX")])

    if body.endswith("FUT"):
        fut = _FUTURES_RE.match(body)
        if not fut:
            raise InvalidSymbolError(f"Invalid futures symbol: {symbol}", symbol=symbol)
        return ParsedSymbol(
            symbol, exchange, DataType.FUTURES, fut.group("underlying"), expiry=fut.group("expiry")
        )

    if body.endswith("CE") or body.endswith("PE"):
        opt = _OPTION_RE.match(body)
        if not opt:
            raise InvalidSymbolError(f"Invalid option symbol: {symbol}", symbol=symbol)
        return ParsedSymbol(
            symbol,
            exchange,
            DataType.OPTION,
            opt.group("underlying"),
            expiry=opt.group("expiry"),
            strike=float(opt.group("strike")),
            option_type=opt.group("option_type"),
        )

    # Plain index / equity symbols (NSE:NIFTYBANK, NSE:SBIN-EQ)
    return ParsedSymbol(symbol, exchange, DataType.INDEX, body.split("-")[0])


def data_type_for(symbol: str) -> DataType:
    return parse_symbol(symbol).data_type


def atm_strike(price: float, index_name: str) -> int:
    """Nearest strike to price on the index's strike grid"""
    interval = get_index_config(index_name).strike_interval
    return int(round(price / interval) * interval)


def option_symbol(index_name: str, expiry: str, strike: int, option_type: str) -> str:
    """Build e.g. NSE:NIFTY25JAN24500CE; expiry is the broker code (25JAN or 25113)"""
    option_type = option_type.upper()
    if option_type not in ("CE", "PE"):
        raise InvalidSymbolError(f"Option type must be CE or PE, got {option_type}")
    config = get_index_config(index_name)
    underlying = _INDEX_ALIASES.get(index_name.upper(), index_name.upper())
    return f"{config.exchange}:{underlying}{expiry}{strike}{option_type}"
