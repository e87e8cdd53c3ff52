"""
Market routes
GET /api/market/status    - session state, latest session date, API budget
GET /api/market/indices   - supported index underlyings
GET /api/market/atm       - ATM strike and option symbols for an index price
GET /api/market/quote/{symbol}  - last traded price
GET /api/market/depth/{symbol}  - order book levels
"""

from fastapi import APIRouter, Depends, Query

from hma_service.models.response import ApiResponse
from hma_service.routers.auth import get_current_user
from hma_service.services.container import ServiceContainer, get_container
from hma_service.symbols import INDEX_CONFIGS, atm_strike, option_symbol

router = APIRouter(prefix="/api/market", tags=["market"])


@router.get("/status", response_model=ApiResponse)
async def market_status(services: ServiceContainer = Depends(get_container)):
    clock = services.clock
    now = clock.now()
    next_refresh = services.monitor.next_refresh_in()
    return ApiResponse.ok(data={
        "now": now.isoformat(),
        "is_open": clock.is_session_open(now),
        "is_trading_day": clock.is_trading_day(clock.local_date(now)),
        "last_session_date": clock.last_session_date(now).isoformat(),
        "next_trading_day": clock.next_trading_day(clock.local_date(now)).isoformat(),
        "next_refresh_seconds": int(next_refresh.total_seconds()) if next_refresh else None,
        "rate_limits": services.limiter.usage_stats(),
        "rate_limit_reset_in": services.limiter.seconds_until_reset(),
    })


@router.get("/indices", response_model=ApiResponse)
async def list_indices():
    return ApiResponse.ok(data=[
        {
            "name": name,
            "symbol": cfg.symbol,
            "strike_interval": cfg.strike_interval,
            "lot_size": cfg.lot_size,
        }
        for name, cfg in INDEX_CONFIGS.items()
    ])


@router.get("/atm", response_model=ApiResponse)
async def atm_options(
    index: str = Query(..., description="NIFTY, BANKNIFTY, ..."),
    price: float = Query(..., gt=0),
    expiry: str = Query(..., description="Expiry code, e.g. 25JAN or 25123"),
    current_user: dict = Depends(get_current_user),
):
    strike = atm_strike(price, index)
    return ApiResponse.ok(data={
        "index": index.upper(),
        "strike": strike,
        "ce": option_symbol(index, expiry, strike, "CE"),
        "pe": option_symbol(index, expiry, strike, "PE"),
    })


@router.get("/quote/{symbol}", response_model=ApiResponse)
async def get_quote(
    symbol: str,
    services: ServiceContainer = Depends(get_container),
    current_user: dict = Depends(get_current_user),
):
    return ApiResponse.ok(data=await services.query.get_quote(symbol))


@router.get("/depth/{symbol}", response_model=ApiResponse)
async def get_depth(
    symbol: str,
    services: ServiceContainer = Depends(get_container),
    current_user: dict = Depends(get_current_user),
):
    return ApiResponse.ok(data=await services.query.get_depth(symbol))
