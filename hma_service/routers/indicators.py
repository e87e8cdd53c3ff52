"""
Indicator routes
GET  /api/indicators/{symbol}          - cached HMA {value, as_of, stale}
GET  /api/indicators/{symbol}/series   - close + HMA history
POST /api/indicators/hma               - load HMA for a CE/PE pair
POST /api/indicators/crossover         - classify a price/HMA transition
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from hma_service.models.response import ApiResponse
from hma_service.routers.auth import get_current_user
from hma_service.services.container import ServiceContainer, get_container

router = APIRouter(prefix="/api/indicators", tags=["indicators"])


class PairRequest(BaseModel):
    ce_symbol: str
    pe_symbol: str


class CrossoverRequest(BaseModel):
    prev_price: Optional[float] = None
    curr_price: Optional[float] = None
    prev_hma: Optional[float] = None
    curr_hma: Optional[float] = None


@router.post("/hma", response_model=ApiResponse)
async def fetch_pair_hma(
    body: PairRequest,
    services: ServiceContainer = Depends(get_container),
    current_user: dict = Depends(get_current_user),
):
    """Both sides load independently; the response carries each side's own result"""
    results = await services.monitor.fetch_hma_for_symbols(body.ce_symbol, body.pe_symbol)
    data = {side: result.to_dict() for side, result in results.items()}
    if all(r.success for r in results.values()):
        return ApiResponse.ok(data=data, message="HMA loaded for both symbols")
    if any(r.success for r in results.values()):
        return ApiResponse.ok(data=data, message="Partial success")
    return ApiResponse.fail(error="no_symbol_loaded", message="HMA unavailable for both symbols", data=data)


@router.post("/crossover", response_model=ApiResponse)
async def detect_crossover(
    body: CrossoverRequest,
    services: ServiceContainer = Depends(get_container),
    current_user: dict = Depends(get_current_user),
):
    signal = services.engine.detect_crossover(body.prev_price, body.curr_price, body.prev_hma, body.curr_hma)
    return ApiResponse.ok(data={"crossover": signal.value})


@router.get("/{symbol}", response_model=ApiResponse)
async def get_indicator(
    symbol: str,
    services: ServiceContainer = Depends(get_container),
    current_user: dict = Depends(get_current_user),
):
    data = services.query.get_indicator(symbol)
    return ApiResponse.ok(data=data, message="stale" if data["stale"] else "success")


@router.get("/{symbol}/series", response_model=ApiResponse)
async def get_indicator_series(
    symbol: str,
    count: int = Query(default=120, ge=1, le=1000),
    services: ServiceContainer = Depends(get_container),
    current_user: dict = Depends(get_current_user),
):
    return ApiResponse.ok(data=services.query.get_hma_series(symbol, count))
