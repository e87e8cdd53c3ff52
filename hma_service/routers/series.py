"""
Time-series routes
GET  /api/series/{symbol}            - stored candles
GET  /api/series/{symbol}/missing    - gap report for a session
POST /api/series/{symbol}/backfill   - refill gaps from the broker
POST /api/series/prune               - apply retention
"""

from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from hma_service.models.response import ApiResponse
from hma_service.routers.auth import get_current_user
from hma_service.services.container import ServiceContainer, get_container

router = APIRouter(prefix="/api/series", tags=["series"])


class BackfillRequest(BaseModel):
    day: Optional[date] = None
    resolution: int = 1


class PruneRequest(BaseModel):
    retention_days: Optional[int] = None


@router.post("/prune", response_model=ApiResponse)
async def prune_series(
    body: PruneRequest,
    services: ServiceContainer = Depends(get_container),
    current_user: dict = Depends(get_current_user),
):
    result = services.query.prune(body.retention_days)
    return ApiResponse.ok(data=result, message="Retention applied")


@router.get("/{symbol}", response_model=ApiResponse)
async def get_series(
    symbol: str,
    start: Optional[datetime] = Query(default=None, description="ISO timestamp, inclusive"),
    end: Optional[datetime] = Query(default=None, description="ISO timestamp, inclusive"),
    resolution: Optional[int] = Query(default=None, ge=1, description="Candle resolution in minutes; 1-minute data is aggregated when no such series is stored"),
    services: ServiceContainer = Depends(get_container),
    current_user: dict = Depends(get_current_user),
):
    records = services.query.get_series(symbol, start, end, resolution)
    return ApiResponse.ok(data=records, message=f"{len(records)} candles")


@router.get("/{symbol}/missing", response_model=ApiResponse)
async def get_missing_periods(
    symbol: str,
    day: Optional[date] = Query(default=None, description="Session date, defaults to the latest session"),
    resolution: int = Query(default=1, ge=1),
    services: ServiceContainer = Depends(get_container),
    current_user: dict = Depends(get_current_user),
):
    return ApiResponse.ok(data=services.query.missing_periods(symbol, day, resolution))


@router.post("/{symbol}/backfill", response_model=ApiResponse)
async def backfill_series(
    symbol: str,
    body: BackfillRequest,
    services: ServiceContainer = Depends(get_container),
    current_user: dict = Depends(get_current_user),
):
    result = await services.query.backfill(symbol, body.day, body.resolution)
    message = "Backfill deferred by rate limit" if result.deferred else "Backfill finished"
    return ApiResponse.ok(data=result.to_dict(), message=message)
