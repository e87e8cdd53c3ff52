"""
Cache management routes
GET  /api/cache/stats     - series + indicator cache stats
POST /api/cache/clear     - drop one symbol's indicator cache, or all
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from hma_service.models.response import ApiResponse
from hma_service.routers.auth import get_current_user
from hma_service.services.container import ServiceContainer, get_container

router = APIRouter(prefix="/api/cache", tags=["cache"])


class ClearRequest(BaseModel):
    symbol: Optional[str] = None


@router.get("/stats", response_model=ApiResponse)
async def cache_stats(
    services: ServiceContainer = Depends(get_container),
    current_user: dict = Depends(get_current_user),
):
    return ApiResponse.ok(data={
        "series": services.monitor.cache_stats(),
        "indicators": services.cache.stats(),
    })


@router.post("/clear", response_model=ApiResponse)
async def clear_cache(
    body: ClearRequest,
    services: ServiceContainer = Depends(get_container),
    current_user: dict = Depends(get_current_user),
):
    """Monitored symbols keep running; their next refresh rebuilds from the store"""
    if body.symbol:
        removed = 1 if services.cache.delete(body.symbol) else 0
        await services.cache.drop_mirror(body.symbol, services.engine.period)
        return ApiResponse.ok(data={"removed": removed}, message=f"Cache cleared: {body.symbol}")
    removed = services.cache.clear()
    return ApiResponse.ok(data={"removed": removed}, message="Cache cleared")
