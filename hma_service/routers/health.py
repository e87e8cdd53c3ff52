"""Health check routes"""

import time

from fastapi import APIRouter, Depends

from hma_service import __version__
from hma_service.db import check_health
from hma_service.services.container import ServiceContainer, get_container

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(services: ServiceContainer = Depends(get_container)):
    """Service health, rate budget usage and monitor count"""
    db_health = await check_health()
    return {
        "success": True,
        "data": {
            "status": "ok",
            "version": __version__,
            "timestamp": int(time.time()),
            "service": "HMA Indicator Service",
            "databases": db_health,
            "market_open": services.clock.is_session_open(),
            "monitored_symbols": len(services.monitor.status()),
            "rate_limits": services.limiter.usage_stats(),
        },
        "message": "Service is running",
    }


@router.get("/healthz")
async def healthz():
    """Kubernetes liveness probe"""
    return {"status": "ok"}


@router.get("/readyz")
async def readyz():
    """Kubernetes readiness probe"""
    return {"ready": True}
