"""
HMA Indicator Service
FastAPI application entry point

Run:
    uvicorn hma_service.main:app --host 0.0.0.0 --port 8001
    python -m hma_service.main
"""

import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from hma_service import __version__
from hma_service.config import settings
from hma_service.db import close_connections, init_redis
from hma_service.errors import (
    AuthExpiredError,
    HMAServiceError,
    InsufficientDataError,
    InvalidSymbolError,
    MarketClosedError,
    NoDataError,
    UpstreamThrottledError,
    UpstreamUnavailableError,
)
from hma_service.models.response import ApiResponse
from hma_service.routers import auth, cache, health, indicators, market, monitoring, series
from hma_service.services.container import build_container

# ── Logging ──────────────────────────────────────────────
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

_STATUS_BY_ERROR = [
    (InvalidSymbolError, 400),
    (NoDataError, 404),
    (MarketClosedError, 409),
    (InsufficientDataError, 422),
    (UpstreamThrottledError, 503),
    (UpstreamUnavailableError, 503),
    (AuthExpiredError, 503),
]


def status_for(exc: HMAServiceError) -> int:
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return code
    return 500


# ── Lifespan ─────────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("=" * 60)
    logger.info(f"🚀 HMA Indicator Service v{__version__} starting")
    logger.info(f"   Exchange  : {settings.EXCHANGE_TZ} {settings.SESSION_OPEN}-{settings.SESSION_CLOSE}")
    logger.info(f"   Storage   : {settings.STORAGE_BACKEND} ({settings.DATA_DIR})")
    logger.info(f"   Redis     : {settings.REDIS_HOST}:{settings.REDIS_PORT}")
    logger.info("=" * 60)

    # Redis is optional; the indicator cache runs in-memory without it
    redis_ok = await init_redis()
    if not redis_ok:
        logger.warning("⚠️ Redis unavailable, indicator snapshots are not mirrored")
    if not settings.FYERS_ACCESS_TOKEN:
        logger.warning("⚠️ FYERS_ACCESS_TOKEN not set, upstream calls will fail with auth_expired")

    if getattr(app.state, "services", None) is None:
        app.state.services = build_container(settings)

    yield

    logger.info("🔄 Shutting down...")
    await app.state.services.aclose()
    await close_connections()
    logger.info("✅ Shutdown complete")


# ── Application ──────────────────────────────────────────
app = FastAPI(
    title="HMA Indicator Service",
    description=(
        "Intraday HMA-55 engine for index, futures and option instruments:\n"
        "- 📈 Rate-limited candle collection with trading-calendar awareness\n"
        "- 🧩 Gap detection and backfill\n"
        "- 🗄️ Deduplicated per-day series storage with retention\n"
        "- 📡 Live monitoring with incremental HMA updates (CE/PE pairs)\n\n"
        "**Layers**\n"
        "```\n"
        "RateLimit / Calendar  ← call budgets, sessions, holidays\n"
        "Acquisition           ← broker history / quotes / depth\n"
        "Storage / Backfill    ← shards, consolidation, gap refill\n"
        "Analysis / Cache      ← HMA, crossovers, indicator cache\n"
        "```"
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ── CORS ─────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Request timing ───────────────────────────────────────
@app.middleware("http")
async def add_process_time(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    response.headers["X-Process-Time"] = f"{(time.time() - start) * 1000:.1f}ms"
    return response


# ── Exception handlers ───────────────────────────────────
@app.exception_handler(HMAServiceError)
async def service_error_handler(request: Request, exc: HMAServiceError):
    code = status_for(exc)
    logger.warning(f"⚠️ {request.method} {request.url.path} → {code} {exc.kind}: {exc}")
    body = ApiResponse.fail(error=exc.kind, message=exc.message, data=exc.to_dict())
    return JSONResponse(status_code=code, content=body.model_dump(mode="json"))


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "Internal server error", "message": str(exc)},
    )


# ── Routers ──────────────────────────────────────────────
app.include_router(health.router)
app.include_router(auth.router)
app.include_router(series.router)
app.include_router(indicators.router)
app.include_router(monitoring.router)
app.include_router(cache.router)
app.include_router(market.router)


@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "HMA Indicator Service",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    uvicorn.run(
        "hma_service.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
