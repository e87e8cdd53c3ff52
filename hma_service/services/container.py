"""
Service wiring
Builds every layer from settings once per application; routers reach it through ``app.state``.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from hma_service.config import HMAServiceSettings
from hma_service.db import get_redis
from hma_service.layers.acquisition import FyersDataClient, MarketDataClient
from hma_service.layers.analysis import IndicatorEngine
from hma_service.layers.backfill import HistoricalFetcher
from hma_service.layers.cache import IndicatorCacheLayer
from hma_service.layers.calendar import MarketClock, exchange_holidays
from hma_service.layers.rate_limit import RateLimiter
from hma_service.layers.storage import CsvSeriesBackend, MemorySeriesBackend, TimeSeriesStore
from hma_service.services.monitor_service import LiveMonitor
from hma_service.services.query_service import QueryService

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: HMAServiceSettings
    clock: MarketClock
    limiter: RateLimiter
    store: TimeSeriesStore
    client: MarketDataClient
    fetcher: HistoricalFetcher
    engine: IndicatorEngine
    cache: IndicatorCacheLayer
    monitor: LiveMonitor
    query: QueryService

    async def aclose(self) -> None:
        await self.monitor.shutdown()
        self.store.consolidate()
        await self.client.aclose()


def build_container(
    cfg: HMAServiceSettings,
    client: Optional[MarketDataClient] = None,
    clock: Optional[MarketClock] = None,
) -> ServiceContainer:
    """Construct the layer graph: clock → limiter → store → client → fetcher → engine/cache → monitor"""
    clock = clock or MarketClock(
        holidays=cfg.HOLIDAYS or exchange_holidays(cfg.EXCHANGE_CALENDAR),
        tz=cfg.EXCHANGE_TZ,
        session_open=cfg.SESSION_OPEN,
        session_close=cfg.SESSION_CLOSE,
    )
    limiter = RateLimiter(
        limits=cfg.RATE_LIMITS,
        error_threshold=cfg.THROTTLE_ERROR_THRESHOLD,
        reduction=cfg.THROTTLE_REDUCTION,
        floor=cfg.THROTTLE_FLOOR,
        recovery_seconds=cfg.THROTTLE_RECOVERY_SECONDS,
    )
    if cfg.STORAGE_BACKEND == "memory":
        backend = MemorySeriesBackend()
    else:
        backend = CsvSeriesBackend(cfg.DATA_DIR)
    store = TimeSeriesStore(backend, clock, max_candles=cfg.SERIES_WINDOW_MAX_CANDLES)

    client = client or FyersDataClient(
        app_id=cfg.FYERS_APP_ID,
        access_token=cfg.FYERS_ACCESS_TOKEN,
        base_url=cfg.FYERS_DATA_URL,
        timeout_sec=cfg.FETCH_TIMEOUT_SECONDS,
    )
    fetcher = HistoricalFetcher(
        client,
        store,
        limiter,
        clock,
        batch_size=cfg.BACKFILL_BATCH_SIZE,
        batch_cooldown=cfg.BACKFILL_BATCH_COOLDOWN,
        request_delay=cfg.BACKFILL_REQUEST_DELAY,
        tolerance_seconds=cfg.MISSING_TOLERANCE_SECONDS,
        fetch_timeout=cfg.FETCH_TIMEOUT_SECONDS,
        max_lookback_days=cfg.MAX_LOOKBACK_DAYS,
    )
    engine = IndicatorEngine(cfg.HMA_PERIOD)
    cache = IndicatorCacheLayer(ttl_seconds=cfg.INDICATOR_CACHE_TTL, redis_getter=get_redis)
    monitor = LiveMonitor(
        fetcher,
        store,
        engine,
        cache,
        clock,
        required_candles=cfg.REQUIRED_CANDLES,
        resolution=cfg.CANDLE_RESOLUTION,
        settle_seconds=cfg.REFRESH_SETTLE_SECONDS,
    )
    query = QueryService(
        store, fetcher, engine, monitor, clock, client, limiter, retention_days=cfg.RETENTION_DAYS
    )
    logger.info(f"✅ Services ready (storage={cfg.STORAGE_BACKEND}, HMA{cfg.HMA_PERIOD}, {cfg.CANDLE_RESOLUTION}m)")
    return ServiceContainer(
        settings=cfg,
        clock=clock,
        limiter=limiter,
        store=store,
        client=client,
        fetcher=fetcher,
        engine=engine,
        cache=cache,
        monitor=monitor,
        query=query,
    )


def get_container(request: Request) -> ServiceContainer:
    """FastAPI dependency"""
    return request.app.state.services
