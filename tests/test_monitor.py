"""
HMA service unit tests: live monitoring lifecycle
"""

import asyncio
from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import AFTER_CLOSE, HOLIDAYS, MID_SESSION, FakeMarketData, make_fetcher, no_sleep
from hma_service.errors import InsufficientDataError, InvalidSymbolError
from hma_service.layers.analysis import IndicatorEngine
from hma_service.layers.cache import IndicatorCacheLayer
from hma_service.layers.calendar import MarketClock
from hma_service.models.market import MonitorState
from hma_service.services.monitor_service import LiveMonitor

CE = "NSE:NIFTY25JAN23500CE"
PE = "NSE:NIFTY25JAN23500PE"


class BlockingSleep:
    """Refresh loops park here until the test releases them"""

    def __init__(self):
        self.calls = []
        self.event = asyncio.Event()

    async def __call__(self, seconds):
        self.calls.append(seconds)
        await self.event.wait()


def build_monitor(now=AFTER_CLOSE, client=None, sleep=no_sleep, redis=None):
    current = [now]
    clock = MarketClock(holidays=HOLIDAYS, now_func=lambda: current[0])
    client = client or FakeMarketData(clock)
    fetcher = make_fetcher(clock, client)
    cache = IndicatorCacheLayer(ttl_seconds=300, redis_getter=(lambda: redis) if redis is not None else None)
    monitor = LiveMonitor(
        fetcher, fetcher._store, IndicatorEngine(55), cache, clock,
        required_candles=60, resolution=5, settle_seconds=0, sleep=sleep,
    )
    return monitor, client, current


# ─────────────────────────────────────────────────────────
# 1. Start / stop
# ─────────────────────────────────────────────────────────

class TestStartMonitoring:
    @pytest.mark.asyncio
    async def test_start_caches_indicator(self):
        monitor, client, _ = build_monitor()
        result = await monitor.start_monitoring(CE)

        assert result.success
        assert result.snapshot.value is not None
        assert result.snapshot.period == 55
        assert result.snapshot.candle_count == 61
        assert result.snapshot.stale is False
        handle = monitor.handle(CE)
        assert handle.state == MonitorState.CACHED
        # session closed: nothing to refresh
        assert handle.active is False

    @pytest.mark.asyncio
    async def test_needs_warmup_candles(self):
        monitor, _, _ = build_monitor()
        assert monitor.required_candles == 61

    @pytest.mark.asyncio
    async def test_second_start_uses_cache(self):
        monitor, client, _ = build_monitor()
        await monitor.start_monitoring(CE)
        calls = len(client.calls)
        result = await monitor.start_monitoring(CE)
        assert result.success
        assert len(client.calls) == calls

    @pytest.mark.asyncio
    async def test_one_minute_backfill_does_not_feed_the_indicator(self):
        monitor, client, _ = build_monitor()
        await monitor._fetcher.backfill_day(CE, date(2025, 1, 15), resolution=1)

        result = await monitor.start_monitoring(CE)

        assert result.success
        window = monitor._store.latest(CE, monitor.required_candles, resolution=5)
        spacing = {(b.timestamp - a.timestamp).total_seconds() for a, b in zip(window.candles, window.candles[1:])}
        assert spacing == {300.0}
        assert (CE, 5) in [call[:2] for call in client.calls]
        expected = monitor._engine.compute_hma(window.closes)[-1]
        assert result.snapshot.value == pytest.approx(expected, abs=1e-9)
        assert len(monitor._store.read_day(CE, date(2025, 1, 15))) == 376

    @pytest.mark.asyncio
    async def test_malformed_symbol_fails_without_upstream_call(self):
        monitor, client, _ = build_monitor()
        result = await monitor.start_monitoring("NIFTY-CE")
        assert not result.success
        assert isinstance(result.error, InvalidSymbolError)
        assert client.calls == []
        assert monitor.is_monitoring("NIFTY-CE") is False

    @pytest.mark.asyncio
    async def test_insufficient_data_names_counts(self):
        clock_days = {date(2025, 1, 15) - timedelta(days=d) for d in range(30)}
        monitor, _, current = build_monitor()
        monitor._fetcher._client.no_data_days.update(clock_days)

        result = await monitor.start_monitoring(CE)

        assert isinstance(result.error, InsufficientDataError)
        assert result.error.found == 0
        assert result.error.required == 61
        assert CE in str(result.error)
        assert monitor.is_monitoring(CE) is False

    @pytest.mark.asyncio
    async def test_stop_drops_cache(self):
        monitor, _, _ = build_monitor()
        await monitor.start_monitoring(CE)
        assert await monitor.stop_monitoring(CE) is True
        assert monitor.snapshot(CE) is None
        assert await monitor.stop_monitoring(CE) is False

    @pytest.mark.asyncio
    async def test_change_symbol(self):
        monitor, _, _ = build_monitor()
        await monitor.start_monitoring(CE)
        result = await monitor.change_symbol(CE, PE)
        assert result.success
        assert monitor.is_monitoring(CE) is False
        assert monitor.is_monitoring(PE) is True

    @pytest.mark.asyncio
    async def test_shutdown_stops_everything(self):
        monitor, _, _ = build_monitor()
        await monitor.start_monitoring(CE)
        await monitor.start_monitoring(PE)
        await monitor.shutdown()
        assert monitor.status() == []


# ─────────────────────────────────────────────────────────
# 2. CE / PE pair
# ─────────────────────────────────────────────────────────

class TestDualSymbols:
    @pytest.mark.asyncio
    async def test_invalid_pe_does_not_block_ce(self):
        monitor, _, _ = build_monitor()
        results = await monitor.fetch_hma_for_symbols(CE, "INVALID_SYMBOL")

        assert results["ce"].success
        assert results["ce"].snapshot.value is not None
        assert not results["pe"].success
        assert isinstance(results["pe"].error, InvalidSymbolError)

    @pytest.mark.asyncio
    async def test_upstream_rejection_is_per_side(self):
        monitor, client, _ = build_monitor()
        client.invalid.add(PE)
        results = await monitor.fetch_hma_for_symbols(CE, PE)
        assert results["ce"].success
        assert results["pe"].error.kind == "invalid_symbol"
        assert results["pe"].to_dict()["success"] is False

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_result(self):
        class Broken(FakeMarketData):
            async def fetch_history(self, symbol, resolution, start, end):
                if symbol == PE:
                    raise RuntimeError("boom")
                return await super().fetch_history(symbol, resolution, start, end)

        clock = MarketClock(holidays=HOLIDAYS, now_func=lambda: AFTER_CLOSE)
        monitor, _, _ = build_monitor(client=Broken(clock))
        results = await monitor.fetch_hma_for_symbols(CE, PE)
        assert results["ce"].success
        assert results["pe"].error.kind == "upstream_unavailable"
        assert monitor.is_monitoring(PE) is False


# ─────────────────────────────────────────────────────────
# 3. Staleness / refresh / cancellation
# ─────────────────────────────────────────────────────────

class TestRefresh:
    @pytest.mark.asyncio
    async def test_unrefreshed_cache_is_served_stale(self):
        monitor, _, _ = build_monitor()
        await monitor.start_monitoring(CE)
        entry = monitor._cache.peek(CE)
        entry.computed_at = datetime.now(tz=timezone.utc) - timedelta(seconds=301)

        snapshot = monitor.snapshot(CE)

        assert snapshot.stale is True
        assert snapshot.value == entry.current_value
        assert monitor.handle(CE).state == MonitorState.EXPIRED

    @pytest.mark.asyncio
    async def test_refresh_task_runs_only_in_session(self):
        sleep = BlockingSleep()
        monitor, _, _ = build_monitor(now=MID_SESSION, sleep=sleep)
        await monitor.start_monitoring(CE)
        await asyncio.sleep(0)

        handle = monitor.handle(CE)
        assert handle.active is True
        # 12:02 IST → next boundary 12:05 IST
        assert sleep.calls == [180.0]
        await monitor.stop_monitoring(CE)

    @pytest.mark.asyncio
    async def test_incremental_refresh(self):
        sleep = BlockingSleep()
        monitor, _, current = build_monitor(now=MID_SESSION, sleep=sleep)
        await monitor.start_monitoring(CE)
        before = monitor._cache.peek(CE).current_value

        current[0] = MID_SESSION + timedelta(minutes=5)
        entry = await monitor.refresh(CE)

        assert entry.candle_count == 62
        assert entry.previous_value == before
        expected = monitor._engine.compute_hma(monitor._store.latest(CE, 200, resolution=5).closes)[-1]
        assert entry.current_value == pytest.approx(expected, abs=1e-9)
        assert entry.window_version == monitor._store.version(CE, 5)
        await monitor.stop_monitoring(CE)

    @pytest.mark.asyncio
    async def test_stop_cancels_task(self):
        sleep = BlockingSleep()
        monitor, _, _ = build_monitor(now=MID_SESSION, sleep=sleep)
        await monitor.start_monitoring(CE)
        await asyncio.sleep(0)
        task = monitor.handle(CE).task

        await monitor.stop_monitoring(CE)

        assert task.done()
        assert monitor._cache.peek(CE) is None

    @pytest.mark.asyncio
    async def test_no_writes_after_stop(self):
        sleep = BlockingSleep()
        monitor, _, current = build_monitor(now=MID_SESSION, sleep=sleep)
        await monitor.start_monitoring(CE)
        await monitor.stop_monitoring(CE)

        current[0] = MID_SESSION + timedelta(minutes=5)
        assert await monitor.refresh(CE) is None
        assert monitor._cache.peek(CE) is None

    @pytest.mark.asyncio
    async def test_load_finishing_after_stop_is_discarded(self):
        gate = asyncio.Event()
        clock = MarketClock(holidays=HOLIDAYS, now_func=lambda: AFTER_CLOSE)

        class Gated(FakeMarketData):
            async def fetch_history(self, symbol, resolution, start, end):
                await gate.wait()
                return await super().fetch_history(symbol, resolution, start, end)

        monitor, _, _ = build_monitor(client=Gated(clock))
        pending = asyncio.create_task(monitor.start_monitoring(CE))
        await asyncio.sleep(0)
        assert monitor.handle(CE).state == MonitorState.FETCHING

        await monitor.stop_monitoring(CE)
        gate.set()
        result = await pending

        assert result.cancelled is True
        assert not result.success
        assert monitor._cache.peek(CE) is None
        assert monitor.is_monitoring(CE) is False

    @pytest.mark.asyncio
    async def test_restart_after_expiry_replaces_refresh_loop(self):
        sleep = BlockingSleep()
        monitor, _, _ = build_monitor(now=MID_SESSION, sleep=sleep)
        await monitor.start_monitoring(CE)
        await asyncio.sleep(0)
        old_task = monitor.handle(CE).task
        monitor._cache.peek(CE).computed_at = datetime.now(tz=timezone.utc) - timedelta(seconds=400)
        assert monitor.snapshot(CE).stale is True
        assert monitor.handle(CE).state == MonitorState.EXPIRED

        result = await monitor.start_monitoring(CE)
        await asyncio.sleep(0)

        handle = monitor.handle(CE)
        assert result.success
        assert result.snapshot.stale is False
        assert old_task.done()
        assert handle.state == MonitorState.CACHED
        assert handle.active is True
        assert handle.task is not old_task
        await monitor.stop_monitoring(CE)

    @pytest.mark.asyncio
    async def test_stop_during_mirror_write_starts_no_loop(self):
        gate = asyncio.Event()

        async def slow_setex(*args):
            await gate.wait()

        redis = MagicMock()
        redis.setex = AsyncMock(side_effect=slow_setex)
        redis.delete = AsyncMock()
        monitor, _, _ = build_monitor(now=MID_SESSION, sleep=BlockingSleep(), redis=redis)

        pending = asyncio.create_task(monitor.start_monitoring(CE))
        for _ in range(100):
            if redis.setex.called:
                break
            await asyncio.sleep(0)
        assert redis.setex.called

        await monitor.stop_monitoring(CE)
        gate.set()
        result = await pending

        assert result.cancelled is True
        assert monitor.is_monitoring(CE) is False
        assert monitor._cache.peek(CE) is None
        # stop's drop plus a second drop after the late mirror write
        assert redis.delete.await_count == 2
        assert [t for t in asyncio.all_tasks() if t.get_name() == f"hma-refresh-{CE}"] == []


class TestStats:
    @pytest.mark.asyncio
    async def test_cache_stats_and_status(self):
        monitor, _, _ = build_monitor()
        await monitor.start_monitoring(CE)

        stats = {row["symbol"]: row for row in monitor.cache_stats()}
        assert stats[CE]["is_live_monitoring"] is True
        assert stats[CE]["candle_count"] >= 61

        status = monitor.status()
        assert status[0]["symbol"] == CE
        assert status[0]["state"] == "cached"
