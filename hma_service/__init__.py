"""
HMA data service
Intraday index / futures / option candle collection with a live HMA-55 indicator, exposed over HTTP

Layered architecture:
  Rate limit layer  (RateLimiter)        → per-minute budgets per API class
  Calendar layer    (MarketClock)        → sessions, holidays, trading-day arithmetic
  Acquisition layer (MarketDataClient)   → pulls raw candles / quotes from the broker
  Storage layer     (TimeSeriesStore)    → per-day shards + consolidated series
  Backfill layer    (HistoricalFetcher)  → gap detection and throttled backfill
  Analysis layer    (IndicatorEngine)    → WMA / HMA / crossover
"""

__version__ = "1.0.0"
