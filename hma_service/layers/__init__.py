"""
Layered data flow
  RateLimit    : per-class call budgets with adaptive backoff
  Calendar     : sessions, holidays, trading-day arithmetic
  Acquisition  : broker market-data client (Fyers)
  Processing   : candle cleaning, session filter, 1→5 minute aggregation
  Storage      : deduplicated per-day shards + consolidated series
  Backfill     : gap detection and budgeted refill
  Analysis     : HMA computation and signals
  Cache        : indicator cache (memory, Redis mirror)
"""
