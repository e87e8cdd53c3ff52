"""
HMA data service configuration
Reads settings from environment variables / .env; detects Docker and switches Redis to the service name
"""

import os
from functools import lru_cache
from typing import Dict, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _is_docker() -> bool:
    """Whether we are running inside a Docker container"""
    return (
        os.path.exists("/.dockerenv")
        or os.environ.get("DOCKER_CONTAINER", "").lower() in ("1", "true", "yes")
    )


def _default_redis_host() -> str:
    """Docker uses the 'redis' service name, local runs use 'localhost'"""
    return "redis" if _is_docker() else "localhost"


class HMAServiceSettings(BaseSettings):
    """HMA data service settings"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Server ────────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8001)
    DEBUG: bool = Field(default=False)
    ALLOWED_ORIGINS: List[str] = Field(
        default_factory=lambda: ["*"]
    )

    # ── Redis (optional indicator snapshot mirror) ────────
    REDIS_HOST: str = Field(default_factory=_default_redis_host)
    REDIS_PORT: int = Field(default=6379)
    REDIS_PASSWORD: str = Field(default="")
    REDIS_DB: int = Field(default=0)
    REDIS_ENABLED: bool = Field(default=False)
    REDIS_MAX_CONNECTIONS: int = Field(default=20)

    @property
    def REDIS_URL(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    # ── JWT / API auth ─────────────────────────────────────
    JWT_SECRET: str = Field(default="change-me-in-production")
    JWT_ALGORITHM: str = Field(default="HS256")
    ACCESS_TOKEN_EXPIRE_MINUTES: int = Field(default=60)
    API_USERNAME: str = Field(default="admin")
    API_PASSWORD: str = Field(default="admin123")

    # ── Broker data API (Fyers v3) ─────────────────────────
    FYERS_APP_ID: str = Field(default="")
    FYERS_ACCESS_TOKEN: str = Field(default="")
    FYERS_DATA_URL: str = Field(default="https://api-t1.fyers.in/data")
    FETCH_TIMEOUT_SECONDS: float = Field(default=12.0)

    # ── Exchange calendar ─────────────────────────────────
    EXCHANGE_TZ: str = Field(default="Asia/Kolkata")
    SESSION_OPEN: str = Field(default="09:15")
    SESSION_CLOSE: str = Field(default="15:30")
    EXCHANGE_CALENDAR: str = Field(default="XNSE")        # pandas_market_calendars name
    HOLIDAYS: List[str] = Field(default_factory=list)     # ISO dates; replaces the exchange calendar when set

    # ── Rate limits (calls per wall-clock minute) ─────────
    RATE_LIMITS: Dict[str, int] = Field(
        default_factory=lambda: {"default": 100, "historical": 50, "option": 30, "market": 20}
    )
    THROTTLE_ERROR_THRESHOLD: int = Field(default=3)
    THROTTLE_REDUCTION: float = Field(default=0.2)
    THROTTLE_FLOOR: int = Field(default=5)
    THROTTLE_RECOVERY_SECONDS: int = Field(default=300)

    # ── Storage ───────────────────────────────────────────
    DATA_DIR: str = Field(default="./data")
    STORAGE_BACKEND: str = Field(default="csv")        # csv | memory
    RETENTION_DAYS: int = Field(default=3)             # trading days kept by prune
    SERIES_WINDOW_MAX_CANDLES: int = Field(default=2000)

    # ── Backfill ──────────────────────────────────────────
    BACKFILL_BATCH_SIZE: int = Field(default=5)
    BACKFILL_BATCH_COOLDOWN: float = Field(default=10.0)
    BACKFILL_REQUEST_DELAY: float = Field(default=1.0)
    MISSING_TOLERANCE_SECONDS: int = Field(default=30)
    MAX_LOOKBACK_DAYS: int = Field(default=5)

    # ── Indicator / monitoring ────────────────────────────
    HMA_PERIOD: int = Field(default=55)
    REQUIRED_CANDLES: int = Field(default=60)          # 60 x 5-min = 300 market minutes
    CANDLE_RESOLUTION: int = Field(default=5)          # minutes
    INDICATOR_CACHE_TTL: int = Field(default=300)      # seconds
    REFRESH_SETTLE_SECONDS: float = Field(default=2.0)  # wait after each candle boundary

    # ── Logging ───────────────────────────────────────────
    LOG_LEVEL: str = Field(default="INFO")


@lru_cache
def get_settings() -> HMAServiceSettings:
    """Process-wide settings (cached)"""
    return HMAServiceSettings()


settings = get_settings()
