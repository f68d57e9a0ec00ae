"""
WhatsApp Session Runtime Configuration

All options come from the environment (or a local .env file):
- store and cache connections
- session storage and QR handling
- reconciliation and reconnect tuning
- wppconnect gateway access
- monitoring
"""
from functools import lru_cache
from typing import Optional
from pydantic_settings import BaseSettings
from pydantic import Field, field_validator


# Redis key prefix of runtime liveness markers, read by the status API
HEARTBEAT_PREFIX = "runtime:heartbeat:"


class Settings(BaseSettings):
    """Centralized configuration."""

    # --- APPLICATION ---
    APP_ENV: str = Field(default="development")
    LOG_LEVEL: str = Field(default="INFO")

    # --- DATABASE ---
    # Mandatory for the runtime; worker exits with code 1 when missing.
    DATABASE_URL: Optional[str] = Field(default=None)
    DB_POOL_SIZE: int = Field(default=10)
    DB_MAX_OVERFLOW: int = Field(default=20)
    DB_POOL_RECYCLE: int = Field(default=3600)

    # --- REDIS ---
    REDIS_URL: str = Field(default="redis://localhost:6379/0")

    # --- SESSIONS ---
    SESSION_DATA_DIR: str = Field(default="./session-data")
    QR_EXPIRY_SECONDS: int = Field(default=60)
    POLL_INTERVAL_MS: int = Field(default=15000)
    BOT_CACHE_TTL_SECONDS: int = Field(default=60)
    REATTACH_CONNECTED: bool = Field(default=True)
    QR_SWEEP_INTERVAL_SECONDS: int = Field(default=60)

    # --- RECONNECT ---
    RECONNECT_BASE_DELAY_SECONDS: float = Field(default=5.0)
    RECONNECT_BACKOFF_FACTOR: float = Field(default=2.0)
    RECONNECT_MAX_DELAY_SECONDS: float = Field(default=300.0)
    RECONNECT_MAX_FAILURES: int = Field(default=10)
    RECONNECT_FAILURE_WINDOW_SECONDS: float = Field(default=600.0)

    # --- BOT EXECUTOR ---
    EXECUTOR_QUEUE_SIZE: int = Field(default=1000)
    EXECUTOR_WORKERS: int = Field(default=4)

    # --- WPPCONNECT ---
    WPPCONNECT_URL: str = Field(default="http://localhost:21465")
    WPPCONNECT_SECRET_KEY: str = Field(default="")
    WPPCONNECT_SOCKETIO_PATH: str = Field(default="/socket.io/")

    # --- MONITORING ---
    SENTRY_DSN: Optional[str] = Field(default=None)
    METRICS_PORT: int = Field(default=8001)

    @property
    def poll_interval_seconds(self) -> float:
        return self.POLL_INTERVAL_MS / 1000.0

    @field_validator("WPPCONNECT_URL", mode="before")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/") if v else v

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return v.upper() if v else "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
