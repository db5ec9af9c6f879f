"""Configuration for the platform session service."""

from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    # Server configuration
    server_host: str = Field(default="localhost", description="HTTP server host")
    server_port: int = Field(default=34601, description="HTTP server port")

    # Database configuration
    database_path: Path = Field(
        default=Path("./sessions.db"),
        description="Path to SQLite database backing the session KV store",
    )

    # Health monitoring
    health_check_interval: float = Field(
        default=300.0,
        description="Seconds between checks for a healthy session",
    )
    degraded_check_interval: float = Field(
        default=60.0,
        description="Seconds between checks for a degraded session",
    )
    max_check_interval: float = Field(
        default=900.0,
        description="Upper bound for the backed-off check interval (seconds)",
    )
    backoff_base: float = Field(
        default=2.0,
        description="Exponential backoff base applied per consecutive failure",
    )
    max_consecutive_failures: int = Field(
        default=3,
        description="Consecutive failed checks before a session is expired",
    )

    # Platform clients
    platform_timeout: float = Field(
        default=15.0,
        description="Timeout for a single platform call (seconds)",
    )
    marketinout_base_url: str = Field(
        default="https://www.marketinout.com",
        description="MarketInOut base URL",
    )
    tradingview_base_url: str = Field(
        default="https://www.tradingview.com",
        description="TradingView base URL",
    )
    user_agent: str = Field(
        default=(
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
        ),
        description="User-Agent sent to the platforms",
    )

    # Session store
    invalidation_delay: float = Field(
        default=0.1,
        description="Debounce delay for resolver cache invalidation (seconds)",
    )

    # Error logging
    error_log_capacity: int = Field(
        default=1000,
        description="Number of recent errors kept in memory",
    )
    error_log_max_age: int = Field(
        default=86400,
        description="Max age in seconds for in-memory error logs",
    )
    error_sink_url: Optional[str] = Field(
        default=None,
        description="Optional URL that receives error log entries as JSON",
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")

    class Config:
        """Pydantic config."""

        env_prefix = "PLATFORM_SESSIONS_"
        env_file = ".env"
        env_file_encoding = "utf-8"


# Global settings instance
settings = Settings()
