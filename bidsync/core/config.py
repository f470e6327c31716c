from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    # ─────────── APP ───────────
    app_name: str = "CodeBid Sync Console"
    environment: str = "dev"
    log_level: str = "INFO"

    # ─────────── COORDINATOR ───────────
    server_url: str = "http://localhost:5000"
    api_prefix: str = "/api"
    request_timeout_seconds: float = 5.0

    # ─────────── CONSOLE API ───────────
    console_prefix: str = "/api/v1"
    request_id_header: str = "X-Request-Id"
    console_host: str = "127.0.0.1"
    console_port: int = 8000

    # ─────────── RETRY / BACKOFF ───────────
    snapshot_max_attempts: int = 5
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 30.0
    backoff_jitter: float = 0.5

    # ─────────── PUSH CHANNEL ───────────
    channel_max_reconnect_attempts: int = 50
    channel_transports: List[str] = ["websocket", "polling"]
    channel_connect_timeout_seconds: float = 5.0

    # ─────────── ROUND STATE ───────────
    timer_tick_seconds: float = 1.0
    timer_drift_tolerance_seconds: float = 2.0
    desync_resync_threshold: int = 3
    starting_coins: int = 2000

    # ─────────── LOCAL CACHE ───────────
    cache_url: str = "sqlite:///./bidsync_cache.db"

    @property
    def coordinator_api(self) -> str:
        # accept SERVER_URL with or without a trailing /api
        base = self.server_url.rstrip("/")
        prefix = self.api_prefix.rstrip("/")
        if prefix and base.endswith(prefix):
            base = base[: -len(prefix)]
        return f"{base}{prefix}"

    @property
    def socket_url(self) -> str:
        return self.coordinator_api[: -len(self.api_prefix.rstrip("/"))] or self.server_url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
