from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Client settings loaded from env/.env (pydantic v2 style, `ESCALADA_` prefix)."""

    model_config = SettingsConfigDict(env_file=".env", env_prefix="ESCALADA_", extra="ignore")

    api_base: str = "http://localhost:8000/api"
    # Derived from api_base when left empty (http -> ws, https -> wss).
    ws_base: str = ""
    auth_token: str | None = None

    # Command dispatch (per-attempt timeout + retry/backoff for transient failures).
    command_timeout_sec: float = 5.0
    command_retries: int = 3
    retry_base_delay_sec: float = 1.0

    # Stream reconnect policy + circuit breaker.
    reconnect_base_delay_sec: float = 1.0
    reconnect_max_delay_sec: float = 30.0
    max_reconnect_attempts: int = 10

    # Public feed fallback while the read-only stream is down.
    public_poll_interval_sec: float = 5.0

    # Command types allowed to refetch state and resubmit once after a stale rejection.
    # Only SET_TIMER_PRESET did this historically; widening it is a product decision.
    stale_recovery_commands: list[str] = ["SET_TIMER_PRESET"]

    log_level: str = "INFO"
    log_file: str | None = "escalada_client.log"

    @model_validator(mode="after")
    def _derive_ws_base(self) -> "Settings":
        self.api_base = self.api_base.rstrip("/")
        if not self.ws_base:
            if self.api_base.startswith("https://"):
                self.ws_base = "wss://" + self.api_base[len("https://"):]
            elif self.api_base.startswith("http://"):
                self.ws_base = "ws://" + self.api_base[len("http://"):]
            else:
                self.ws_base = self.api_base
        self.ws_base = self.ws_base.rstrip("/")
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()
