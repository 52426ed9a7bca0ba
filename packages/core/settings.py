# packages/core/settings.py
from __future__ import annotations

from functools import lru_cache
from typing import Dict, List, Optional, Union

from pydantic import AnyUrl, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True, extra="ignore")

    app_env: str = "dev"
    app_name: str = "Relay Chat"
    app_host: str = "127.0.0.1"
    app_port: int = 8000

    log_level: str = "INFO"
    db_url: str = "sqlite:///data/app.db"

    # Provider endpoint (OpenAI-compatible: LM Studio, OpenRouter, ...)
    lmstudio_base_url: Optional[Union[AnyUrl, str]] = Field(
        default="http://127.0.0.1:1234", validation_alias="LMSTUDIO_BASE_URL"
    )
    lmstudio_api_key: Optional[str] = Field(default=None, validation_alias="LMSTUDIO_API_KEY")
    provider_timeout_sec: float = Field(default=60.0, validation_alias="PROVIDER_TIMEOUT_SEC")

    # Generation loop
    stream_flush_chars: int = Field(default=250, validation_alias="STREAM_FLUSH_CHARS")
    stream_flush_interval_ms: int = Field(default=500, validation_alias="STREAM_FLUSH_INTERVAL_MS")
    stream_stop_check_ms: int = Field(default=0, validation_alias="STREAM_STOP_CHECK_MS")  # 0 = every iteration
    stream_idle_tick_ms: int = Field(default=100, validation_alias="STREAM_IDLE_TICK_MS")
    stream_max_duration_sec: float = Field(default=600.0, validation_alias="STREAM_MAX_DURATION_SEC")

    # Chunk log / stop signal lifetimes
    chunk_log_ttl_sec: int = Field(default=7200, validation_alias="CHUNK_LOG_TTL_SEC")
    chunk_log_complete_ttl_sec: int = Field(default=3600, validation_alias="CHUNK_LOG_COMPLETE_TTL_SEC")
    stop_signal_ttl_sec: int = Field(default=3600, validation_alias="STOP_SIGNAL_TTL_SEC")
    store_sweep_interval_sec: float = Field(default=60.0, validation_alias="STORE_SWEEP_INTERVAL_SEC")

    # Resume
    resume_poll_interval_ms: int = Field(default=100, validation_alias="RESUME_POLL_INTERVAL_MS")
    resume_max_duration_sec: float = Field(default=600.0, validation_alias="RESUME_MAX_DURATION_SEC")

    # Client SDK
    client_session_max_age_sec: int = Field(default=300, validation_alias="CLIENT_SESSION_MAX_AGE_SEC")

    # Auth: empty list accepts any bearer token
    api_tokens: List[str] = Field(default_factory=list, validation_alias="API_TOKENS")

    # model id (or prefix ending with '*') -> profile name
    model_profiles: Dict[str, str] = Field(default_factory=dict, validation_alias="MODEL_PROFILES")

    cors_allowed_origins: str = Field(default="http://127.0.0.1:5173", validation_alias="CORS_ALLOWED_ORIGINS")

    @property
    def db_dialect(self) -> str:
        return self.db_url.split(":", 1)[0] if ":" in self.db_url else self.db_url

    @property
    def stop_latency_bound_sec(self) -> float:
        """Worst case between a stop request and the loop observing it (store round-trip excluded)."""
        return max(self.stream_stop_check_ms, self.stream_idle_tick_ms) / 1000


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return AppSettings()
