"""
Central configuration using Pydantic BaseSettings.

Validates all env vars at startup (fail-fast). Timing constants for the
session core (inactivity timeout, cache TTL, reconnect backoff) have fixed
defaults and only need overriding in tests or unusual deployments.

Usage:
    from config.settings import get_settings

    settings = get_settings()
    print(settings.api.api_url, settings.api.realtime_url)

Lazy initialization: get_settings() creates the singleton on first call.
Tests can reset via get_settings.cache_clear().
"""

from functools import lru_cache
from typing import Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings


# =============================================================================
# Nested Settings Groups
# =============================================================================


class ApiSettings(BaseSettings):
    """HTTP API and WebSocket endpoint configuration."""

    model_config = {"env_prefix": "", "extra": "ignore"}

    api_url: str = "http://localhost:5001/api"
    ws_url: Optional[str] = None  # Derived from api_url when unset
    request_timeout_seconds: float = 10.0

    @field_validator("api_url")
    @classmethod
    def validate_api_url(cls, v: str) -> str:
        """API base must be an http(s) URL without a trailing slash."""
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError("API_URL must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("ws_url")
    @classmethod
    def validate_ws_url(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        v = v.strip()
        if not v.startswith(("ws://", "wss://")):
            raise ValueError("WS_URL must start with ws:// or wss://")
        return v.rstrip("/")

    @property
    def realtime_url(self) -> str:
        """WebSocket URL parallel to the HTTP base (http -> ws, https -> wss)."""
        if self.ws_url:
            return self.ws_url
        if self.api_url.startswith("https://"):
            return "wss://" + self.api_url[len("https://"):]
        return "ws://" + self.api_url[len("http://"):]


class SessionSettings(BaseSettings):
    """Token lifecycle, activity, cache and login throttling."""

    model_config = {"env_prefix": "SESSION_", "extra": "ignore"}

    inactivity_timeout_seconds: float = 600.0  # 10 minutes
    expiry_margin_seconds: float = 60.0
    tick_interval_seconds: float = 30.0
    cache_ttl_seconds: float = 1800.0  # 30 minutes
    coalesce_debounce_ms: int = 300

    # auto: take the new refresh token when the server sends one
    # keep: always keep the current refresh token
    # replace: always use what the server sends (possibly none)
    refresh_rotation: str = "auto"

    # Login lockout
    lockout_threshold: int = 5
    lockout_duration_seconds: float = 300.0  # 5 minutes

    @field_validator("refresh_rotation")
    @classmethod
    def validate_rotation(cls, v: str) -> str:
        allowed = ("auto", "keep", "replace")
        if v.lower() not in allowed:
            raise ValueError(f'refresh_rotation must be one of: {", ".join(allowed)}')
        return v.lower()


class RealtimeSettings(BaseSettings):
    """WebSocket reconnect and fallback polling configuration."""

    model_config = {"env_prefix": "REALTIME_", "extra": "ignore"}

    handshake_timeout_seconds: float = 10.0
    heartbeat_interval_seconds: float = 30.0
    reconnect_base_seconds: float = 5.0
    reconnect_factor: float = 1.5
    max_reconnect_attempts: int = 8
    min_reconnect_delay_seconds: float = 5.0
    fallback_interval_multiplier: int = 6  # N in N * BASE
    poll_interval_seconds: float = 30.0

    @property
    def fallback_interval_seconds(self) -> float:
        """Long retry interval used after the reconnect budget is exhausted."""
        return self.fallback_interval_multiplier * self.reconnect_base_seconds


class StorageSettings(BaseSettings):
    """Durable key-value storage configuration."""

    model_config = {"env_prefix": "", "extra": "ignore"}

    storage_path: str = ""  # SQLite file; empty means in-memory only


# =============================================================================
# Root Settings
# =============================================================================


class AppSettings(BaseSettings):
    """Root application settings composing all sub-settings."""

    model_config = {"env_prefix": "", "extra": "ignore", "env_file": ".env", "env_file_encoding": "utf-8"}

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"
    log_file: str = ""

    # Nested groups (initialized separately to support env_prefix)
    api: ApiSettings = None  # type: ignore[assignment]
    session: SessionSettings = None  # type: ignore[assignment]
    realtime: RealtimeSettings = None  # type: ignore[assignment]
    storage: StorageSettings = None  # type: ignore[assignment]

    @model_validator(mode="before")
    @classmethod
    def _init_nested(cls, values):
        """Initialize nested settings from environment."""
        if values.get("api") is None:
            values["api"] = ApiSettings()
        if values.get("session") is None:
            values["session"] = SessionSettings()
        if values.get("realtime") is None:
            values["realtime"] = RealtimeSettings()
        if values.get("storage") is None:
            values["storage"] = StorageSettings()
        return values


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """
    Get the application settings singleton.

    Lazy-initialized on first call. Validates all env vars (fail-fast).
    Tests can reset via: get_settings.cache_clear()
    """
    return AppSettings()
