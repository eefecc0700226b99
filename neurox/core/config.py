from __future__ import annotations

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


# Storage keys are shared with the web console so a session file can be seeded from it.
ACCESS_TOKEN_KEY = "neurox_access_token"
REFRESH_TOKEN_KEY = "neurox_refresh_token"
USER_KEY = "neurox_user"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="NEUROX_",
        extra="ignore",
    )

    app_name: str = "neurox-console"
    log_level: str = "INFO"

    # Auth service issues and refreshes the token pair.
    auth_service_url: str = "http://localhost:8000"
    # Core backend serves appeals, messages and the realtime socket.
    backend_url: str = "http://localhost:8100"
    # Shared secret sent as Bot-authorization to text bot endpoints.
    bots_connection_secret: str = "secret_key"
    # Per-tenant service keys sent as x-authorization on multi-tenant list endpoints.
    main_service_api_key: str | None = None
    stats_service_secret_key: str | None = None
    # Applies to every HTTP call made by the API client.
    http_timeout_s: float = 30.0
    # JSON file that persists the session between runs; empty keeps it in memory.
    session_file: str = ""

    # Refresh the access token once its remaining lifetime drops below this.
    refresh_threshold_s: int = 300
    # Cadence of the background session check while authenticated.
    auth_check_interval_s: float = 60.0

    # Linear reconnect backoff: base * attempt, capped.
    ws_reconnect_base_delay_s: float = 3.0
    ws_reconnect_max_delay_s: float = 30.0
    # Stop reconnecting after this many consecutive failures; 0 retries forever.
    ws_reconnect_max_attempts: int = 10
    # Bound the opening handshake so a stalled host counts as a failure.
    ws_open_timeout_s: float = 10.0
    # "type" sends {"type", "data"}; "cmd" sends {"cmd", "channel"}.
    ws_subscribe_format: str = "type"
    # Event types requested in the subscribe directive.
    ws_event_types: list[str] = ["new_appeal", "appeal_update", "new_message"]

    # Typing indicator clears itself if no follow-up frame arrives in time.
    typing_timeout_s: float = 5.0
    # Page size used when loading appeals and message history.
    default_page_size: int = 100


@lru_cache
def get_settings() -> Settings:
    return Settings()
