"""
Application configuration using Pydantic Settings.
All config is loaded from environment variables / .env file.
"""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from .env file."""

    # ── App ──────────────────────────────────────────────
    APP_NAME: str = "groupcal-sync"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"  # comma-separated

    # ── Supabase ─────────────────────────────────────────
    SUPABASE_URL: str = ""
    SUPABASE_KEY: str = ""  # anon/public key
    SUPABASE_SERVICE_KEY: str = ""  # service_role key (for admin ops)

    # ── Security ─────────────────────────────────────────
    JWT_SECRET_KEY: str = ""
    JWT_ALGORITHM: str = "HS256"

    # ── Link Store ───────────────────────────────────────
    LINK_STORE_PATH: str = ".groupcal/links.json"

    # ── Sync windows ─────────────────────────────────────
    CALENDAR_TIMEZONE: str = "UTC"  # IANA name, used for "same calendar day" checks
    LOCAL_WINDOW_DAYS: int = 14  # local store window read/uploaded each run
    FETCH_PAST_DAYS: int = 30  # merged view looks back this far
    FETCH_FUTURE_DAYS: int = 365  # ... and ahead this far
    BUSY_PLACEHOLDER: str = "BUSY"

    # ── Widget export ────────────────────────────────────
    WIDGET_LOOKAHEAD_DAYS: int = 30
    WIDGET_HIDE_HOLIDAYS: bool = True

    # ── Background sync ──────────────────────────────────
    SYNC_INTERVAL_MINUTES: int = 15
    SYNC_DEBOUNCE_SECONDS: int = 5  # delay after a "local store changed" signal

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": True,
    }


@lru_cache
def get_settings() -> Settings:
    """Cached settings instance (singleton)."""
    return Settings()
