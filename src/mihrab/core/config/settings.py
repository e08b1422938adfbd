"""Application settings loaded from environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Mihrab prayer-history server configuration."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    # Server
    # Loopback by default; there is no auth layer in front of the tools.
    mihrab_host: str = "127.0.0.1"
    mihrab_port: int = 8011
    mihrab_log_level: str = "info"
    mihrab_allow_insecure_bind: bool = False

    # Session (empty means logged out: every operation is a no-op)
    mihrab_user_id: str = ""

    # Location / time-table provider
    latitude: float | None = None
    longitude: float | None = None
    timetable_url: str = "https://api.aladhan.com/v1/timings"
    timetable_method: int = 2
    timetable_timeout_seconds: float = 10.0
    timetable_cache_hours: float = 12.0

    # Storage
    db_path: str = "~/.mihrab/records.db"
    cache_dir: str = "~/.mihrab/cache"
    encryption_key: str = ""

    # History cache
    history_fresh_seconds: float = 300.0
    history_days: int = 30
    prefill_days: int = 7
    fetch_max_attempts: int = 3
    fetch_backoff_seconds: float = 0.5
    fetch_timeout_seconds: float = 10.0
    throttle_seconds: float = 2.0

    # Reconciliation
    pending_grace_minutes: int = 120
    reconcile_interval_seconds: float = 900.0


def get_settings() -> Settings:
    """Create and return a Settings instance."""
    return Settings()
