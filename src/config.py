"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "Wellpulse"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- CORS ---
    cors_origins: list[str] = ["http://localhost:3000"]

    # --- Pipeline ---
    pipeline_config_path: str | None = None  # defaults to the bundled pipeline_config.yaml
    privacy_before_validation: bool = True
    stream_debounce_seconds: float = 1.0
    stream_max_retries: int = 3
    subscriber_buffer_size: int = 100
    recent_window_minutes: int = 60

    # --- Device adapters ---
    adapter_timeout_seconds: float = 10.0
    adapter_retry_attempts: int = 3
    adapter_backoff_min_seconds: float = 0.5
    adapter_backoff_max_seconds: float = 8.0
    device_sync_enabled: bool = True
    device_sync_interval_seconds: float | None = None  # None = per device type
    fitbit_api_base: str = "https://api.fitbit.com"
    garmin_api_base: str = "https://apis.garmin.com/wellness-api/rest"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
