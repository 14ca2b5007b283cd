from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_url: str = "sqlite:///./sourcesync.db"
    log_level: str = "INFO"

    # Upstream endpoints and fallback credentials (per-target credentials win
    # for private targets)
    scrapbox_base_url: str = "https://scrapbox.io/api"
    scrapbox_cookie: str = ""
    scrapbox_page_size: int = 100
    gmail_base_url: str = "https://gmail.googleapis.com/gmail/v1"
    gmail_access_token: str = ""
    gmail_page_size: int = 50
    gmail_query: Optional[str] = None
    request_timeout_seconds: float = 30.0

    # Rate limiting / retry
    min_request_interval_seconds: float = 1.0
    max_retries: int = 5
    initial_retry_delay_seconds: float = 2.0
    max_retry_delay_seconds: float = 300.0

    # Scheduling
    auto_sync_threshold_minutes: int = 60
    auto_sync_interval_minutes: int = 15
    auto_sync_concurrency: int = 1
    stale_run_minutes: int = 120


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
