from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./yardsync.db"
    remote_base_url: str = "http://localhost:8080/api"
    remote_api_token: str = ""
    remote_timeout_seconds: float = 30.0
    remote_page_size: int = 50
    session_error_ceiling: int = 25  # sessions with this many record errors end "failed"
    session_retry_attempts: int = 3
    session_retry_delay_seconds: float = 2.0
    auto_sync_max_concurrency: int = 4
    reconciliation_hour: int = 4
    rate_limit_prune_minutes: int = 60

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
