from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./leadsync.db"
    # "package.module:callable" performing one CRM sync for a payload dict
    sync_target: str = ""
    log_level: str = "INFO"

    # Queue behaviour
    queue_batch_size: int = 10
    queue_poll_interval_seconds: int = 60
    queue_max_retries: int = 5
    queue_default_priority: int = 5
    queue_rate_limit_priority: int = 3
    backoff_immediate: bool = False  # debug only: first attempt due at enqueue time

    # Per-job bounds; the lease must outlive the sync timeout
    sync_timeout_seconds: float = 30.0
    lease_seconds: int = 300

    # Retention
    retention_days: int = 7
    cleanup_hour: int = 4

    # Health thresholds
    health_max_pending: int = 1000
    health_max_recent_failures: int = 50

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_prefix = "LEADSYNC_"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
