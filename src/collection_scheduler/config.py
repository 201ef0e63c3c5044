from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Database settings
    database_url: str = "sqlite+aiosqlite:///./collection_scheduler.db"
    db_echo: bool = False

    # Data source settings
    api_base_url: str = "https://proclubs.ea.com/api/nhl"
    api_timeout: float = 30.0  # seconds per HTTP request
    cache_ttl: float = 300.0  # 5 minutes

    # Trigger loop settings
    trigger_interval: float = 60.0  # seconds between due-task checks
    trigger_max_consecutive_errors: int = 5

    # Job queue settings
    queue_concurrency: int = 4
    job_timeout: float = 600.0  # seconds before an active job is abandoned
    job_max_retries: int = 3
    job_retry_base_delay: float = 2.0  # seconds, doubled per attempt
    job_retry_multiplier: float = 2.0
    keep_completed_jobs: int = 10
    keep_failed_jobs: int = 20
    preschedule_next_run: bool = True

    # Celery settings (only used by CeleryJobQueue)
    celery_broker_url: str = "redis://localhost:6379/2"
    celery_result_backend: str = "redis://localhost:6379/3"

    model_config = SettingsConfigDict(env_prefix="COLLECTION_SCHEDULER_")
