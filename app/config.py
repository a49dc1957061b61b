"""Application configuration"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings"""

    # Database
    database_url: str = "sqlite:///./reportsync.db"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Public base URL trackers use to reach our webhook endpoint.
    # A value stored via PUT /api/settings/app-url takes precedence.
    app_url: str | None = None

    # Trackers
    github_api_url: str = "https://api.github.com"
    tracker_timeout_seconds: float = 20.0

    # Sync queue worker
    sync_worker_enabled: bool = True
    sync_worker_interval_seconds: int = 5
    sync_max_concurrent: int = 3
    sync_max_attempts: int = 3
    sync_retry_base_seconds: float = 1.0
    sync_retry_max_delay_seconds: float = 60.0
    # Spacing between two tracker calls for the same integration.
    sync_min_call_interval_seconds: float = 0.5
    # Stop dequeuing for an integration once its remaining quota drops to this.
    sync_rate_limit_reserve: int = 10

    # Webhooks
    webhook_event_retention_hours: int = 72

    # Logging
    log_level: str = "INFO"

    # Auth (optional)
    # When enabled, all routes are protected by HTTP Basic auth, except for
    # /health and the tracker webhook endpoints (those carry their own signature).
    auth_enabled: bool = False
    auth_username: str | None = None
    auth_password: str | None = None

    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()
