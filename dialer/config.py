"""Application configuration loaded from environment variables."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Dialer service settings."""

    # App
    app_name: str = "Dialer"
    cors_origins: str = "http://localhost:3000,http://localhost:5173"
    debug: bool = False
    log_level: str = "INFO"

    # Storage: "memory" for local development and tests, "supabase" in production
    storage_backend: str = "memory"

    # Supabase
    supabase_url: str = ""
    supabase_service_key: str = ""  # service role key

    # JWT (workspace access tokens)
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"

    # Cron endpoints
    cron_secret: str = ""

    # Voice providers
    vapi_base_url: str = "https://api.vapi.ai"
    retell_base_url: str = "https://api.retellai.com"
    provider_timeout_seconds: float = 30.0

    # Call queue
    initial_concurrent_calls: int = 3
    calls_to_start_on_webhook: int = 1
    max_concurrent_calls_per_campaign: int = 3
    max_concurrent_calls_total: int = 5  # per workspace
    delay_between_calls_ms: int = 500
    concurrency_cooldown_ms: int = 10000
    max_concurrency_retries: int = 3
    retry_delay_ms: int = 2000

    # A "calling" row older than this no longer counts against concurrency
    active_call_window_minutes: int = 10
    # Cleanup marks "calling" rows older than this as failed
    stale_call_threshold_minutes: int = 5

    # Scheduling
    default_timezone: str = "Australia/Melbourne"
    draft_retention_hours: int = 24

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


settings = Settings()
