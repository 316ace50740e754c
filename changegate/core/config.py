"""Application configuration via environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Service-wide configuration options."""

    api_v1_prefix: str = "/v1"
    service_base_url: str = "http://localhost:8000"
    redis_url: str = "redis://localhost:6379/0"
    log_level: str = "INFO"

    github_base_url: str | None = None
    github_token: str | None = None
    github_app_id: str | None = None
    github_app_private_key: str | None = None
    github_app_private_key_path: str | None = None
    github_timeout_seconds: int = 30
    token_refresh_margin_seconds: int = 60

    staging_branch_prefix: str = "staging/"
    staging_branch_max_length: int = 75
    blob_batch_size: int = 10
    blob_batch_delay_seconds: float = 0.1
    ref_read_retries: int = 3
    ref_read_backoff_seconds: float = 2.0
    remote_write_retries: int = 3
    remote_write_backoff_seconds: float = 1.0

    cicd_webhook_secret: str | None = None
    default_validation_workflow: str = "lcnc-validation.yml"
    snapshot_root: str | None = None

    notification_workers: int = 2
    notification_queue_size: int = 256
    notification_webhook_url: str | None = None

    audit_backend: str = "file"
    audit_path: str = "data/lifecycle_events.jsonl"

    otel_enabled: bool = False
    otel_exporter: str = "console"
    otel_otlp_endpoint: str | None = None

    model_config = SettingsConfigDict(env_prefix="changegate_", env_file=".env", extra="ignore")


settings = Settings()
