"""
Configuration management using pydantic-settings.
All settings loaded from environment variables (12-factor app).
"""

from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # QuickBooks OAuth2
    intuit_client_id: str = Field(default="", description="Intuit OAuth2 client ID")
    intuit_client_secret: str = Field(default="", description="Intuit OAuth2 client secret")
    intuit_redirect_uri: str = Field(
        default="http://localhost:8000/api/v1/oauth/callback",
        description="OAuth2 redirect URI",
    )
    intuit_env: str = Field(default="sandbox", description="Intuit environment (sandbox|production)")
    intuit_scopes: str = Field(
        default="com.intuit.quickbooks.accounting",
        description="OAuth2 scopes (space-separated)",
    )
    intuit_webhook_verifier_token: str = Field(
        default="", description="Webhook verifier token from the Intuit app dashboard"
    )

    # API authentication
    jwt_secret: str = Field(
        default="change-this-to-a-secure-random-string-in-production",
        description="JWT signing secret",
    )
    jwt_algorithm: str = Field(default="HS256", description="JWT algorithm")
    jwt_expiration_minutes: int = Field(default=1440, description="JWT expiration (24h)")

    # OAuth state cookie
    oauth_state_ttl_seconds: int = Field(default=600, ge=60, description="OAuth state lifetime")
    oauth_state_cookie_name: str = Field(default="qbo_oauth_state", description="OAuth state cookie")
    oauth_state_cookie_secure: bool = Field(default=True, description="Send state cookie over HTTPS only")

    # Database
    db_type: str = Field(default="duckdb", description="Database type")
    db_path: str = Field(default="./data/qbosync.duckdb", description="DuckDB file path")

    # Token encryption at rest (Fernet key, urlsafe base64, 32 bytes)
    token_encryption_key: str = Field(default="", description="Fernet key for OAuth tokens")

    # Outbound HTTP
    http_timeout_seconds: float = Field(default=15.0, gt=0, description="Per-call timeout")

    # Token refresh
    token_refresh_margin_seconds: int = Field(
        default=120, ge=0, description="Refresh when access token expires within this window"
    )
    token_refresh_lease_seconds: int = Field(
        default=30, ge=1, description="Lease held while a refresh is in flight"
    )
    token_refresh_grace_seconds: int = Field(
        default=5, ge=0, description="Lease kept after a successful refresh"
    )
    token_keepalive_days: int = Field(
        default=30, ge=1, description="Rotate refresh tokens not refreshed within this window"
    )

    # Sync queue
    sync_backoff_base_seconds: int = Field(default=30, ge=1, description="Backoff base delay")
    sync_backoff_cap_seconds: int = Field(default=3600, ge=1, description="Backoff cap")
    sync_max_attempts: int = Field(default=8, ge=1, description="Failures before a job goes dead")
    sync_job_lease_seconds: int = Field(default=120, ge=1, description="Job claim lease")
    sync_job_budget_seconds: float = Field(
        default=60.0, gt=0, description="Wall-clock budget per job including refresh"
    )
    sync_batch_size: int = Field(default=25, ge=1, le=500, description="Jobs claimed per cycle")

    # Worker pool
    worker_enabled: bool = Field(default=False, description="Run the worker pool inside the API")
    worker_concurrency: int = Field(default=2, ge=1, le=32, description="Polling worker tasks")
    worker_poll_interval_seconds: float = Field(default=5.0, gt=0, description="Queue poll interval")
    worker_keepalive_interval_seconds: int = Field(
        default=3600, ge=60, description="Connection keepalive interval"
    )

    # Webhooks
    webhook_dedup_retention_days: int = Field(
        default=30, ge=1, description="How long seen webhook identities are kept"
    )

    # Diagnostics
    diagnostics_failure_limit: int = Field(default=10, ge=1, le=100, description="Recent failures shown")
    diagnostics_error_max_chars: int = Field(default=200, ge=20, description="Error text truncation")

    # Invoice number reservations
    invoice_reservation_ttl_minutes: int = Field(default=30, ge=1, description="Reservation lifetime")

    # API
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_reload: bool = Field(default=False, description="Enable hot reload")
    cors_origins: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        description="CORS allowed origins (comma-separated)",
    )

    # Logging
    log_level: str = Field(default="info", description="Log level")
    log_format: str = Field(default="json", description="Log format (json|console)")

    # Development
    dev_mode: bool = Field(default=True, description="Development mode")
    debug: bool = Field(default=False, description="Debug mode")
    testing: bool = Field(default=False, description="Testing mode")

    @field_validator("cors_origins")
    @classmethod
    def parse_cors_origins(cls, v: str) -> List[str]:
        """Parse comma-separated CORS origins."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to ensure singleton behavior.
    """
    return Settings()
