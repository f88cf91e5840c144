"""
Application configuration using Pydantic Settings.
"""
from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Application
    app_name: str = "Statement Desk"
    debug: bool = False
    secret_key: str = "change-this-in-production"
    frontend_url: str = "http://localhost:3000"
    log_level: str = "INFO"
    log_format: str = "console"  # console or json

    # Database
    database_url: str = "sqlite+aiosqlite:///./statementdesk.db"

    # JWT
    jwt_secret_key: str = "change-this-jwt-secret"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 30
    refresh_token_expire_days: int = 7

    # Token storage (Fernet key; derived from secret_key when empty)
    token_encryption_key: str = ""

    # OAuth lifecycle
    oauth_state_ttl_minutes: int = 10
    token_refresh_margin_minutes: int = 5

    # Google OAuth
    google_client_id: str = ""
    google_client_secret: str = ""
    google_redirect_uri: str = "http://localhost:8000/api/v1/auth/google/callback"
    google_timeout_seconds: float = 15.0

    # Xero OAuth
    xero_client_id: str = ""
    xero_client_secret: str = ""
    xero_redirect_uri: str = "http://localhost:8000/api/v1/auth/xero/callback"
    xero_scopes: str = (
        "openid profile email offline_access "
        "accounting.transactions accounting.settings accounting.contacts"
    )
    xero_timeout_seconds: float = 30.0

    # QuickBooks OAuth
    quickbooks_client_id: str = ""
    quickbooks_client_secret: str = ""
    quickbooks_redirect_uri: str = "http://localhost:8000/api/v1/auth/quickbooks/callback"
    quickbooks_environment: str = "sandbox"  # sandbox or production
    quickbooks_timeout_seconds: float = 30.0

    # Bulk sync
    sync_concurrency: int = 1
    sync_max_attempts: int = 3
    sync_retry_base_delay: float = 1.0
    sync_retry_max_delay: float = 60.0
    sync_default_mapping_policy: str = "skip_unmapped"  # skip_unmapped, fail_fast, fallback
    bulk_sync_tiers: list[str] = ["professional", "business"]
    default_subscription_tier: str = "free"

    # Mappings
    require_merchant_mappings: bool = False
    low_confidence_threshold: int = 70

    # Anthropic
    anthropic_api_key: str = ""
    claude_model: str = "claude-3-5-sonnet-20241022"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
