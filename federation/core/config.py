"""
Configuration management for the identity federation service.
Uses Pydantic Settings for environment variable handling and validation.
"""

from typing import Dict, List, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application Settings
    app_name: str = Field(default="Identity Federation Service", env="APP_NAME")
    app_version: str = Field(default="1.0.0", env="APP_VERSION")
    app_env: str = Field(default="development", env="APP_ENV")
    debug: bool = Field(default=False, env="DEBUG")
    log_level: str = Field(default="INFO", env="LOG_LEVEL")

    # Server Configuration
    host: str = Field(default="0.0.0.0", env="HOST")
    port: int = Field(default=8000, env="PORT")
    reload: bool = Field(default=False, env="RELOAD")

    # Database Configuration
    database_url: str = Field(default="sqlite:///./federation.db", env="DATABASE_URL")
    database_pool_size: int = Field(default=10, env="DATABASE_POOL_SIZE")
    database_max_overflow: int = Field(default=20, env="DATABASE_MAX_OVERFLOW")
    database_pool_timeout: int = Field(default=30, env="DATABASE_POOL_TIMEOUT")
    database_pool_recycle: int = Field(default=3600, env="DATABASE_POOL_RECYCLE")

    # Redis Configuration (client record cache)
    redis_url: str = Field(default="redis://localhost:6379/0", env="REDIS_URL")
    client_cache_enabled: bool = Field(default=True, env="CLIENT_CACHE_ENABLED")
    client_cache_ttl_seconds: int = Field(default=300, env="CLIENT_CACHE_TTL_SECONDS")

    # OAuth 2.0 Token Settings
    oauth2_authorization_code_expire_minutes: int = Field(default=10, env="OAUTH2_AUTHORIZATION_CODE_EXPIRE_MINUTES")
    oauth2_access_token_expire_minutes: int = Field(default=60, env="OAUTH2_ACCESS_TOKEN_EXPIRE_MINUTES")
    oauth2_refresh_token_expire_days: int = Field(default=30, env="OAUTH2_REFRESH_TOKEN_EXPIRE_DAYS")
    oauth2_public_client_refresh_tokens: bool = Field(default=False, env="OAUTH2_PUBLIC_CLIENT_REFRESH_TOKENS")
    oauth2_token_length: int = Field(default=48, env="OAUTH2_TOKEN_LENGTH")

    # OAuth 2.0 Scopes
    oauth2_default_scopes: List[str] = Field(default=["profile"], env="OAUTH2_DEFAULT_SCOPES")
    oauth2_supported_scopes: List[str] = Field(
        default=[
            "profile", "email", "phone",
            "wallet:read", "wallet:write",
            "transactions:read", "transfers:write",
            "school:read", "school:write",
        ],
        env="OAUTH2_SUPPORTED_SCOPES",
    )

    # PKCE
    pkce_code_verifier_min_length: int = Field(default=43, env="PKCE_CODE_VERIFIER_MIN_LENGTH")
    pkce_code_verifier_max_length: int = Field(default=128, env="PKCE_CODE_VERIFIER_MAX_LENGTH")

    # Internal SSO relay
    sso_token_expire_minutes: int = Field(default=5, env="SSO_TOKEN_EXPIRE_MINUTES")
    sso_callback_path: str = Field(default="/auth/sso", env="SSO_CALLBACK_PATH")
    sso_apps: Dict[str, str] = Field(
        default={
            "wallet": "https://wallet.example.com",
            "merchant": "https://merchant.example.com",
            "checkout": "https://checkout.example.com",
            "developer": "https://developer.example.com",
        },
        env="SSO_APPS",
    )
    sso_service_key: str = Field(default="change-me-sso-service-key", env="SSO_SERVICE_KEY")

    # Authorization endpoint
    login_url: str = Field(default="http://localhost:3000/login", env="LOGIN_URL")
    consent_url: str = Field(default="http://localhost:3000/consent", env="CONSENT_URL")
    consent_request_secret: str = Field(default="change-me-consent-secret", env="CONSENT_REQUEST_SECRET")
    consent_request_expire_minutes: int = Field(default=15, env="CONSENT_REQUEST_EXPIRE_MINUTES")
    authenticated_user_header: str = Field(default="X-Authenticated-User", env="AUTHENTICATED_USER_HEADER")

    # Administration
    admin_api_key: str = Field(default="change-me-admin-key", env="ADMIN_API_KEY")

    # Webhooks
    webhook_max_attempts: int = Field(default=5, env="WEBHOOK_MAX_ATTEMPTS")
    webhook_backoff_base_seconds: int = Field(default=30, env="WEBHOOK_BACKOFF_BASE_SECONDS")
    webhook_backoff_max_seconds: int = Field(default=3600, env="WEBHOOK_BACKOFF_MAX_SECONDS")
    webhook_timeout_seconds: float = Field(default=5.0, env="WEBHOOK_TIMEOUT_SECONDS")
    webhook_worker_threads: int = Field(default=4, env="WEBHOOK_WORKER_THREADS")
    webhook_retry_interval_seconds: int = Field(default=30, env="WEBHOOK_RETRY_INTERVAL_SECONDS")
    webhook_claim_lease_seconds: int = Field(default=300, env="WEBHOOK_CLAIM_LEASE_SECONDS")
    webhook_signature_tolerance_seconds: int = Field(default=300, env="WEBHOOK_SIGNATURE_TOLERANCE_SECONDS")

    # Expiry reaper
    reaper_enabled: bool = Field(default=True, env="REAPER_ENABLED")
    reaper_interval_seconds: int = Field(default=300, env="REAPER_INTERVAL_SECONDS")
    reaper_batch_size: int = Field(default=500, env="REAPER_BATCH_SIZE")
    reaper_grace_minutes: int = Field(default=60, env="REAPER_GRACE_MINUTES")
    token_audit_retention_days: int = Field(default=7, env="TOKEN_AUDIT_RETENTION_DAYS")

    # CORS Settings
    cors_enabled: bool = Field(default=True, env="CORS_ENABLED")
    cors_origins: str = Field(default="http://localhost:3000", env="CORS_ORIGINS")
    cors_methods: str = Field(default="GET,POST,PUT,DELETE,OPTIONS", env="CORS_METHODS")
    cors_headers: str = Field(default="Content-Type,Authorization", env="CORS_HEADERS")
    cors_credentials: bool = Field(default=True, env="CORS_CREDENTIALS")

    @field_validator("oauth2_supported_scopes", "oauth2_default_scopes", mode="before")
    @classmethod
    def parse_scope_list(cls, v):
        """Accept comma or space separated scope lists from the environment."""
        if isinstance(v, str) and not v.strip().startswith("["):
            return [item for item in v.replace(",", " ").split() if item]
        return v

    @field_validator("sso_callback_path")
    @classmethod
    def validate_callback_path(cls, v):
        """SSO callback path must be absolute."""
        if not v.startswith("/"):
            raise ValueError("sso_callback_path must start with '/'")
        return v

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get the global settings instance."""
    return settings


def parse_comma_separated(value: Optional[str]) -> List[str]:
    """Parse a comma-separated string into a list of strings."""
    if not value:
        return []
    return [item.strip() for item in value.split(",")]


# Convenience methods for parsed CORS settings
def get_cors_origins() -> List[str]:
    """Get CORS origins as a list."""
    return parse_comma_separated(settings.cors_origins)


def get_cors_methods() -> List[str]:
    """Get CORS methods as a list."""
    return parse_comma_separated(settings.cors_methods)


def get_cors_headers() -> List[str]:
    """Get CORS headers as a list."""
    return parse_comma_separated(settings.cors_headers)
