"""Application settings and configuration.

This module defines all configuration options for the dWorld E2E service.
Settings are loaded from environment variables with sensible defaults.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    """

    # Application metadata
    app_name: str = Field(default="dWorld E2E", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")

    # Security and authentication
    secret_key: str = Field(alias="SECRET_KEY")
    admin_api_key: str | None = Field(default=None, alias="ADMIN_API_KEY")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Database configuration
    database_url: str = Field(default="sqlite:///./dworld_e2e.db", alias="DATABASE_URL")
    test_database_url: str | None = Field(default=None, alias="TEST_DATABASE_URL")
    use_testing_database: bool = Field(default=False, alias="USE_TEST_DATABASE")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")

    # JWT authentication settings
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(
        default=60 * 24 * 30,
        alias="ACCESS_TOKEN_EXPIRE_MINUTES",
    )

    # Key bundle registry
    key_history_limit: int = Field(default=100, alias="KEY_HISTORY_LIMIT")
    key_upload_max_retries: int = Field(default=5, alias="KEY_UPLOAD_MAX_RETRIES")
    verify_signed_pre_keys: bool = Field(default=False, alias="VERIFY_SIGNED_PRE_KEYS")

    # Re-encryption workflow
    notification_ttl_days: int = Field(default=30, alias="NOTIFICATION_TTL_DAYS")
    notification_pull_limit: int = Field(default=100, alias="NOTIFICATION_PULL_LIMIT")
    reencryption_scan_batch_size: int = Field(
        default=500,
        alias="REENCRYPTION_SCAN_BATCH_SIZE",
    )

    # Retry policy for transient store failures
    storage_retry_attempts: int = Field(default=3, alias="STORAGE_RETRY_ATTEMPTS")
    storage_retry_backoff_seconds: float = Field(
        default=0.1,
        alias="STORAGE_RETRY_BACKOFF_SECONDS",
    )

    # CORS configuration for web frontend access
    cors_origins: list[str] = Field(
        default=["*"],
        alias="CORS_ORIGINS",
    )
    cors_allow_credentials: bool = Field(default=True, alias="CORS_ALLOW_CREDENTIALS")
    cors_allow_methods: list[str] = Field(
        default=["GET", "POST", "PUT", "OPTIONS"],
        alias="CORS_ALLOW_METHODS",
    )
    cors_allow_headers: list[str] = Field(
        default=["*"],
        alias="CORS_ALLOW_HEADERS",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
    )

    @property
    def database_url_sync(self) -> str:
        """Return a sync-compatible database URL for tooling.

        Converts asyncpg URLs to psycopg for synchronous database operations
        like Alembic migrations.
        """
        url = self.effective_database_url
        if url.startswith("postgresql+asyncpg"):
            return url.replace("postgresql+asyncpg", "postgresql+psycopg", 1)
        return url

    @property
    def effective_database_url(self) -> str:
        """Return the database URL respecting testing overrides."""
        if self.use_testing_database and self.test_database_url:
            return self.test_database_url
        return self.database_url


settings = Settings()  # type: ignore[call-arg]
