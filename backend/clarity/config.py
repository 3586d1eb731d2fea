"""Application configuration using Pydantic Settings."""

from functools import lru_cache
from typing import Literal

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


_SCHEMES = {
    "postgres": ("postgres://", "postgresql://", "postgresql+asyncpg://", "postgresql+psycopg2://"),
    "sqlite": ("sqlite://", "sqlite+aiosqlite://", "sqlite+pysqlite://"),
}


def _with_driver(url: str, *, postgres: str, sqlite: str) -> str:
    """Rewrite the URL scheme to the given postgres or sqlite driver."""
    targets = {"postgres": postgres, "sqlite": sqlite}
    for family, prefixes in _SCHEMES.items():
        for prefix in prefixes:
            if url.startswith(prefix):
                return f"{targets[family]}://{url[len(prefix):]}"
    return url


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Application
    app_name: str = "Clarity"
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Database
    # database_url_override (e.g. a Neon URL with sslmode) wins over the parts below
    database_url_override: str | None = None
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "clarity"
    postgres_password: str = ""
    postgres_db: str = "clarity"

    def _base_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @computed_field
    @property
    def database_url(self) -> str:
        """Async driver URL for the application engine."""
        url = _with_driver(self._base_url(), postgres="postgresql+asyncpg", sqlite="sqlite+aiosqlite")
        # asyncpg rejects query params in the URL; SSL goes through connect_args in session.py
        if url.startswith("postgresql+asyncpg://"):
            url = url.split("?")[0]
        return url

    @computed_field
    @property
    def database_requires_ssl(self) -> bool:
        url = self.database_url_override or ""
        return "sslmode=require" in url or "ssl=require" in url

    @computed_field
    @property
    def database_url_sync(self) -> str:
        """Sync driver URL for Alembic."""
        return _with_driver(self._base_url(), postgres="postgresql", sqlite="sqlite")

    # Auth / JWT
    jwt_secret_key: str  # Required - no default, must be set in .env
    jwt_algorithm: str = "HS256"
    jwt_expire_minutes: int = 60 * 24 * 7  # 7 days

    # CORS
    cors_origins: list[str] = ["http://localhost:3000"]

    # Cookies
    # Set to true when frontend and backend are on different domains
    # This uses samesite="none" + secure=True instead of samesite="lax"
    cookie_cross_domain: bool = False

    # AWS S3 (uploaded document storage)
    aws_access_key_id: str = ""
    aws_secret_access_key: str = ""
    aws_s3_bucket: str = "clarity-files"
    aws_s3_region: str = "us-east-2"
    aws_s3_endpoint_url: str | None = None  # Set for MinIO/LocalStack (e.g. http://localhost:9000)

    # Anthropic API
    anthropic_api_key: str = ""

    # LLM Configuration
    llm_model: str = "claude-sonnet-4-20250514"
    llm_max_tokens: int = 4000

    # Context limits (characters)
    card_context_max_chars: int = 5000
    max_total_context_chars: int = 100000

    # Background job queue
    job_max_retries: int = 3
    job_timeout_seconds: float = 5 * 60
    job_retry_delay_seconds: float = 30
    job_cleanup_days: int = 7

    # Uploads
    max_file_size_bytes: int = 100 * 1024 * 1024  # 100MB
    max_files_per_upload: int = 10
    inline_processing_max_bytes: int = 1024 * 1024  # 1MB
    default_storage_quota_bytes: int = 1024 * 1024 * 1024  # 1GB


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def sanitize_error(error: Exception, *, generic_message: str = "An internal error occurred.") -> str:
    """
    Return a user-safe error message.

    In development, returns the full exception string for debugging.
    In staging/production, returns a generic message to avoid leaking internals.
    """
    settings = get_settings()
    if settings.environment == "development":
        return str(error)
    return generic_message
