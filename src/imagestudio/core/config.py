"""Application configuration using Pydantic BaseSettings."""

import logging

import structlog
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MB = 1024 * 1024

SUPPORTED_BLOB_BACKENDS = ("memory", "s3")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )

    # Application Environment
    app_env: str = Field(default="development", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # CORS Configuration
    cors_origins: str = Field(default="http://localhost:3000", alias="CORS_ORIGINS")

    # Server Configuration
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")

    # Hosted generation endpoint (Gemini image model)
    gemini_api_base_url: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta", alias="GEMINI_API_BASE_URL"
    )
    gemini_model: str = Field(default="gemini-2.5-flash-image-preview", alias="GEMINI_MODEL")
    generation_timeout_seconds: float = Field(
        default=120.0, gt=0, alias="GENERATION_TIMEOUT_SECONDS"
    )

    # Generation limits
    max_images: int = Field(default=5, ge=1, alias="MAX_IMAGES")
    max_reference_images: int = Field(default=5, ge=0, alias="MAX_REFERENCE_IMAGES")
    max_file_size_bytes: int = Field(default=5 * MB, gt=0, alias="MAX_FILE_SIZE_BYTES")
    max_prompt_length: int = Field(default=2000, gt=0, alias="MAX_PROMPT_LENGTH")
    metadata_prompt_limit: int = Field(default=500, gt=0, alias="METADATA_PROMPT_LIMIT")

    # Signed-view resolver
    preview_max_bytes: int = Field(default=5 * MB, gt=0, alias="PREVIEW_MAX_BYTES")
    view_cache_ttl_seconds: float = Field(default=30 * 60, ge=0, alias="VIEW_CACHE_TTL_SECONDS")

    # Client sessions
    session_idle_ttl_seconds: float = Field(
        default=60 * 60, gt=0, alias="SESSION_IDLE_TTL_SECONDS"
    )
    max_sessions: int = Field(default=1000, gt=0, alias="MAX_SESSIONS")

    # Object storage (S3-compatible, e.g. Cloudflare R2)
    blob_backend: str = Field(default="memory", alias="BLOB_BACKEND")
    s3_bucket: str = Field(default="", alias="S3_BUCKET")
    s3_analytics_bucket: str = Field(default="", alias="S3_ANALYTICS_BUCKET")
    s3_endpoint_url: str = Field(default="", alias="S3_ENDPOINT_URL")
    s3_access_key_id: str = Field(default="", alias="S3_ACCESS_KEY_ID")
    s3_secret_access_key: str = Field(default="", alias="S3_SECRET_ACCESS_KEY")
    s3_region: str = Field(default="auto", alias="S3_REGION")

    # Analytics counters
    analytics_ttl_seconds: int = Field(default=86400, gt=0, alias="ANALYTICS_TTL_SECONDS")

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @model_validator(mode="after")
    def validate_required_config(self) -> "Settings":
        """Validate storage configuration on startup.

        Fails fast listing every missing variable when the S3 backend is selected.
        Validation of required variables is skipped in test environments.
        """
        if self.blob_backend not in SUPPORTED_BLOB_BACKENDS:
            raise ValueError(
                f"BLOB_BACKEND must be one of {', '.join(SUPPORTED_BLOB_BACKENDS)} "
                f"(got {self.blob_backend!r})"
            )

        if self.app_env in ("test", "testing") or self.blob_backend != "s3":
            return self

        missing = []
        if not self.s3_bucket:
            missing.append("S3_BUCKET: Name of the image storage bucket")
        if not self.s3_endpoint_url:
            missing.append(
                "S3_ENDPOINT_URL: e.g. https://<account-id>.r2.cloudflarestorage.com"
            )
        if not self.s3_access_key_id:
            missing.append("S3_ACCESS_KEY_ID: Access key for the storage account")
        if not self.s3_secret_access_key:
            missing.append("S3_SECRET_ACCESS_KEY: Secret key for the storage account")

        if missing:
            error_msg = "CRITICAL: Missing required environment variables:\n\n" + "\n".join(
                f"  - {m}" for m in missing
            )
            error_msg += "\n\nThe application cannot start without these variables."
            raise ValueError(error_msg)

        return self


def configure_logging(settings: Settings) -> None:
    """Configure structlog based on application environment.

    - Production: JSON output for log aggregation
    - Development: Console output for human readability
    """
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    if settings.app_env == "production":
        processors = [
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
