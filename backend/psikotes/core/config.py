"""
Application configuration settings.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Self


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    APP_NAME: str = "Psikotes Assessment API"
    APP_VERSION: str = "0.1.0"
    ENV: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # API
    API_V1_PREFIX: str = "/v1"

    # CORS
    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Security
    # Tokens are issued by the auth service; this service only verifies them.
    JWT_SECRET_KEY: str = Field(..., description="JWT signing secret key (required)")
    JWT_ALGORITHM: str = "HS256"
    ADMIN_TOKEN: str = Field(
        default="",
        description="Admin API token for triggering scheduler jobs",
    )

    # Sentry Error Tracking
    SENTRY_DSN: str = Field(
        default="",
        description="Sentry DSN for error tracking (leave empty to disable)",
    )
    SENTRY_TRACES_SAMPLE_RATE: float = Field(
        default=0.1,
        ge=0.0,
        le=1.0,
        description="Sentry traces sample rate (0.0-1.0)",
    )

    # Scoring
    DEFAULT_PASSING_SCORE: float = Field(
        default=60.0,
        ge=0.0,
        le=100.0,
        description="Scaled score needed to pass when a test defines none",
    )
    MAX_TEXT_ANSWER_LENGTH: int = 5000

    # Attempts
    NEARLY_EXPIRED_SECONDS: int = 300  # 5 minutes

    # Session-statistics scheduler
    SCHEDULER_ENABLED: bool = False
    SCHEDULER_INTERVAL_SECONDS: int = Field(
        default=180, gt=0, description="Delay between periodic scheduler runs"
    )
    SCHEDULER_MIN_INTERVAL_SECONDS: int = Field(
        default=300,
        ge=0,
        description="Runs closer together than this are skipped",
    )
    STATS_BATCH_SIZE: int = Field(default=500, gt=0)
    AUTH_SESSION_INACTIVE_DAYS: int = Field(default=30, gt=0)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",  # Ignore extra fields from .env not defined in Settings
    )

    @model_validator(mode="after")
    def validate_production_config(self) -> Self:
        """Refuse to start in production without an admin token."""
        if self.ENV == "production" and not self.ADMIN_TOKEN:
            raise ValueError("ADMIN_TOKEN must be set when ENV=production.")
        return self


# mypy doesn't understand that pydantic_settings loads required fields from env vars
settings = Settings()  # type: ignore[call-arg]
