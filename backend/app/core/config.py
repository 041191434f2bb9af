"""
Application configuration management using Pydantic settings.
"""
import json
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    APP_NAME: str = "AUTO ANI Experimentation Service"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "local"  # local, staging, production

    # API
    API_V1_PREFIX: str = "/api/v1"
    CORS_ORIGINS: list[str] = ["http://localhost:3000"]

    @field_validator('CORS_ORIGINS', mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        """Parse CORS_ORIGINS from environment variable.

        Supports:
        - JSON array: '["https://autoani.com","https://admin.autoani.com"]'
        - Comma-separated: 'https://autoani.com,https://admin.autoani.com'
        - Single string: 'https://autoani.com'
        """
        if isinstance(v, str):
            try:
                parsed = json.loads(v)
                if isinstance(parsed, list):
                    return parsed
            except json.JSONDecodeError:
                pass

            if ',' in v:
                return [origin.strip() for origin in v.split(',') if origin.strip()]

            return [v.strip()] if v.strip() else []

        return v

    # Database
    DATABASE_URL: str = "postgresql+asyncpg://postgres:postgres@db:5432/autoani"
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text

    # Monitoring
    SENTRY_DSN: Optional[str] = None
    ENABLE_METRICS: bool = True

    # A/B testing engine
    AB_DEFAULT_CONFIDENCE_LEVEL: float = 0.95
    AB_DEFAULT_MIN_SAMPLE_SIZE: int = 100
    AB_SPLIT_TOLERANCE: float = 0.5  # percentage points
    AB_SWEEP_ENABLED: bool = True
    AB_SWEEP_INTERVAL_SECONDS: int = 300

    @field_validator('AB_DEFAULT_CONFIDENCE_LEVEL')
    @classmethod
    def validate_confidence_level(cls, v: float) -> float:
        if not 0 < v < 1:
            raise ValueError("AB_DEFAULT_CONFIDENCE_LEVEL must be between 0 and 1")
        return v


settings = Settings()
