"""Service configuration.

Values come from the environment or a local .env file. DATABASE_URL and
REDIS_URL have no defaults.
"""

from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    PROJECT_NAME: str = "Clinic SaaS Billing API"
    VERSION: str = "0.1.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False

    # Database - REQUIRED
    DATABASE_URL: str
    DB_ECHO: bool = False

    # Redis - REQUIRED
    REDIS_URL: str

    # CORS
    CORS_ORIGINS: list[str] = []

    # Logging and tracing
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Tenant rate limiting
    # RATE_LIMIT_BACKEND: memory (per instance) or redis (shared across instances)
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_BACKEND: Literal["memory", "redis"] = "memory"
    RATE_LIMIT_MAX_REQUESTS: int = 100
    RATE_LIMIT_WINDOW_SECONDS: int = 60

    # Billing
    DEFAULT_CURRENCY: str = "USD"
    INVOICE_DUE_DAYS: int = 30
    PAST_DUE_GRACE_DAYS: int = 7
    SEED_DEFAULT_PLANS: bool = True

    # Celery
    CELERY_BROKER_URL: str = ""
    CELERY_RESULT_BACKEND: str = ""

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = Settings()
