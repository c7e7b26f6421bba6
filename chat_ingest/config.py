from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration - required from .env
    DATABASE_URL: str

    # Logging Configuration - required from .env
    LOG_LEVEL: str

    # Shared key for the /api admin routes - required from .env
    ADMIN_API_KEY: str

    # Inbound webhook route: POST {WEBHOOK_PATH_PREFIX}/{token}
    WEBHOOK_PATH_PREFIX: str = "/functions/v1/gptmaker-in"

    # Used to build the webhook URL handed out after a token rotation
    PUBLIC_BASE_URL: str = "http://localhost:8000"

    # "max" keeps the newest timestamp, "overwrite" always takes the incoming one
    LAST_MESSAGE_AT_POLICY: Literal["max", "overwrite"] = "max"

    DEFAULT_CHANNEL: str = "WHATSAPP"

    CORS_ALLOW_ORIGIN: str = "*"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
