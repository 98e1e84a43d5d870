from functools import lru_cache
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

    # Database Configuration
    DATABASE_URL: str = "sqlite+aiosqlite:///./sms_pipeline.db"

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Twilio provider - sending is refused while any of these is empty
    TWILIO_ACCOUNT_SID: str = ""
    TWILIO_AUTH_TOKEN: str = ""
    TWILIO_PHONE_NUMBER: str = ""
    TWILIO_API_BASE_URL: str = "https://api.twilio.com"
    TWILIO_STATUS_CALLBACK_URL: str = ""
    TWILIO_VALIDATE_SIGNATURE: bool = False

    # Dispatch
    PROVIDER_TIMEOUT_SECONDS: float = 10.0
    BULK_SEND_DELAY_SECONDS: float = 0.1

    # Throttling
    CHALLENGE_THROTTLE_MAX_REQUESTS: int = 6
    CHALLENGE_THROTTLE_WINDOW_SECONDS: float = 60.0
    ALERT_THROTTLE_MAX_REQUESTS: int = 5
    ALERT_THROTTLE_WINDOW_SECONDS: float = 300.0
    THROTTLE_CLEANUP_INTERVAL_SECONDS: float = 300.0


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
