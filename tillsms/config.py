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

    # Database holding the upstream transactions table and our sms_* tables
    DATABASE_URL: str

    LOG_LEVEL: str = "INFO"

    # Staff sessions - cookie value is "<email>.<hex hmac-sha256>"
    SESSION_SECRET: str
    SESSION_COOKIE_NAME: str = "tillsms_session"

    # Comma separated; empty means every authenticated user is allowed
    TX_ALLOWED_EMAILS: str = ""

    # Explicit name of the till/shortcode column on transactions
    TX_TILL_COLUMN: str = ""

    # FluxSMS gateway - a missing key only fails when the gateway is called
    FLUXSMS_API_KEY: str = ""
    FLUXSMS_SENDER_ID: str = "fluxsms"
    FLUXSMS_BASE_URL: str = "https://api.fluxsms.co.ke"
    SMS_GATEWAY_TIMEOUT_SECONDS: float = 30.0

    # How long a dispatch holds its campaign before another dispatch may take over
    DISPATCH_LOCK_SECONDS: int = 300

    @property
    def allowed_emails(self) -> list[str]:
        return [
            email.strip().lower()
            for email in self.TX_ALLOWED_EMAILS.split(",")
            if email.strip()
        ]


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
