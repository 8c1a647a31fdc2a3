from decimal import Decimal
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings"""

    # API
    API_VERSION: str = "1.0.0"
    DEBUG: bool = False
    APP_ID: str = "default-app-id"  # Namespace for stored media

    # Security
    SECRET_KEY: str  # Signs session tokens, keep secret
    TOKEN_TTL_SECONDS: int = 7 * 24 * 3600

    # Database Configuration
    DATABASE_URL: str

    # Redis Configuration (optional, fans out raffle changes between workers)
    REDIS_URL: Optional[str] = None
    REDIS_CHANNEL: str = "rafflehub:raffles"

    # Payments
    PAYMENT_PROVIDER: str = "simulated"  # "simulated" or "yookassa"
    PAYMENT_CURRENCY: str = "RUB"
    PLATFORM_FEE_PERCENT: Decimal = Decimal("3")
    PAYMENT_TIMEOUT_SECONDS: Optional[float] = 30.0
    YOOKASSA_SHOP_ID: Optional[str] = None
    YOOKASSA_SECRET_KEY: Optional[str] = None

    # Random.org API (local PRNG is used when not set)
    RANDOM_ORG_API_KEY: Optional[str] = None

    # Raffle Settings
    ADMISSION_MAX_RETRIES: int = 5
    DRAW_MAX_RETRIES: int = 3
    DEFAULT_BIO: str = "New RaffleHub user!"

    # Media storage
    MEDIA_ROOT: str = "media"
    MEDIA_BASE_URL: str = "/media"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    @field_validator("PAYMENT_PROVIDER")
    @classmethod
    def validate_payment_provider(cls, value: str) -> str:
        value = value.lower()
        if value not in ("simulated", "yookassa"):
            raise ValueError("PAYMENT_PROVIDER must be 'simulated' or 'yookassa'")
        return value

    @property
    def fee_rate(self) -> Decimal:
        """Platform fee as a fraction of the ticket price"""
        return self.PLATFORM_FEE_PERCENT / Decimal(100)


settings = Settings()
