import os
from decimal import Decimal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# ----- Config (URLs from env, default to docker-compose service names) -----
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./orders.db")
PAYMENT_SERVICE_URL = os.getenv("PAYMENT_SERVICE_URL", "http://payment-service:8002")
NOTIFICATION_SERVICE_URL = os.getenv("NOTIFICATION_SERVICE_URL", "http://notification-service:8004")
REALTIME_SERVICE_URL = os.getenv("REALTIME_SERVICE_URL", "http://realtime-gateway:8005")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


class PricingConfig(BaseSettings):
    service_fee_rate: Decimal = Field(Decimal("0.08"), ge=0, le=1)
    surge_multiplier: Decimal = Field(Decimal("1.5"), ge=1)
    commission_rate: Decimal = Field(Decimal("0.20"), ge=0, le=1)

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", frozen=True)


class Settings(BaseSettings):
    pricing: PricingConfig = Field(default_factory=PricingConfig)
    dispatch_radius_km: float = Field(10.0, gt=0)
    dispatch_max_candidates: int = Field(20, ge=1)
    http_timeout_seconds: float = Field(5.0, gt=0)

    # shared with the payment gateway; webhooks are refused while unset
    payment_webhook_secret: str = ""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", frozen=True)


def load_settings() -> Settings:
    return Settings()
