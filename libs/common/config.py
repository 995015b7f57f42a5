from functools import lru_cache
from typing import Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Global application settings."""

    # Application
    ENVIRONMENT: Literal["local", "development", "production", "test"] = "local"
    LOG_LEVEL: str = "INFO"
    CURRENCY: str = "IDR"

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./commerce.db"
    DB_POOL_SIZE: int = 40
    DB_MAX_OVERFLOW: int = 20
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 1800

    # Background jobs
    REDIS_URL: str = "redis://localhost:6379/0"
    DISPATCH_BACKEND: Literal["arq", "local"] = "arq"
    DISPATCH_MAX_WORKERS: int = 4
    DISPATCH_QUEUE_SIZE: int = 500

    # Payment gateway
    GATEWAY_BASE_URL: str = "https://sandbox.gateway.local"
    GATEWAY_MERCHANT_ID: str = "test-merchant"
    GATEWAY_SECRET_KEY: str = "test-gateway-secret"
    GATEWAY_TIMEOUT_SECONDS: float = 15.0
    GATEWAY_RETURN_URL: str = "http://localhost:8000/commerce/payments/return"
    GATEWAY_CALLBACK_URL: str = "http://localhost:8000/commerce/webhooks/gateway"

    # Shipping provider
    SHIPPING_BASE_URL: str = "https://sandbox.shipping.local"
    SHIPPING_API_KEY: str = "test-shipping-key"
    SHIPPING_TIMEOUT_SECONDS: float = 15.0
    SHIPPING_ORIGIN_CONTACT: str = "Warehouse"
    SHIPPING_ORIGIN_PHONE: str = "0000000000"
    SHIPPING_ORIGIN_ADDRESS: str = "Main warehouse"
    SHIPPING_ORIGIN_POSTAL_CODE: str = "10110"
    SHIPPING_DEFAULT_COURIER: str = "jne"

    # Communications service (templated e-mail)
    COMMUNICATIONS_SERVICE_URL: str = "http://communications-service:8004"
    COMMUNICATIONS_SERVICE_TOKEN: str = ""

    # Order lifecycle defaults (overridable at runtime via commerce_settings)
    INVOICE_TTL_HOURS: int = 24
    REMINDER_AFTER_HOURS: int = 20
    PO_DEPOSIT_PERCENTAGE: int = 30
    PO_BALANCE_DUE_DAYS: int = 7
    SETTINGS_CACHE_TTL_SECONDS: int = 60

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("DATABASE_URL")
    @classmethod
    def assemble_db_connection(cls, v: Optional[str]) -> str:
        if isinstance(v, str):
            if v.startswith("postgresql://"):
                return v.replace("postgresql://", "postgresql+psycopg://", 1)
        return v


@lru_cache
def get_settings() -> Settings:
    """
    Return the global settings instance, cached.
    """
    return Settings()
