"""
Configuration management for the CRM reconciliation engine
"""
from dataclasses import dataclass
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    """Application settings"""

    # Application
    app_name: str = "SleepCare CRM Sync"
    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"
    log_to_file: bool = False

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Record store (Directus)
    record_store_url: str = "http://localhost:8055"
    record_store_token: str = ""

    # Payments (Stripe)
    payments_mode: str = "test"  # test | live
    payments_api_key_test: str = ""
    payments_api_key_live: str = ""
    payments_webhook_secret_test: str = ""
    payments_webhook_secret_live: str = ""

    # Commerce (Shopify)
    commerce_shop_domain: str = ""
    commerce_access_token: str = ""
    commerce_api_version: str = "2024-01"
    commerce_webhook_secret: str = ""

    # Sync
    auto_sync_interval_minutes: int = 60  # 0 disables the scheduler
    stale_after_days: int = 7
    coupon_validity_days: int = 90
    http_timeout_seconds: float = 30.0

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


@dataclass(frozen=True)
class RecordStoreConfig:
    base_url: str
    token: str
    timeout: float = 30.0


@dataclass(frozen=True)
class PaymentsConfig:
    mode: str
    api_key_test: str = ""
    api_key_live: str = ""
    webhook_secret_test: str = ""
    webhook_secret_live: str = ""

    @property
    def api_key(self) -> str:
        return self.api_key_live if self.mode == "live" else self.api_key_test

    @property
    def webhook_secret(self) -> str:
        return self.webhook_secret_live if self.mode == "live" else self.webhook_secret_test


@dataclass(frozen=True)
class CommerceConfig:
    shop_domain: str
    access_token: str
    api_version: str = "2024-01"
    webhook_secret: str = ""
    timeout: float = 30.0


def record_store_config(settings: Optional[Settings] = None) -> RecordStoreConfig:
    """Build the record store config from settings"""
    settings = settings or get_settings()
    return RecordStoreConfig(
        base_url=settings.record_store_url,
        token=settings.record_store_token,
        timeout=settings.http_timeout_seconds,
    )


def payments_config(settings: Optional[Settings] = None) -> PaymentsConfig:
    """Build the payments config from settings"""
    settings = settings or get_settings()
    return PaymentsConfig(
        mode=settings.payments_mode,
        api_key_test=settings.payments_api_key_test,
        api_key_live=settings.payments_api_key_live,
        webhook_secret_test=settings.payments_webhook_secret_test,
        webhook_secret_live=settings.payments_webhook_secret_live,
    )


def commerce_config(settings: Optional[Settings] = None) -> CommerceConfig:
    """Build the commerce config from settings"""
    settings = settings or get_settings()
    return CommerceConfig(
        shop_domain=settings.commerce_shop_domain,
        access_token=settings.commerce_access_token,
        api_version=settings.commerce_api_version,
        webhook_secret=settings.commerce_webhook_secret,
        timeout=settings.http_timeout_seconds,
    )
