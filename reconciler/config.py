"""
Configuration management for the order reconciliation service
"""
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    """Application settings"""

    # Application
    app_name: str = "Order Lifecycle Reconciler"
    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"
    log_to_file: bool = True
    log_dir: str = "logs"

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_workers: int = 4
    frontend_return_url: str = "http://localhost:3000/transaction-complete"

    # Database
    database_url: str = "sqlite:///./reconciler.db"

    # Payment gateway (Dragonpay)
    dragonpay_merchant_id: str = ""
    dragonpay_secret_key: str = ""
    dragonpay_base_url: str = "https://test.dragonpay.ph"
    dragonpay_currency: str = "PHP"
    gateway_timeout_seconds: float = 30.0

    # Carrier (NinjaVan)
    ninjavan_api_url: str = "https://api-sandbox.ninjavan.co"
    ninjavan_country_code: str = "PH"
    ninjavan_client_id: str = ""
    ninjavan_client_secret: str = ""
    # Webhook HMAC secret; NinjaVan signs with the client secret unless told otherwise
    ninjavan_webhook_secret: Optional[str] = None
    carrier_timeout_seconds: float = 30.0
    carrier_name: str = "NinjaVan"
    parcel_weight_per_unit_kg: float = 0.5
    parcel_default_weight_kg: float = 1.5

    # Sender address printed on every waybill
    sender_name: str = "Order Fulfillment"
    sender_phone: str = "+630000000000"
    sender_email: str = "store@example.com"
    sender_address1: str = ""
    sender_address2: str = ""
    sender_area: str = ""
    sender_city: str = ""
    sender_state: str = ""
    sender_postcode: str = ""
    sender_country: str = "PH"

    # Reconciliation poller
    reconcile_interval_minutes: int = 15
    reconcile_grace_minutes: int = 10
    reconcile_lookback_days: int = 30
    reconcile_request_delay_seconds: float = 1.0
    reconcile_lease_seconds: int = 300
    reconcile_business_hours_only: bool = False
    reconcile_business_start_hour: int = 8
    reconcile_business_end_hour: int = 20
    # Awaiting-confirmation payments older than this are treated as failed.
    # Confirm the threshold with the business before changing the default.
    payment_pending_timeout_days: int = 3

    # Order lifecycle timers
    auto_complete_after_days: int = 3
    unpaid_order_timeout_hours: int = 3

    # Idempotency
    idempotency_ttl_days: int = 30

    # Outbox
    outbox_interval_seconds: int = 30
    outbox_batch_size: int = 50
    outbox_max_attempts: int = 5

    # Scheduler
    scheduler_enabled: bool = True
    scheduler_timezone: str = "Asia/Manila"

    # Notifications (SMTP)
    notification_email_from: Optional[str] = None
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None

    class Config:
        env_file = ".env"
        case_sensitive = False

    @property
    def webhook_secret(self) -> str:
        return self.ninjavan_webhook_secret or self.ninjavan_client_secret


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
