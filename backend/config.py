# config.py
# ============================================================================
# DRIVER TOP-UP BOT — CONFIGURATION
# ============================================================================
# Environment-driven settings shared by the API server, the orchestrator and
# the background maintenance loop.
# ============================================================================

import os
from dataclasses import dataclass
from typing import Optional


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class TopupConfig:
    """Configuration for the top-up service."""

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    env: str = "development"

    # Midtrans (payment gateway)
    midtrans_server_key: str = ""
    midtrans_is_production: bool = False
    midtrans_finish_url: str = "https://example.com/payment/finish"
    payment_expiry_hours: int = 24
    gateway_timeout_seconds: float = 15.0

    # Driver directory (Google Sheets)
    sheets_spreadsheet_id: Optional[str] = None
    sheets_credentials_path: Optional[str] = None
    sheets_range: str = "Data Driver!A:M"
    directory_timeout_seconds: float = 10.0

    # Messaging
    admin_number: Optional[str] = None
    whatsapp_api_url: Optional[str] = None
    whatsapp_api_token: str = ""
    transport_timeout_seconds: float = 10.0

    # Admission policy
    min_amount: int = 1_000
    max_amount: int = 10_000_000
    rate_limit_window_seconds: int = 300
    rate_limit_max_requests: int = 3

    # Maintenance loop
    maintenance_enabled: bool = True
    maintenance_interval_seconds: int = 60
    stale_order_minutes: int = 24 * 60 + 30
    max_credit_attempts: int = 5

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    @property
    def is_development(self) -> bool:
        return self.env == "development"

    @classmethod
    def from_env(cls) -> "TopupConfig":
        return cls(
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "8000")),
            env=os.getenv("ENV", "development"),
            midtrans_server_key=os.getenv("MIDTRANS_SERVER_KEY", ""),
            midtrans_is_production=_env_bool("MIDTRANS_IS_PRODUCTION", "false"),
            midtrans_finish_url=os.getenv("MIDTRANS_FINISH_URL", "https://example.com/payment/finish"),
            payment_expiry_hours=int(os.getenv("PAYMENT_EXPIRY_HOURS", "24")),
            gateway_timeout_seconds=float(os.getenv("GATEWAY_TIMEOUT", "15.0")),
            sheets_spreadsheet_id=os.getenv("GOOGLE_SHEETS_SPREADSHEET_ID"),
            sheets_credentials_path=os.getenv("GOOGLE_SHEETS_CREDENTIALS_PATH"),
            sheets_range=os.getenv("GOOGLE_SHEETS_RANGE", "Data Driver!A:M"),
            directory_timeout_seconds=float(os.getenv("DIRECTORY_TIMEOUT", "10.0")),
            admin_number=os.getenv("ADMIN_NUMBER") or None,
            whatsapp_api_url=os.getenv("WHATSAPP_API_URL") or None,
            whatsapp_api_token=os.getenv("WHATSAPP_API_TOKEN", ""),
            transport_timeout_seconds=float(os.getenv("TRANSPORT_TIMEOUT", "10.0")),
            min_amount=int(os.getenv("TOPUP_MIN_AMOUNT", "1000")),
            max_amount=int(os.getenv("TOPUP_MAX_AMOUNT", "10000000")),
            rate_limit_window_seconds=int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "300")),
            rate_limit_max_requests=int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "3")),
            maintenance_enabled=_env_bool("MAINTENANCE_ENABLED", "true"),
            maintenance_interval_seconds=int(os.getenv("MAINTENANCE_INTERVAL", "60")),
            stale_order_minutes=int(os.getenv("STALE_ORDER_MINUTES", str(24 * 60 + 30))),
            max_credit_attempts=int(os.getenv("MAX_CREDIT_ATTEMPTS", "5")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_format=os.getenv("LOG_FORMAT", "json").lower(),
        )
