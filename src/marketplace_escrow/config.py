"""Application configuration via pydantic-settings.

Reads from .env file or environment variables. All settings are validated
at startup; if a setting is malformed, the app fails fast with a clear
error message.

Settings are converted into explicit value objects (FeeCalculator,
GatewayAConfig, GatewayBConfig) at construction time; the domain layer
never reads them as ambient globals.

Usage:
    from marketplace_escrow.config import get_settings
    settings = get_settings()
    print(settings.database_url)
"""

from __future__ import annotations

import ipaddress
from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration for the marketplace escrow engine."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_env: Literal["development", "staging", "production"] = "development"
    app_debug: bool = True
    app_log_level: str = "DEBUG"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    public_base_url: str = "http://localhost:8000"

    # --- Database (PostgreSQL) ---
    database_url: str = (
        "postgresql+asyncpg://marketplace:marketplace_dev"
        "@localhost:5432/marketplace_escrow"
    )
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30
    db_echo_sql: bool = False

    # --- Redis ---
    redis_url: str = "redis://localhost:6379/0"
    redis_webhook_ttl_seconds: int = 86400  # 24 hours

    # --- Money ---
    currency: str = "ZAR"
    buyer_fee_rate: Decimal = Decimal("0.03")
    seller_fee_rate: Decimal = Decimal("0.08")
    payment_min_amount: int = 5000  # R50.00
    payment_max_amount: int = 100_000_000  # R1,000,000.00
    default_revisions_allowed: int = 2

    # --- Settlement ---
    manual_settlement_enabled: bool = True
    pending_transaction_ttl_minutes: int = 60 * 24
    gateway_http_timeout_seconds: float = 10.0

    # --- Gateway A (SHA-512 signed) ---
    gateway_a_site_code: str = ""
    gateway_a_private_key: str = ""
    gateway_a_api_key: str = ""
    gateway_a_payment_url: str = "https://pay.ozow.com"
    gateway_a_api_url: str = "https://api.ozow.com"
    gateway_a_test_mode: bool = True

    # --- Gateway B (MD5 signed) ---
    gateway_b_merchant_id: str = ""
    gateway_b_merchant_key: str = ""
    gateway_b_passphrase: str = ""
    gateway_b_sandbox: bool = True
    gateway_b_valid_hosts: str = (
        "197.97.145.144,197.97.145.145,197.97.145.146,197.97.145.147,197.97.145.148,"
        "41.74.179.194,41.74.179.195,41.74.179.196,41.74.179.197,41.74.179.198,"
        "197.97.145.0/24"
    )

    @field_validator("gateway_b_valid_hosts")
    @classmethod
    def _check_valid_hosts(cls, value: str) -> str:
        """Every allow-list entry must be an IP address or a CIDR range."""
        for entry in value.split(","):
            entry = entry.strip()
            if not entry:
                continue
            try:
                if "/" in entry:
                    ipaddress.ip_network(entry, strict=False)
                else:
                    ipaddress.ip_address(entry)
            except ValueError as err:
                raise ValueError(f"Invalid Gateway B allow-list entry: {entry!r}") from err
        return value

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def gateway_b_valid_host_list(self) -> list[str]:
        """Parse the comma-separated allow-list into a list."""
        if not self.gateway_b_valid_hosts:
            return []
        return [h.strip() for h in self.gateway_b_valid_hosts.split(",") if h.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached singleton of the application settings."""
    return Settings()
