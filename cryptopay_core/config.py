"""Configuration for CryptoPay Core."""

import os
from decimal import Decimal
from functools import lru_cache
from typing import List, Optional

from pydantic import ConfigDict, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # 'extra=ignore' allows extra environment variables without raising errors
    model_config = ConfigDict(
        env_prefix="CRYPTOPAY_",
        env_file=".env",
        extra="ignore",
    )

    environment: str = "dev"

    # API Settings
    api_host: str = "0.0.0.0"
    api_port: int = 5000
    api_prefix: str = "/api"
    allowed_origins: List[str] = ["http://localhost:3000"]

    # Frontend base used to build payment links
    frontend_url: str = "http://localhost:3000"

    # Security - NO DEFAULTS for sensitive values
    secret_key: str = ""
    access_token_expire_minutes: int = 60

    @field_validator("secret_key")
    @classmethod
    def validate_secret_key(cls, v: str) -> str:
        if not v:
            if os.getenv("CRYPTOPAY_ENVIRONMENT", "dev") != "dev":
                raise ValueError(
                    "SECRET_KEY must be set outside dev. "
                    "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(32))\""
                )
            return "dev-only-secret-key-not-for-production"
        if len(v) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters")
        return v

    # Chain settings
    chain_mode: str = "simulation"  # simulation, rpc
    rpc_url: str = "http://localhost:7545"
    chain_id: int = 1337
    token_contract_address: Optional[str] = None
    payment_gateway_contract_address: Optional[str] = None
    fee_collector_address: Optional[str] = None
    platform_fee_bps: int = 100  # 1%
    default_gas_price_gwei: Decimal = Decimal("20")
    rpc_timeout_seconds: float = 30.0

    @field_validator("chain_mode")
    @classmethod
    def validate_chain_mode(cls, v: str) -> str:
        if v not in ("simulation", "rpc"):
            raise ValueError("chain_mode must be 'simulation' or 'rpc'")
        return v

    # Settlement
    settlement_confirmations: int = 1
    confirmation_timeout_seconds: float = 300.0
    confirmation_poll_interval: float = 1.0
    gas_buffer_percent: int = 20
    payment_request_ttl_hours: int = 24
    max_payment_attempts: int = 3
    attempt_lock_minutes: int = 60

    # Database settings (empty = in-memory stores)
    database_url: Optional[str] = None

    # Reconciliation sweep
    reconciliation_enabled: bool = False
    reconciliation_interval_seconds: float = 60.0
    stale_processing_seconds: float = 600.0
    abandon_processing_seconds: float = 86400.0

    # Logging
    log_level: str = "INFO"
    log_json: bool = True


@lru_cache()
def get_settings() -> Settings:
    """Get the cached settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()
