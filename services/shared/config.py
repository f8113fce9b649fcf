"""Shared configuration management for the platform.

Based on Pydantic Settings v2 best practices:
https://docs.pydantic.dev/latest/concepts/pydantic_settings/
"""

from decimal import Decimal
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with the prefix 'APP_'.
    Example: APP_ETHERSCAN_API_KEY=...
    """

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Service configuration
    service_name: str = Field(
        default="crypto-invoice-platform",
        description="Service identifier for metrics and logs",
    )
    service_version: str = Field(
        default="0.1.0",
        description="Service version",
    )

    # Invoicing
    fiat_currency: str = Field(
        default="CZK",
        description="Fiat currency invoices are denominated in (smallest unit integers)",
    )
    default_due_days: int = Field(
        default=14,
        ge=0,
        description="Days until an invoice is due when no due date is given",
    )

    # Price oracle (CoinGecko simple/price compatible)
    rate_oracle_url: str = Field(
        default="https://api.coingecko.com/api/v3/simple/price",
        description="Price oracle endpoint returning fiat prices per coin id",
    )
    rate_refresh_interval_seconds: int = Field(
        default=300,
        gt=0,
        description="Minimum age of the rate snapshot before a refresh is attempted",
    )
    rate_max_staleness_seconds: int = Field(
        default=900,
        gt=0,
        description="Age after which the rate snapshot is reported as stale",
    )

    # Outbound HTTP
    http_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Timeout applied to every oracle and explorer request",
    )

    # Chain explorers
    etherscan_api_url: str = Field(
        default="https://api.etherscan.io/v2/api",
        description="Etherscan-compatible explorer API for the EVM family",
    )
    etherscan_chain_id: int = Field(
        default=1,
        description="EVM chain id queried on the Etherscan v2 API (1 = Ethereum mainnet)",
    )
    etherscan_api_key: str = Field(
        default="",
        description="Etherscan API key (use env var APP_ETHERSCAN_API_KEY)",
    )
    blockstream_api_url: str = Field(
        default="https://blockstream.info/api",
        description="Esplora-compatible explorer API for the UTXO family",
    )
    amount_tolerance: Decimal = Field(
        default=Decimal("0.0001"),
        ge=0,
        description="Absolute tolerance when matching on-chain value to the invoice amount",
    )


def get_settings() -> Settings:
    """Factory function to get settings instance.

    Returns:
        Configured Settings instance
    """
    return Settings()
