"""Engine configuration using pydantic-settings.

Values come from environment variables (or a local .env file). Timing knobs
are exposed so tests and slow networks can tune them without code changes.
"""

from decimal import Decimal
from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

CELO_MAINNET_ID = 42220
CELO_ALFAJORES_ID = 44787


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="CROSSPAY_",
        extra="ignore",
    )

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=False, description="Enable debug logging")
    dry_run: bool = Field(default=True, description="Use the simulated routing client")

    # ======================
    # Chain
    # ======================
    rpc_url: str = Field(default="https://forno.celo.org", description="JSON-RPC endpoint")
    chain_id: int = Field(default=CELO_MAINNET_ID, description="Expected network chain id")
    private_key: Optional[str] = Field(
        default=None, description="Hex private key for the local signer (CLI only)"
    )
    rpc_read_timeout: float = Field(default=15.0, description="Timeout for read calls (s)")
    rpc_submit_timeout: float = Field(default=60.0, description="Timeout for submission (s)")
    gas_estimate_timeout: float = Field(default=10.0, description="Timeout for gas estimation (s)")
    receipt_timeout: float = Field(default=60.0, description="Timeout waiting for a receipt (s)")
    receipt_poll_interval: float = Field(default=2.0, description="Receipt polling interval (s)")
    gas_fallback_limit: int = Field(default=500_000, description="Gas limit used when estimation fails")

    # ======================
    # Quotes
    # ======================
    default_slippage: Decimal = Field(
        default=Decimal("0.01"), description="Default slippage tolerance (1%)"
    )
    quote_ttl_seconds: float = Field(default=15.0, description="Quote cache lifetime (s)")
    quote_lookup_timeout: float = Field(default=5.0, description="Route lookup bound (s)")
    quote_gas_timeout: float = Field(default=3.0, description="Quote gas estimate bound (s)")
    quote_debounce_seconds: float = Field(default=0.5, description="UI quote debounce (s)")

    # ======================
    # Approvals and swaps
    # ======================
    approval_amount: Literal["max", "exact"] = Field(
        default="max", description="Approve max uint256 or exactly the required amount"
    )
    approval_confirmations: int = Field(default=1, ge=1, le=2, description="Approval confirmations")
    settle_delay_seconds: float = Field(
        default=2.5, description="Delay before post-swap balance refresh (s)"
    )

    # ======================
    # Balances
    # ======================
    balance_min_interval: float = Field(default=30.0, description="Minimum refresh interval (s)")
    balance_debounce_seconds: float = Field(default=0.4, description="Refresh trigger batching (s)")
    balance_poll_interval: float = Field(default=300.0, description="Background refresh interval (s)")

    # ======================
    # Retry policy
    # ======================
    retry_attempts: int = Field(default=3, ge=1, description="Attempts for retryable failures")
    retry_base_delay: float = Field(default=1.0, description="Base delay between attempts (s)")

    # ======================
    # Exchange rates
    # ======================
    price_feed_url: str = Field(
        default="https://api.coingecko.com/api/v3/simple/price",
        description="Price feed endpoint",
    )
    geolocation_url: str = Field(
        default="https://ipapi.co/json/", description="IP geolocation endpoint"
    )
    http_timeout: float = Field(default=10.0, description="Timeout for price/geo HTTP calls (s)")
    rate_refresh_interval: float = Field(default=300.0, description="Rate table max age (s)")
    geo_cache_ttl: float = Field(default=86400.0, description="Geolocation cache lifetime (s)")
    rate_cache_path: Optional[str] = Field(
        default="./data/exchange_rates.json", description="Persisted rate cache (None disables)"
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    @property
    def has_signer_key(self) -> bool:
        return bool(self.private_key)

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        data = self.model_dump(mode="json")
        data["private_key"] = "***" if self.private_key else "(not set)"
        return data


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
