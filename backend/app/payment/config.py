"""
Configuration for the x402 Payment Gate.

Loads and validates environment variables for the facilitator, the payment
ledger and the generation engine.
"""

from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

# CAIP-2 network ids
BASE_MAINNET = "eip155:8453"
BASE_SEPOLIA = "eip155:84532"

BASE_USDC_ADDRESS = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
BASE_SEPOLIA_USDC_ADDRESS = "0x036CbD53842c267EeA6A9A0Fe8C0d8b3E28b40C7"

USDC_ADDRESSES = {
    BASE_MAINNET: BASE_USDC_ADDRESS,
    BASE_SEPOLIA: BASE_SEPOLIA_USDC_ADDRESS,
}

DEFAULT_FACILITATOR_URL = "https://api.cdp.coinbase.com/platform/v2/x402"

FACILITATOR_MODES = ("http", "local")


class X402Settings(BaseSettings):
    """x402 payment gate configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Feature flag
    x402_enabled: bool = False

    # Payment Configuration
    x402_receiver_address: str = ""
    x402_network: str = BASE_MAINNET
    x402_asset: str = ""  # Empty means USDC for the configured network
    x402_asset_name: str = "USD Coin"
    x402_asset_version: str = "2"
    x402_max_timeout_seconds: int = 300

    # Facilitator Configuration
    x402_facilitator_mode: str = "http"  # "http" or "local"
    x402_facilitator_url: str = DEFAULT_FACILITATOR_URL
    x402_facilitator_api_key: Optional[str] = None
    x402_facilitator_timeout_seconds: float = 30.0

    # Local facilitator (on-chain settlement)
    x402_rpc_url: Optional[str] = None
    x402_settlement_private_key: Optional[str] = None

    # Per-step timeouts and settlement retries
    x402_verify_timeout_seconds: float = 15.0
    x402_execution_timeout_seconds: float = 120.0
    x402_settle_timeout_seconds: float = 30.0
    x402_settle_max_attempts: int = 3
    x402_settle_backoff_seconds: float = 1.0

    # Pricing
    x402_markup_percent: float = 50.0
    x402_minimum_charge_usd: float = 0.01
    x402_tools_file: Optional[str] = None

    # Ledger
    x402_database_url: str = "sqlite:///./x402_payments.db"

    # Generation engine
    x402_internal_api_url: str = "http://localhost:4000"
    x402_internal_api_key: Optional[str] = None

    # Operator endpoints
    x402_admin_token: Optional[str] = None

    # Webhook delivery
    x402_allow_insecure_webhooks: bool = False
    x402_webhook_retry_delays: List[float] = [1.0, 5.0, 30.0]
    x402_webhook_timeout_seconds: float = 10.0

    # Server
    agents_port: int = 8000

    @property
    def asset_address(self) -> str:
        """Token contract used for payments (configured or network default)."""
        if self.x402_asset:
            return self.x402_asset
        return USDC_ADDRESSES.get(self.x402_network, BASE_USDC_ADDRESS)

    def validate_settings(self) -> None:
        """Validate required configuration.

        Raises:
            ValueError: If required configuration is missing or invalid
        """
        if self.x402_facilitator_mode not in FACILITATOR_MODES:
            raise ValueError(
                f"X402_FACILITATOR_MODE must be one of {FACILITATOR_MODES}, "
                f"got {self.x402_facilitator_mode}"
            )

        if not self.x402_enabled:
            return

        if not self.x402_receiver_address:
            raise ValueError("X402_RECEIVER_ADDRESS environment variable is required")

        address = self.x402_receiver_address
        if not address.startswith("0x") or len(address) != 42:
            raise ValueError(
                f"X402_RECEIVER_ADDRESS must be a valid EVM address: {address}"
            )

        if self.x402_facilitator_mode == "local" and not self.x402_rpc_url:
            raise ValueError("X402_RPC_URL is required when X402_FACILITATOR_MODE=local")

        if self.x402_settle_max_attempts < 1:
            raise ValueError("X402_SETTLE_MAX_ATTEMPTS must be at least 1")


# Global config instance
x402_settings = X402Settings()


def get_settings() -> X402Settings:
    """Return the process-wide settings instance."""
    return x402_settings
