"""Application configuration settings."""

from decimal import Decimal

from pydantic import Field
from pydantic_settings import BaseSettings


class DeskSettings(BaseSettings):
    """OTC desk configuration settings."""

    # Database Configuration
    database_url: str = Field(
        default="",
        description="SQLAlchemy async database URL (empty uses the in-memory store)",
    )

    # Price Feed Configuration
    price_feed_exchange: str = Field(default="binance", description="ccxt exchange id")
    price_feed_api_key: str = Field(default="", description="Price feed API key")
    price_feed_secret_key: str = Field(default="", description="Price feed secret key")
    price_feed_sandbox: bool = Field(default=True, description="Use exchange sandbox")
    fiat_quote_aliases: dict[str, str] = Field(
        default={"USD": "USDT"},
        description="Fiat quote currencies mapped to their exchange stand-in",
    )

    # Pricing
    default_quote_validity_seconds: int = Field(default=300, description="Default quote life")

    # Settlement
    crypto_rail_live: bool = Field(
        default=False, description="Route crypto transfers through the exchange withdraw API"
    )
    settlement_completion_delay_seconds: float = Field(
        default=5.0, description="Delay between dual confirmation and completion"
    )
    settlement_grace_period_minutes: int = Field(
        default=60, description="Grace period past expected completion before failing"
    )

    # Credit
    default_credit_interest_rate: Decimal = Field(
        default=Decimal("0.05"), description="Interest rate for new credit lines"
    )

    # Compliance
    travel_rule_threshold_usd: Decimal = Field(
        default=Decimal("1000"), description="Travel rule capture threshold"
    )

    # Custody
    hot_wallet_threshold_usd: Decimal = Field(
        default=Decimal("10000"), description="Hot wallet sweep threshold"
    )
    sweep_retention_ratio: Decimal = Field(
        default=Decimal("0.5"), description="Share of the threshold left in the hot wallet"
    )
    multisig_threshold_usd: Decimal = Field(
        default=Decimal("50000"), description="Withdrawal value requiring multisig"
    )
    multisig_required_signatures: int = Field(default=3, description="Signatures for multisig")
    multisig_signers: list[str] = Field(
        default=["OPS-1", "OPS-2", "OPS-3", "OPS-4", "OPS-5"],
        description="Custody officers allowed to sign multisig withdrawals",
    )
    auto_approve_cap_usd: Decimal = Field(
        default=Decimal("1000"), description="Single-sig auto-approval cap"
    )
    cold_wallet_addresses: dict[str, str] = Field(
        default={
            "BTC": "bc1qcoldwalletbtcaddress0000000000000000000",
            "ETH": "0x00000000000000000000000000000000000c01d0",
            "USDT": "0x00000000000000000000000000000000000c01d1",
            "USDC": "0x00000000000000000000000000000000000c01d2",
            "SOL": "CoLdWa11etSoLAddress111111111111111111111111",
        },
        description="Cold storage destination per currency",
    )

    # Background engine intervals (seconds)
    sweep_interval_seconds: int = Field(default=300, description="Hot/cold sweep interval")
    deposit_scan_interval_seconds: int = Field(default=30, description="Deposit scan interval")
    settlement_monitor_interval_seconds: int = Field(
        default=60, description="Settlement timeout monitor interval"
    )

    # Logging Configuration
    log_level: str = Field(default="INFO", description="Logging level")
    log_file: str | None = Field(default=None, description="Log file path")

    # FastAPI Configuration
    api_host: str = Field(default="127.0.0.1", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_debug: bool = Field(default=True, description="Debug mode")

    model_config = {
        "env_prefix": "OTC_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "forbid",
        "validate_assignment": True,
    }


# Global settings instance
settings = DeskSettings()
