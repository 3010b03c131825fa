"""
Relayer Guard Configuration
Central configuration for the circuit breaker, treasury, stake and quota guards
"""
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings

# Load .env from project root
load_dotenv(Path(__file__).parent.parent / ".env")


NETWORK_RPC_URLS = {
    "mainnet": "https://xrplcluster.com",
    "testnet": "https://s.altnet.rippletest.net:51234",
    "devnet": "https://s.devnet.rippletest.net:51234",
}


class CircuitBreakerConfig(BaseSettings):
    """Trip sensitivity and recovery behaviour of the circuit breaker"""

    velocity_threshold: int = 60          # tx per velocity window before HIGH_VELOCITY
    velocity_window_s: float = 60.0
    error_rate_threshold: float = 30.0    # percent
    error_window_s: float = 60.0
    error_rate_min_samples: int = 1
    recovery_time_s: float = 300.0        # OPEN -> HALF_OPEN delay
    min_balance: float = 100.0            # LOW_BALANCE trip floor
    half_open_test_requests: int = 5

    # Suspicious pattern detection
    suspicious_min_samples: int = 10
    single_identity_ratio: float = 0.5
    consecutive_failure_limit: int = 10

    prune_interval_s: float = 60.0

    model_config = {
        "env_prefix": "RELAYER_CB_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


class TreasuryConfig(BaseSettings):
    """Treasury guardrails. Amounts are in the settlement asset's major unit (XRP)."""

    address: str = ""

    critical_threshold: float = 100.0
    warning_threshold: float = 500.0
    healthy_threshold: float = 1000.0

    daily_fee_limit: float = 10.0
    max_fee_per_transaction: float = 0.01
    account_reserve: float = 10.0         # network base reserve; safety buffer is 2x this
    default_fee_estimate: float = 0.000012

    refresh_interval_s: float = 30.0

    model_config = {
        "env_prefix": "RELAYER_TREASURY_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @model_validator(mode="after")
    def _check_thresholds(self) -> "TreasuryConfig":
        if not (self.critical_threshold <= self.warning_threshold <= self.healthy_threshold):
            raise ValueError(
                "health thresholds must satisfy critical <= warning <= healthy"
            )
        if self.max_fee_per_transaction <= 0 or self.daily_fee_limit <= 0:
            raise ValueError("fee limits must be positive")
        if self.max_fee_per_transaction > self.daily_fee_limit:
            raise ValueError(
                "max_fee_per_transaction must not exceed daily_fee_limit"
            )
        return self


class StakeConfig(BaseSettings):
    """Anti-Sybil staking requirements"""

    token_currency: str = "VRTY"
    token_issuer: str = Field(
        default="rBeHfq9vRjZ8Cth1sMbp2nJvExmxSxAH8f",
        validation_alias="VRTY_ISSUER_ADDRESS",
    )
    minimum_stake_for_access: float = 0.1
    cache_ttl_s: float = 60.0

    # Tier name -> minimum stake. Empty means use the built-in table.
    tier_thresholds: Dict[str, float] = {}

    model_config = {
        "env_prefix": "RELAYER_STAKE_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "populate_by_name": True,
    }


class RateLimitConfig(BaseSettings):
    """Per-identity quota behaviour"""

    default_tier: str = "EXPLORER"
    burst_window_s: float = 60.0
    default_fee_estimate: float = 0.000012
    pending_slot_ttl_s: float = 300.0     # unsettled check_limit() slots lapse after this

    model_config = {
        "env_prefix": "RELAYER_RATE_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


class LedgerConfig(BaseSettings):
    """Ledger JSON-RPC endpoint"""

    network: str = "testnet"
    rpc_url: Optional[str] = None
    timeout_s: float = 10.0

    model_config = {
        "env_prefix": "XRPL_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def endpoint(self) -> str:
        if self.rpc_url:
            return self.rpc_url
        return NETWORK_RPC_URLS.get(self.network, NETWORK_RPC_URLS["testnet"])


class NotifierConfig(BaseSettings):
    """Alert sink configuration"""

    discord_webhook_url: str = Field(default="", validation_alias="DISCORD_WEBHOOK_URL")
    instance_id: str = Field(default="local", validation_alias="INSTANCE_ID")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "populate_by_name": True,
    }


# Global config instances
breaker_config = CircuitBreakerConfig()
treasury_config = TreasuryConfig()
stake_config = StakeConfig()
rate_limit_config = RateLimitConfig()
ledger_config = LedgerConfig()
notifier_config = NotifierConfig()
