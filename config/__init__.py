"""
Relayer Guard Configuration
"""
from .settings import (
    CircuitBreakerConfig,
    LedgerConfig,
    NotifierConfig,
    RateLimitConfig,
    StakeConfig,
    TreasuryConfig,
    breaker_config,
    ledger_config,
    notifier_config,
    rate_limit_config,
    stake_config,
    treasury_config,
)

__all__ = [
    "CircuitBreakerConfig",
    "LedgerConfig",
    "NotifierConfig",
    "RateLimitConfig",
    "StakeConfig",
    "TreasuryConfig",
    "breaker_config",
    "ledger_config",
    "notifier_config",
    "rate_limit_config",
    "stake_config",
    "treasury_config",
]
