"""
Relay Guard - Sponsored Transaction Safety Layer

Core Components:
- CircuitBreaker: The final arbiter - velocity, error rate, suspicious activity, low balance
- TreasuryManager: Fee reservation against the shared treasury balance
- StakeGuard: Anti-sybil eligibility and tier lookup
- RateLimiter: Per-identity tiered quotas
- AdmissionController: Runs a relay request through all of the above
"""

from relay_guard.circuit_breaker import CircuitBreaker, CircuitState, TripReason, CircuitDecision
from relay_guard.treasury_manager import TreasuryManager, TreasuryHealth, FeeReservationResult
from relay_guard.stake_guard import StakeGuard, StakeVerificationResult
from relay_guard.rate_limiter import RateLimiter, RateLimitResult, TokenBucket
from relay_guard.tiers import StakeTier, TierBenefits, TIER_BENEFITS, STAKE_THRESHOLDS
from relay_guard.admission import (
    AdmissionController,
    AdmissionDecision,
    RejectionCode,
    RelayOutcome,
    RelayTicket,
)

__all__ = [
    # Circuit Breaker
    "CircuitBreaker",
    "CircuitState",
    "TripReason",
    "CircuitDecision",
    # Treasury
    "TreasuryManager",
    "TreasuryHealth",
    "FeeReservationResult",
    # Stake Guard
    "StakeGuard",
    "StakeVerificationResult",
    # Rate Limiter
    "RateLimiter",
    "RateLimitResult",
    "TokenBucket",
    # Tiers
    "StakeTier",
    "TierBenefits",
    "TIER_BENEFITS",
    "STAKE_THRESHOLDS",
    # Admission
    "AdmissionController",
    "AdmissionDecision",
    "RejectionCode",
    "RelayOutcome",
    "RelayTicket",
]
