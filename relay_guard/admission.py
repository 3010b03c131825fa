"""
Admission Controller - Relay Request Orchestration

Runs every relay request through the guards, strictly in order, stopping at
the first rejection:

1. CircuitBreaker.can_proceed()
2. StakeGuard.is_blacklisted()
3. StakeGuard.verify_eligibility()
4. RateLimiter.check_limit()
5. TreasuryManager.reserve_fee()

The stateless checks come first so a blocked or blacklisted caller never
costs a ledger query.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from relay_guard.circuit_breaker import CircuitBreaker, CircuitState
from relay_guard.rate_limiter import RateLimiter
from relay_guard.stake_guard import StakeGuard
from relay_guard.tiers import StakeTier
from relay_guard.treasury_manager import TreasuryEvent, TreasuryHealth, TreasuryManager, to_amount

logger = logging.getLogger(__name__)


class RejectionCode(Enum):
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    BLACKLISTED = "BLACKLISTED"
    INSUFFICIENT_STAKE = "INSUFFICIENT_STAKE"
    RATE_LIMITED = "RATE_LIMITED"
    TREASURY_INSUFFICIENT = "TREASURY_INSUFFICIENT"


@dataclass
class RelayTicket:
    """An admitted request: holds a fee reservation and a rate-limit slot."""
    transaction_id: str
    identity: str
    tier: StakeTier
    fee: Decimal
    treasury_address: Optional[str]
    admitted_at: float
    priority: bool = False


@dataclass
class AdmissionDecision:
    allowed: bool
    identity: str
    code: Optional[RejectionCode] = None
    reason: Optional[str] = None
    retry_after_ms: Optional[int] = None
    tier: Optional[StakeTier] = None
    ticket: Optional[RelayTicket] = None

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "identity": self.identity,
            "code": self.code.value if self.code else None,
            "reason": self.reason,
            "retry_after_ms": self.retry_after_ms,
            "tier": self.tier.value if self.tier else None,
            "transaction_id": self.ticket.transaction_id if self.ticket else None,
        }


@dataclass
class RelayOutcome:
    decision: AdmissionDecision
    submitted: bool = False
    success: bool = False
    fee: Optional[Decimal] = None
    response: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


# Submitters return {"success": bool, "fee": <settled fee>, ...}
Submitter = Callable[[RelayTicket], Awaitable[Dict[str, Any]]]


class AdmissionController:
    """
    The request-handling seam. One instance per process, holding the one
    shared breaker and treasury.
    """

    def __init__(
        self,
        breaker: CircuitBreaker,
        stake_guard: StakeGuard,
        rate_limiter: RateLimiter,
        treasury: TreasuryManager,
        clock: Callable[[], float] = time.time,
    ):
        self.breaker = breaker
        self.stake_guard = stake_guard
        self.rate_limiter = rate_limiter
        self.treasury = treasury
        self._clock = clock

        self._admitted = 0
        self._rejected: Dict[RejectionCode, int] = {code: 0 for code in RejectionCode}

        treasury.add_listener(self._on_treasury_event)

    def _on_treasury_event(self, event: TreasuryEvent) -> None:
        if event.kind in ("health_changed", "critical"):
            self.breaker.check_treasury_health(event.health, event.available)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> None:
        await self.treasury.initialize(start_monitoring=True)
        self.breaker.start()
        # The first balance may already be critical.
        self.breaker.check_treasury_health(
            self.treasury.get_health_status(), self.treasury.get_available_balance()
        )
        logger.info("🚀 Admission controller started")

    async def shutdown(self) -> None:
        await self.treasury.shutdown()
        await self.breaker.shutdown()
        logger.info(
            f"Admission controller stopped: admitted={self._admitted} "
            f"rejected={sum(self._rejected.values())}"
        )

    # =========================================================================
    # ADMISSION
    # =========================================================================

    def _reject(self, identity: str, code: RejectionCode, reason: Optional[str],
                retry_after_ms: Optional[int] = None, tier: Optional[StakeTier] = None) -> AdmissionDecision:
        self._rejected[code] += 1
        logger.info(f"⛔ Relay rejected for {identity}: {code.value} ({reason})")
        return AdmissionDecision(
            allowed=False,
            identity=identity,
            code=code,
            reason=reason,
            retry_after_ms=retry_after_ms,
            tier=tier,
        )

    async def admit(self, identity: str, fee=None, transaction_id: Optional[str] = None) -> AdmissionDecision:
        """
        Gate one relay request.

        An admitted request holds a treasury reservation and a rate-limit
        slot; hand its ticket to complete() whatever the submission outcome.
        """
        fee = to_amount(fee if fee is not None else self.treasury.config.default_fee_estimate)

        circuit = self.breaker.can_proceed()
        if not circuit.allowed:
            return self._reject(identity, RejectionCode.CIRCUIT_OPEN, circuit.reason, circuit.retry_after_ms)

        if await self.stake_guard.is_blacklisted(identity):
            return self._reject(identity, RejectionCode.BLACKLISTED, "Identity is blacklisted")

        stake = await self.stake_guard.verify_eligibility(identity)
        if not stake.eligible:
            return self._reject(identity, RejectionCode.INSUFFICIENT_STAKE, stake.reason, tier=stake.tier)

        quota = self.rate_limiter.check_limit(identity, tier=stake.tier, estimated_fee=fee)
        if not quota.allowed:
            return self._reject(
                identity, RejectionCode.RATE_LIMITED, quota.reason, quota.retry_after_ms, tier=stake.tier
            )

        transaction_id = transaction_id or uuid.uuid4().hex
        reservation = self.treasury.reserve_fee(transaction_id, fee, identity)
        if not reservation.success:
            self.rate_limiter.cancel(identity)
            return self._reject(
                identity, RejectionCode.TREASURY_INSUFFICIENT, reservation.error, tier=stake.tier
            )

        self._admitted += 1
        ticket = RelayTicket(
            transaction_id=transaction_id,
            identity=identity,
            tier=stake.tier,
            fee=fee,
            treasury_address=reservation.treasury_address,
            admitted_at=self._clock(),
            priority=stake.benefits.priority_submission,
        )
        logger.debug(f"Relay admitted: {transaction_id} for {identity} ({stake.tier.value})")
        return AdmissionDecision(allowed=True, identity=identity, tier=stake.tier, ticket=ticket)

    def complete(self, ticket: RelayTicket, success: bool, actual_fee=None) -> None:
        """Settle an admitted ticket after submission."""
        if success:
            fee = to_amount(actual_fee if actual_fee is not None else ticket.fee)
            self.treasury.confirm_fee_payment(ticket.transaction_id, fee)
            self.rate_limiter.record_transaction(ticket.identity, fee)
            self.breaker.record_transaction(True, ticket.identity, fee)
        else:
            self.treasury.release_reservation(ticket.transaction_id)
            self.rate_limiter.cancel(ticket.identity)
            self.breaker.record_transaction(False, ticket.identity)

    async def relay(self, identity: str, submit: Submitter, fee=None,
                    transaction_id: Optional[str] = None) -> RelayOutcome:
        """admit, then submit, then complete."""
        decision = await self.admit(identity, fee, transaction_id)
        if not decision.allowed:
            return RelayOutcome(decision=decision)

        ticket = decision.ticket
        try:
            response = await submit(ticket)
        except asyncio.CancelledError:
            self.complete(ticket, success=False)
            raise
        except Exception as e:
            logger.error(f"❌ Submission failed for {ticket.transaction_id}: {e}")
            self.complete(ticket, success=False)
            return RelayOutcome(decision=decision, submitted=True, error=str(e))

        success = bool(response.get("success"))
        settled_fee = to_amount(response.get("fee", ticket.fee)) if success else None
        self.complete(ticket, success, settled_fee)
        return RelayOutcome(
            decision=decision,
            submitted=True,
            success=success,
            fee=settled_fee,
            response=response,
            error=None if success else response.get("error", "Submission rejected"),
        )

    # =========================================================================
    # HEALTH
    # =========================================================================

    def get_health(self) -> dict:
        circuit = self.breaker.get_state()
        treasury_health = self.treasury.get_health_status()
        if circuit["state"] == CircuitState.OPEN.value:
            status = "halted"
        elif circuit["state"] == CircuitState.HALF_OPEN.value or treasury_health != TreasuryHealth.HEALTHY:
            status = "degraded"
        else:
            status = "ok"

        return {
            "status": status,
            "circuit_breaker": circuit,
            "treasury": self.treasury.get_treasury_status(),
            "rate_limiter": self.rate_limiter.get_statistics(),
            "stake_guard": self.stake_guard.get_status(),
            "admissions": {
                "admitted": self._admitted,
                "rejected": {code.value: count for code, count in self._rejected.items()},
            },
        }
