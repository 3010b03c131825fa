"""
Per-Identity Quota Rate Limiter for the Relayer

Each identity gets limits from its staking tier:
- Daily transactions (reset at UTC midnight)
- Monthly transactions (reset on the 1st, UTC)
- Daily sponsored-fee spend
- Burst: token bucket refilling over BURST_WINDOW

A successful check holds a pending slot until the relay is recorded or
cancelled, so concurrent requests for one identity cannot both take the
last unit of quota.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Deque, Dict, Optional

from config.settings import RateLimitConfig, rate_limit_config
from relay_guard.tiers import (
    StakeTier,
    TierBenefits,
    TIER_BENEFITS,
    TIER_ORDER,
    UNLIMITED,
    within_limit,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class TokenBucket:
    """A single token bucket rate limiter."""

    def __init__(self, capacity: int, refill_rate: float, name: str, clock: Callable[[], float] = time.time):
        self.name = name
        self.capacity = capacity
        self.refill_rate = refill_rate
        self._clock = clock
        self.tokens = float(capacity)
        self.last_refill = clock()

        # Stats
        self.total_requests = 0
        self.total_throttled = 0

    def _refill(self) -> None:
        """Refill tokens based on elapsed time."""
        now = self._clock()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def acquire(self, tokens: int = 1) -> bool:
        """
        Try to acquire tokens (non-blocking).

        Returns:
            True if tokens acquired, False if rate limited
        """
        self._refill()
        if self.tokens >= tokens:
            self.tokens -= tokens
            self.total_requests += 1
            return True
        self.total_throttled += 1
        return False

    def time_until_available(self, tokens: int = 1) -> float:
        """Seconds until `tokens` can be acquired."""
        self._refill()
        missing = tokens - self.tokens
        if missing <= 0 or self.refill_rate <= 0:
            return 0.0
        return missing / self.refill_rate

    def get_available(self) -> float:
        self._refill()
        return self.tokens


@dataclass
class PendingSlot:
    fee: Decimal
    held_at: float


@dataclass
class QuotaRecord:
    """Usage bookkeeping for one identity."""
    identity: str
    tier: StakeTier
    bucket: TokenBucket
    daily_used: int = 0
    monthly_used: int = 0
    daily_fee_spent: Decimal = ZERO
    reset_day: str = ""
    reset_month: str = ""
    pending: Deque[PendingSlot] = field(default_factory=deque)

    @property
    def pending_fee(self) -> Decimal:
        return sum((slot.fee for slot in self.pending), ZERO)


@dataclass
class RateLimitResult:
    allowed: bool
    identity: str
    tier: StakeTier
    daily_remaining: int
    monthly_remaining: int
    burst_remaining: int
    limits: TierBenefits
    retry_after_ms: Optional[int] = None
    reason: Optional[str] = None


@dataclass
class QuotaSnapshot:
    identity: str
    tier: StakeTier
    daily_used: int
    daily_limit: int
    daily_remaining: int
    monthly_used: int
    monthly_limit: int
    monthly_remaining: int
    daily_fee_spent: Decimal
    daily_fee_limit: Decimal
    resets_at: str

    def to_dict(self) -> dict:
        return {
            "identity": self.identity,
            "tier": self.tier.value,
            "daily": {"used": self.daily_used, "limit": self.daily_limit, "remaining": self.daily_remaining},
            "monthly": {"used": self.monthly_used, "limit": self.monthly_limit, "remaining": self.monthly_remaining},
            "daily_fee_spent": str(self.daily_fee_spent),
            "daily_fee_limit": str(self.daily_fee_limit),
            "resets_at": self.resets_at,
        }


def _remaining(used: int, limit: int) -> int:
    if limit == UNLIMITED:
        return UNLIMITED
    return max(0, limit - used)


class RateLimiter:
    """
    Tiered quota enforcement.

    The tier is supplied by the caller (usually from StakeGuard) and stored
    on the record; calls without a tier reuse the stored one.
    """

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or rate_limit_config
        self._clock = clock
        self._default_tier = StakeTier.parse(self.config.default_tier)
        self._records: Dict[str, QuotaRecord] = {}
        self._lock = threading.Lock()
        self._total_checks = 0
        self._total_denied = 0

        logger.info(
            f"🚦 RateLimiter (tiered quotas) initialized: default tier "
            f"{self._default_tier.value}, burst window {self.config.burst_window_s:.0f}s"
        )

    # =========================================================================
    # CALENDAR
    # =========================================================================

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def _ms_until_next_day(self) -> int:
        now = self._now()
        tomorrow = datetime(now.year, now.month, now.day, tzinfo=timezone.utc) + timedelta(days=1)
        return int((tomorrow - now).total_seconds() * 1000)

    def _ms_until_next_month(self) -> int:
        now = self._now()
        if now.month == 12:
            first = datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
        else:
            first = datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)
        return int((first - now).total_seconds() * 1000)

    def _check_daily_reset(self, record: QuotaRecord) -> None:
        today = self._now().date().isoformat()
        if record.reset_day != today:
            record.daily_used = 0
            record.daily_fee_spent = ZERO
            record.reset_day = today
            # slots held on a previous day never carry over
            record.pending.clear()

    def _expire_pending(self, record: QuotaRecord) -> None:
        cutoff = self._clock() - self.config.pending_slot_ttl_s
        expired = 0
        while record.pending and record.pending[0].held_at <= cutoff:
            record.pending.popleft()
            expired += 1
        if expired:
            logger.warning(
                f"⏳ {record.identity}: {expired} unsettled slot(s) expired after "
                f"{self.config.pending_slot_ttl_s:.0f}s"
            )

    def _check_monthly_reset(self, record: QuotaRecord) -> None:
        month = self._now().strftime("%Y-%m")
        if record.reset_month != month:
            record.monthly_used = 0
            record.reset_month = month

    # =========================================================================
    # RECORDS
    # =========================================================================

    def _make_bucket(self, identity: str, tier: StakeTier) -> TokenBucket:
        burst = TIER_BENEFITS[tier].burst_limit
        return TokenBucket(
            capacity=burst,
            refill_rate=burst / self.config.burst_window_s,
            name=identity,
            clock=self._clock,
        )

    def _new_record(self, identity: str, tier: StakeTier) -> QuotaRecord:
        now = self._now()
        return QuotaRecord(
            identity=identity,
            tier=tier,
            bucket=self._make_bucket(identity, tier),
            reset_day=now.date().isoformat(),
            reset_month=now.strftime("%Y-%m"),
        )

    def _load(self, identity: str, tier: Optional[StakeTier]) -> QuotaRecord:
        record = self._records.get(identity)
        if record is None:
            record = self._new_record(identity, tier or self._default_tier)
            self._records[identity] = record
        elif tier is not None and tier != record.tier:
            logger.debug(f"Tier change for {identity}: {record.tier.value} -> {tier.value}")
            record.tier = tier
            old_bucket = record.bucket
            record.bucket = self._make_bucket(identity, tier)
            record.bucket.tokens = min(float(record.bucket.capacity), old_bucket.get_available())

        self._check_daily_reset(record)
        self._check_monthly_reset(record)
        self._expire_pending(record)
        return record

    # =========================================================================
    # CHECK / RECORD
    # =========================================================================

    def check_limit(
        self,
        identity: str,
        tier: Optional[StakeTier] = None,
        estimated_fee=None,
    ) -> RateLimitResult:
        """
        Gate one relay for `identity`. On success a pending slot is held
        until record_transaction() or cancel().
        """
        fee = Decimal(str(estimated_fee if estimated_fee is not None else self.config.default_fee_estimate))

        with self._lock:
            self._total_checks += 1
            record = self._load(identity, tier)
            limits = TIER_BENEFITS[record.tier]

            in_flight = len(record.pending)
            daily_used = record.daily_used + in_flight
            monthly_used = record.monthly_used + in_flight

            def result(allowed: bool, reason: Optional[str] = None, retry_after_ms: Optional[int] = None,
                       extra: int = 0) -> RateLimitResult:
                return RateLimitResult(
                    allowed=allowed,
                    identity=identity,
                    tier=record.tier,
                    daily_remaining=_remaining(daily_used + extra, limits.daily_transactions),
                    monthly_remaining=_remaining(monthly_used + extra, limits.monthly_transactions),
                    burst_remaining=int(record.bucket.get_available()),
                    limits=limits,
                    retry_after_ms=retry_after_ms,
                    reason=reason,
                )

            denied: Optional[RateLimitResult] = None
            if not within_limit(daily_used, limits.daily_transactions):
                denied = result(False, "Daily transaction limit exceeded", self._ms_until_next_day())
            elif not within_limit(monthly_used, limits.monthly_transactions):
                denied = result(False, "Monthly transaction limit exceeded", self._ms_until_next_month())
            elif record.daily_fee_spent + record.pending_fee + fee > limits.daily_fee_limit:
                denied = result(False, "Daily fee limit exceeded", self._ms_until_next_day())
            elif not record.bucket.acquire():
                wait_ms = int(record.bucket.time_until_available() * 1000) + 1
                denied = result(False, "Burst limit exceeded, slow down", wait_ms)

            if denied is not None:
                self._total_denied += 1
                logger.warning(
                    f"🚦 {identity} ({record.tier.value}) throttled: {denied.reason} "
                    f"(retry in {denied.retry_after_ms}ms)"
                )
                return denied

            record.pending.append(PendingSlot(fee=fee, held_at=self._clock()))
            return result(True, extra=1)

    def record_transaction(self, identity: str, fee) -> None:
        """
        Book a completed relay. Never re-checks limits: the admission check
        already did, and the relay has happened.
        """
        fee = Decimal(str(fee))
        with self._lock:
            record = self._load(identity, None)
            if record.pending:
                record.pending.popleft()
            record.daily_used += 1
            record.monthly_used += 1
            record.daily_fee_spent += fee

        logger.debug(
            f"Transaction recorded: {identity} daily={record.daily_used} "
            f"monthly={record.monthly_used} fee_spent={record.daily_fee_spent}"
        )

    def cancel(self, identity: str) -> None:
        """Give back a slot from check_limit() whose relay never happened."""
        with self._lock:
            record = self._records.get(identity)
            if record is not None and record.pending:
                record.pending.popleft()

    # =========================================================================
    # QUERIES
    # =========================================================================

    def _next_reset_iso(self) -> str:
        now = self._now()
        tomorrow = datetime(now.year, now.month, now.day, tzinfo=timezone.utc) + timedelta(days=1)
        return tomorrow.isoformat()

    def get_quota(self, identity: str) -> QuotaSnapshot:
        """Read-only usage view; does not create a record."""
        with self._lock:
            record = self._records.get(identity)
            if record is None:
                record = self._new_record(identity, self._default_tier)
            else:
                self._check_daily_reset(record)
                self._check_monthly_reset(record)
            limits = TIER_BENEFITS[record.tier]
            return QuotaSnapshot(
                identity=identity,
                tier=record.tier,
                daily_used=record.daily_used,
                daily_limit=limits.daily_transactions,
                daily_remaining=_remaining(record.daily_used, limits.daily_transactions),
                monthly_used=record.monthly_used,
                monthly_limit=limits.monthly_transactions,
                monthly_remaining=_remaining(record.monthly_used, limits.monthly_transactions),
                daily_fee_spent=record.daily_fee_spent,
                daily_fee_limit=limits.daily_fee_limit,
                resets_at=self._next_reset_iso(),
            )

    def get_statistics(self) -> dict:
        with self._lock:
            distribution = {tier.value: 0 for tier in TIER_ORDER}
            for record in self._records.values():
                distribution[record.tier.value] += 1
            return {
                "active_identities": len(self._records),
                "tier_distribution": distribution,
                "total_checks": self._total_checks,
                "total_denied": self._total_denied,
            }

    def get_tier_limits(self) -> Dict[StakeTier, TierBenefits]:
        return dict(TIER_BENEFITS)

    def reset_daily_limits(self, identity: Optional[str] = None) -> None:
        """Admin/test helper: zero daily counters for one identity or all."""
        today = self._now().date().isoformat()
        with self._lock:
            targets = [self._records[identity]] if identity in self._records else (
                [] if identity else list(self._records.values())
            )
            for record in targets:
                record.daily_used = 0
                record.daily_fee_spent = ZERO
                record.reset_day = today
        logger.info(f"Daily limits reset for {identity or 'all identities'}")

    def get_active_identity_count(self) -> int:
        return len(self._records)

    def __repr__(self) -> str:
        return (
            f"RateLimiter(identities={len(self._records)}, "
            f"checks={self._total_checks}, denied={self._total_denied})"
        )
