"""
Circuit Breaker - Treasury Drain Protection

The final arbiter: no relay is attempted while the circuit is open.

Trips on (evaluated in this order, first match wins):
- High Velocity: more than VELOCITY_THRESHOLD relays in the last 60s
- High Error Rate: failure percentage above threshold in the error window
- Suspicious Activity: one identity > 50% of volume, or 10 failures in a row
- Low Balance: treasury health CRITICAL or balance under the floor
- Manual: operator trip

Recovery: after RECOVERY_TIME the next request moves the circuit to
HALF_OPEN; HALF_OPEN_TEST_REQUESTS recorded successes close it again.
"""

import asyncio
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional

from config.settings import CircuitBreakerConfig, breaker_config

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit state enumeration."""
    CLOSED = "CLOSED"          # Normal operation
    HALF_OPEN = "HALF_OPEN"    # Probing recovery
    OPEN = "OPEN"              # All relays blocked


class TripReason(Enum):
    """Why the circuit opened."""
    HIGH_VELOCITY = "HIGH_VELOCITY"
    LOW_BALANCE = "LOW_BALANCE"
    HIGH_ERROR_RATE = "HIGH_ERROR_RATE"
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"
    MANUAL = "MANUAL"


@dataclass(frozen=True)
class TransactionOutcome:
    """One completed relay attempt."""
    timestamp: float
    identity: str
    success: bool
    fee: Decimal = Decimal("0")


@dataclass
class CircuitDecision:
    """Result of a can_proceed() gate check."""
    allowed: bool
    state: CircuitState
    reason: Optional[str] = None
    trip_reason: Optional[TripReason] = None
    retry_after_ms: Optional[int] = None


@dataclass
class CircuitEvent:
    """Notification emitted on every state transition."""
    kind: str                      # trip | half_open | close | manual_trip | manual_reset
    state: CircuitState
    timestamp: float
    reason: Optional[TripReason] = None
    details: Dict[str, object] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "state": self.state.value,
            "timestamp": datetime.fromtimestamp(self.timestamp, tz=timezone.utc).isoformat(),
            "reason": self.reason.value if self.reason else None,
            "details": self.details,
        }


CircuitListener = Callable[[CircuitEvent], None]


class CircuitBreaker:
    """
    System-wide relay gate.

    One instance is created at process start and shared by every request
    handler. Detection only uses the locally buffered outcome stream, so the
    breaker itself never fails: an empty buffer simply means CLOSED.
    """

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or breaker_config
        self._clock = clock

        self._state: CircuitState = CircuitState.CLOSED
        self._trip_reason: Optional[TripReason] = None
        self._trip_timestamp: Optional[float] = None
        self._last_recovery_attempt: Optional[float] = None
        self._half_open_success_count: int = 0

        self._history: Deque[TransactionOutcome] = deque()
        self._lock = threading.RLock()
        self._listeners: List[CircuitListener] = []
        self._cleanup_task: Optional[asyncio.Task] = None

        logger.info(
            f"🔌 CircuitBreaker initialized: velocity>{self.config.velocity_threshold}/"
            f"{self.config.velocity_window_s:.0f}s, errors>{self.config.error_rate_threshold}%, "
            f"recovery {self.config.recovery_time_s:.0f}s, "
            f"{self.config.half_open_test_requests} probes"
        )

    # =========================================================================
    # OBSERVERS
    # =========================================================================

    def add_listener(self, listener: CircuitListener) -> None:
        """Register a callback invoked synchronously on every transition."""
        self._listeners.append(listener)

    def remove_listener(self, listener: CircuitListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, events: List[CircuitEvent]) -> None:
        for event in events:
            for listener in list(self._listeners):
                try:
                    listener(event)
                except Exception:
                    logger.exception(f"Circuit listener failed on '{event.kind}' event")

    # =========================================================================
    # GATE
    # =========================================================================

    def can_proceed(self) -> CircuitDecision:
        """
        Is any relay currently permitted?

        OPEN past the recovery time moves to HALF_OPEN and lets this call
        through. HALF_OPEN lets probes through; once enough successes have
        been recorded the circuit closes.
        """
        events: List[CircuitEvent] = []
        with self._lock:
            if self._state == CircuitState.CLOSED:
                decision = CircuitDecision(allowed=True, state=self._state)

            elif self._state == CircuitState.OPEN:
                now = self._clock()
                if (
                    self._trip_timestamp is not None
                    and now - self._trip_timestamp >= self.config.recovery_time_s
                ):
                    events.append(self._transition_to_half_open(now))
                    decision = CircuitDecision(
                        allowed=True,
                        state=CircuitState.HALF_OPEN,
                        reason="Testing recovery",
                        trip_reason=self._trip_reason,
                    )
                else:
                    remaining = self.config.recovery_time_s - (now - (self._trip_timestamp or now))
                    decision = CircuitDecision(
                        allowed=False,
                        state=self._state,
                        reason=f"Circuit open: {self._trip_reason.value if self._trip_reason else 'unknown'}",
                        trip_reason=self._trip_reason,
                        retry_after_ms=max(0, int(remaining * 1000)),
                    )

            else:
                # Probes beyond the nominal budget are still let through
                # until the success counter catches up.
                if self._half_open_success_count < self.config.half_open_test_requests:
                    decision = CircuitDecision(
                        allowed=True,
                        state=self._state,
                        reason="Testing recovery",
                        trip_reason=self._trip_reason,
                    )
                else:
                    events.append(self._close())
                    decision = CircuitDecision(allowed=True, state=CircuitState.CLOSED)

        self._emit(events)
        return decision

    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    # =========================================================================
    # OUTCOME STREAM
    # =========================================================================

    def record_transaction(self, success: bool, identity: str, fee=Decimal("0")) -> None:
        """Append a completed relay attempt and re-evaluate the trip rules."""
        events: List[CircuitEvent] = []
        with self._lock:
            now = self._clock()
            self._history.append(
                TransactionOutcome(
                    timestamp=now,
                    identity=identity,
                    success=success,
                    fee=Decimal(str(fee)),
                )
            )

            if self._state == CircuitState.HALF_OPEN and success:
                self._half_open_success_count += 1
                if self._half_open_success_count >= self.config.half_open_test_requests:
                    logger.info("✅ Circuit breaker: recovery successful")
                    events.append(self._close())

            event = self._check_trip_conditions_locked(now)
            if event is not None:
                events.append(event)

        self._emit(events)

    def check_trip_conditions(self) -> Optional[TripReason]:
        """Evaluate the trip rules now; trips and returns the reason on a match."""
        with self._lock:
            event = self._check_trip_conditions_locked(self._clock())
        if event is None:
            return None
        self._emit([event])
        return event.reason

    def evaluate_trip_conditions(self, now: Optional[float] = None) -> Optional[TripReason]:
        """
        Pure rule evaluation against the buffered history.

        Order is fixed: velocity, then error rate, then suspicious activity.
        """
        with self._lock:
            now = self._clock() if now is None else now

            recent = self._recent(self.config.velocity_window_s, now)
            if len(recent) > self.config.velocity_threshold:
                return TripReason.HIGH_VELOCITY

            if self._error_rate(now) > self.config.error_rate_threshold:
                return TripReason.HIGH_ERROR_RATE

            if self._detect_suspicious_activity(recent):
                return TripReason.SUSPICIOUS_ACTIVITY

            return None

    def _check_trip_conditions_locked(self, now: float) -> Optional[CircuitEvent]:
        if self._state != CircuitState.CLOSED:
            return None
        reason = self.evaluate_trip_conditions(now)
        if reason is None:
            return None
        return self._trip(reason, now)

    # =========================================================================
    # DETECTION
    # =========================================================================

    def _recent(self, window_s: float, now: float) -> List[TransactionOutcome]:
        cutoff = now - window_s
        return [tx for tx in self._history if tx.timestamp >= cutoff]

    def _error_rate(self, now: float) -> float:
        recent = self._recent(self.config.error_window_s, now)
        if not recent or len(recent) < self.config.error_rate_min_samples:
            return 0.0
        failures = sum(1 for tx in recent if not tx.success)
        return failures / len(recent) * 100

    def _detect_suspicious_activity(self, recent: List[TransactionOutcome]) -> bool:
        if len(recent) < self.config.suspicious_min_samples:
            return False

        # Pattern 1: single identity flooding
        counts: Dict[str, int] = {}
        for tx in recent:
            counts[tx.identity] = counts.get(tx.identity, 0) + 1
        for identity, count in counts.items():
            if count > len(recent) * self.config.single_identity_ratio:
                logger.warning(
                    f"🕵️ Suspicious activity: {identity} sent {count}/{len(recent)} "
                    f"relays in the last {self.config.velocity_window_s:.0f}s"
                )
                return True

        # Pattern 2: unbroken run of failures ending at the newest outcome
        consecutive = 0
        for tx in reversed(recent):
            if tx.success:
                break
            consecutive += 1
            if consecutive >= self.config.consecutive_failure_limit:
                logger.warning(f"🕵️ Suspicious activity: {consecutive} consecutive failures")
                return True

        return False

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    def check_treasury_health(self, health, balance) -> None:
        """Trip LOW_BALANCE when the treasury reports CRITICAL or drops under the floor."""
        health_value = getattr(health, "value", health)
        if health_value == "CRITICAL" or float(balance) < self.config.min_balance:
            self.trip(TripReason.LOW_BALANCE)

    def trip(self, reason: TripReason) -> None:
        """Open the circuit. No-op when already open."""
        with self._lock:
            event = self._trip(reason, self._clock())
        if event is not None:
            self._emit([event])

    def _trip(self, reason: TripReason, now: float) -> Optional[CircuitEvent]:
        if self._state == CircuitState.OPEN:
            return None

        self._state = CircuitState.OPEN
        self._trip_reason = reason
        self._trip_timestamp = now

        logger.critical(
            f"🚨 CIRCUIT BREAKER TRIPPED: {reason.value} "
            f"(history={len(self._history)}, error_rate={self._error_rate(now):.1f}%) - "
            f"relaying halted for at least {self.config.recovery_time_s:.0f}s"
        )
        return CircuitEvent(
            kind="trip",
            state=self._state,
            timestamp=now,
            reason=reason,
            details={"history": len(self._history)},
        )

    def manual_trip(self, admin_id: str, reason: Optional[str] = None) -> None:
        """Operator trip."""
        logger.warning(f"🛑 MANUAL TRIP by {admin_id}: {reason or 'Manual admin action'}")
        self.trip(TripReason.MANUAL)
        self._emit([
            CircuitEvent(
                kind="manual_trip",
                state=self._state,
                timestamp=self._clock(),
                reason=TripReason.MANUAL,
                details={"admin_id": admin_id, "reason": reason or "Manual admin action"},
            )
        ])

    def _transition_to_half_open(self, now: float) -> CircuitEvent:
        self._state = CircuitState.HALF_OPEN
        self._half_open_success_count = 0
        self._last_recovery_attempt = now

        logger.info("🔄 Circuit breaker: attempting recovery (half-open)")
        return CircuitEvent(
            kind="half_open",
            state=self._state,
            timestamp=now,
            reason=self._trip_reason,
            details={"trip_duration_s": round(now - (self._trip_timestamp or now), 1)},
        )

    def close(self) -> None:
        """Resume normal operation unconditionally."""
        with self._lock:
            event = self._close()
        self._emit([event])

    def _close(self) -> CircuitEvent:
        previous_state = self._state
        previous_reason = self._trip_reason

        self._state = CircuitState.CLOSED
        self._trip_reason = None
        self._trip_timestamp = None
        self._half_open_success_count = 0

        logger.info(
            f"✅ Circuit breaker CLOSED (was {previous_state.value}"
            f"{', ' + previous_reason.value if previous_reason else ''})"
        )
        return CircuitEvent(
            kind="close",
            state=self._state,
            timestamp=self._clock(),
            reason=previous_reason,
            details={"previous_state": previous_state.value},
        )

    def manual_reset(self, admin_id: str) -> None:
        """Operator reset: close and forget the outcome history."""
        logger.warning(f"🔧 Circuit breaker manually reset by {admin_id}")
        with self._lock:
            events = [self._close()]
            self._history.clear()
            events.append(
                CircuitEvent(
                    kind="manual_reset",
                    state=self._state,
                    timestamp=self._clock(),
                    details={"admin_id": admin_id},
                )
            )
        self._emit(events)

    # =========================================================================
    # HOUSEKEEPING
    # =========================================================================

    def prune_history(self) -> int:
        """Drop outcomes older than twice the error window. Returns how many went."""
        retention = max(self.config.error_window_s * 2, self.config.velocity_window_s)
        with self._lock:
            cutoff = self._clock() - retention
            removed = 0
            while self._history and self._history[0].timestamp < cutoff:
                self._history.popleft()
                removed += 1
        if removed:
            logger.debug(f"Pruned {removed} outcomes from circuit history")
        return removed

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.prune_interval_s)
            self.prune_history()

    def start(self) -> None:
        """Start periodic history pruning on the running event loop."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop())

    async def shutdown(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        with self._lock:
            self._history.clear()
        logger.info("Circuit breaker shut down")

    # =========================================================================
    # STATUS
    # =========================================================================

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def trip_reason(self) -> Optional[TripReason]:
        return self._trip_reason

    def get_state(self) -> dict:
        """Snapshot for health endpoints and dashboards."""
        with self._lock:
            now = self._clock()
            recent = self._recent(self.config.velocity_window_s, now)
            return {
                "state": self._state.value,
                "trip_reason": self._trip_reason.value if self._trip_reason else None,
                "trip_timestamp": self._trip_timestamp,
                "error_rate": round(self._error_rate(now), 2),
                "velocity": len(recent),
                "half_open_successes": self._half_open_success_count,
                "metrics": {
                    "total_transactions": len(self._history),
                    "recent_transactions": len(recent),
                    "recent_failures": sum(1 for tx in recent if not tx.success),
                },
            }

    def __repr__(self) -> str:
        reason = self._trip_reason.value if self._trip_reason else "-"
        return (
            f"CircuitBreaker(state={self._state.value}, reason={reason}, "
            f"history={len(self._history)})"
        )
