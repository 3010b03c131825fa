"""
Treasury Manager - Fee Sponsorship Accounting

Tracks the relayer treasury and decides whether it can sponsor another fee.

Enforces:
- Daily Fee Cap: confirmed spend + outstanding holds + fee <= DAILY_FEE_LIMIT
- Per-Transaction Cap: fee <= MAX_FEE_PER_TRANSACTION
- Safety Buffer: available - fee >= 2x the network account reserve

Reservations are provisional holds. The on-ledger balance only moves on the
next refresh after the sponsored transaction settles.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_FLOOR
from enum import Enum
from typing import Callable, Dict, List, Optional

from config.settings import TreasuryConfig, treasury_config
from relay_guard.utils.ledger_client import LedgerClient, LedgerQueryError

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class TreasuryHealth(Enum):
    """Health classification of available balance."""
    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


@dataclass
class TreasuryMetrics:
    total_fees_spent: Decimal = ZERO
    total_transactions_relayed: int = 0
    average_fee_per_transaction: Decimal = ZERO
    daily_fee_spend: Decimal = ZERO

    def to_dict(self) -> dict:
        return {
            "total_fees_spent": str(self.total_fees_spent),
            "total_transactions_relayed": self.total_transactions_relayed,
            "average_fee_per_transaction": str(self.average_fee_per_transaction),
            "daily_fee_spend": str(self.daily_fee_spend),
        }


@dataclass
class FeeReservationResult:
    success: bool
    transaction_id: str
    fee: Optional[Decimal] = None
    treasury_address: Optional[str] = None
    error: Optional[str] = None


@dataclass
class CapacityEstimate:
    by_balance: int
    by_daily_limit: int
    effective: int


@dataclass
class TreasuryEvent:
    """health_changed | critical | warning | fee_reserved | fee_confirmed | fee_released"""
    kind: str
    timestamp: float
    health: TreasuryHealth
    balance: Decimal
    available: Decimal
    details: Dict[str, object] = field(default_factory=dict)


TreasuryListener = Callable[[TreasuryEvent], None]


def to_amount(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


class TreasuryManager:
    """
    Arbitrates fee reservation against one shared treasury balance.

    Reservation, confirmation and release serialize on a single lock so two
    requests can never both pass the headroom check for the same funds.
    Balance refresh only replaces `current_balance`, never the holds.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        config: Optional[TreasuryConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or treasury_config
        self._ledger = ledger
        self._clock = clock

        self.address: str = self.config.address
        self._current_balance: Decimal = ZERO
        self._reserved_balance: Decimal = ZERO
        self._reservations: Dict[str, Decimal] = {}
        self._metrics = TreasuryMetrics()
        self._daily_reset_date = self._utc_date()
        self._balance_known = False
        self._last_refresh: Optional[float] = None
        self._last_health: Optional[TreasuryHealth] = None

        self._lock = threading.Lock()
        self._listeners: List[TreasuryListener] = []
        self._monitor_task: Optional[asyncio.Task] = None

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def initialize(self, start_monitoring: bool = True) -> None:
        """Fetch the first balance and start periodic refresh."""
        if not self.address:
            raise ValueError("RELAYER_TREASURY_ADDRESS is not configured")

        await self.refresh_balance()
        if start_monitoring:
            self.start_monitoring()

        logger.info(
            f"🏦 TreasuryManager initialized: {self.address} "
            f"balance={self._current_balance} XRP health={self.get_health_status().value}"
        )

    def start_monitoring(self) -> None:
        if self._monitor_task is None or self._monitor_task.done():
            self._monitor_task = asyncio.get_running_loop().create_task(self._monitor_loop())

    async def _monitor_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.refresh_interval_s)
            try:
                await self.refresh_balance()
            except LedgerQueryError as e:
                logger.error(f"❌ Balance monitoring error: {e}")
                continue

            health = self.get_health_status()
            if health == TreasuryHealth.CRITICAL:
                self._emit("critical", message="Treasury balance critically low")
            elif health == TreasuryHealth.WARNING:
                self._emit("warning", message="Treasury balance low")

    async def shutdown(self) -> None:
        if self._monitor_task is not None:
            self._monitor_task.cancel()
            try:
                await self._monitor_task
            except asyncio.CancelledError:
                pass
            self._monitor_task = None

        logger.info(
            f"Shutting down treasury manager: balance={self._current_balance} XRP, "
            f"fees spent={self._metrics.total_fees_spent}, "
            f"relayed={self._metrics.total_transactions_relayed}"
        )

    # =========================================================================
    # OBSERVERS
    # =========================================================================

    def add_listener(self, listener: TreasuryListener) -> None:
        self._listeners.append(listener)

    def _emit(self, kind: str, **details) -> None:
        event = TreasuryEvent(
            kind=kind,
            timestamp=self._clock(),
            health=self.get_health_status(),
            balance=self._current_balance,
            available=self.get_available_balance(),
            details=details,
        )
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(f"Treasury listener failed on '{kind}' event")

    def _check_health_transition(self) -> None:
        health = self.get_health_status()
        previous = self._last_health
        self._last_health = health
        if previous is not None and health != previous:
            log = logger.warning if health != TreasuryHealth.HEALTHY else logger.info
            log(f"🏦 Treasury health {previous.value} -> {health.value} "
                f"(available {self.get_available_balance()} XRP)")
            self._emit("health_changed", previous=previous.value)

    # =========================================================================
    # BALANCE
    # =========================================================================

    async def refresh_balance(self) -> Decimal:
        """
        Re-read the treasury balance from the ledger.

        Raises:
            LedgerQueryError: the ledger could not be reached. No balance is guessed.
        """
        if not self.address:
            raise ValueError("RELAYER_TREASURY_ADDRESS is not configured")

        try:
            info = await self._ledger.get_account_info(self.address)
        except LedgerQueryError as e:
            logger.error(f"❌ Failed to refresh treasury balance for {self.address}: {e}")
            raise

        with self._lock:
            self._current_balance = info.balance
            self._balance_known = True
            self._last_refresh = self._clock()
            self._check_daily_reset_locked()

        logger.debug(
            f"Treasury balance refreshed: {info.balance} XRP "
            f"(owner_count={info.owner_count}, reserved={self._reserved_balance})"
        )
        self._check_health_transition()
        return info.balance

    def check_daily_reset(self) -> bool:
        """Zero the daily spend counter on the first call of a new UTC day."""
        with self._lock:
            return self._check_daily_reset_locked()

    def _check_daily_reset_locked(self) -> bool:
        today = self._utc_date()
        if today == self._daily_reset_date:
            return False
        logger.info(
            f"📊 Resetting daily fee counter. Previous day spend: "
            f"{self._metrics.daily_fee_spend} XRP"
        )
        self._metrics.daily_fee_spend = ZERO
        self._daily_reset_date = today
        return True

    def _utc_date(self) -> str:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc).date().isoformat()

    def get_available_balance(self) -> Decimal:
        return self._current_balance - self._reserved_balance

    def get_health_status(self) -> TreasuryHealth:
        available = self.get_available_balance()
        if available < Decimal(str(self.config.critical_threshold)):
            return TreasuryHealth.CRITICAL
        if available < Decimal(str(self.config.warning_threshold)):
            return TreasuryHealth.WARNING
        if available < Decimal(str(self.config.healthy_threshold)):
            return TreasuryHealth.DEGRADED
        return TreasuryHealth.HEALTHY

    # =========================================================================
    # FEE GATING
    # =========================================================================

    @property
    def safety_buffer(self) -> Decimal:
        return Decimal(str(self.config.account_reserve)) * 2

    def _rejection_reason(self, fee: Decimal) -> Optional[str]:
        """All three checks are independent; the first failing one is reported."""
        self._check_daily_reset_locked()

        if not fee.is_finite() or fee <= ZERO:
            logger.warning(f"⛔ Invalid fee amount: {fee}")
            return "Invalid fee"

        daily_limit = Decimal(str(self.config.daily_fee_limit))
        committed = self._metrics.daily_fee_spend + self._reserved_balance
        if committed + fee > daily_limit:
            logger.warning(
                f"⛔ Daily fee limit reached: {committed} committed + {fee} > {daily_limit} XRP"
            )
            return "Daily fee limit reached"

        max_per_tx = Decimal(str(self.config.max_fee_per_transaction))
        if fee > max_per_tx:
            logger.warning(f"⛔ Fee {fee} XRP exceeds per-transaction limit {max_per_tx} XRP")
            return "Fee exceeds per-transaction limit"

        available = self._current_balance - self._reserved_balance
        if available - fee < self.safety_buffer:
            logger.warning(
                f"⛔ Insufficient treasury headroom: available {available} - fee {fee} "
                f"< buffer {self.safety_buffer} XRP"
            )
            return "Insufficient treasury balance"

        return None

    def can_cover_fee(self, fee) -> bool:
        fee = to_amount(fee)
        with self._lock:
            return self._rejection_reason(fee) is None

    def reserve_fee(self, transaction_id: str, fee, identity: str) -> FeeReservationResult:
        """
        Place a provisional hold for `fee`. Check and hold happen under one lock.
        """
        fee = to_amount(fee)

        with self._lock:
            if not self._balance_known:
                return FeeReservationResult(
                    success=False,
                    transaction_id=transaction_id,
                    error="Treasury not initialized",
                )
            if transaction_id in self._reservations:
                return FeeReservationResult(
                    success=False,
                    transaction_id=transaction_id,
                    error="Duplicate transaction id",
                )

            reason = self._rejection_reason(fee)
            if reason is not None:
                return FeeReservationResult(
                    success=False,
                    transaction_id=transaction_id,
                    error=reason,
                )

            self._reservations[transaction_id] = fee
            self._reserved_balance += fee
            reserved = self._reserved_balance

        logger.info(
            f"🔒 Fee reserved: {transaction_id} {fee} XRP for {identity} "
            f"(balance={self._current_balance}, reserved={reserved})"
        )
        self._emit("fee_reserved", transaction_id=transaction_id, fee=str(fee), identity=identity)
        self._check_health_transition()

        return FeeReservationResult(
            success=True,
            transaction_id=transaction_id,
            fee=fee,
            treasury_address=self.address,
        )

    def confirm_fee_payment(self, transaction_id: str, actual_fee) -> None:
        """
        Book the settled fee and drop its hold.

        Unknown or already-settled ids are a no-op. A negative settled fee
        books the held estimate instead.
        """
        actual_fee = to_amount(actual_fee)

        with self._lock:
            held = self._reservations.pop(transaction_id, None)
            if held is None:
                logger.warning(f"Fee confirmed for unknown reservation {transaction_id}, ignoring")
                return

            self._reserved_balance = max(ZERO, self._reserved_balance - held)
            if not actual_fee.is_finite() or actual_fee < ZERO:
                logger.warning(
                    f"Negative fee {actual_fee} confirmed for {transaction_id}, booking reserved {held}"
                )
                actual_fee = held

            self._check_daily_reset_locked()
            metrics = self._metrics
            metrics.total_fees_spent += actual_fee
            metrics.total_transactions_relayed += 1
            metrics.average_fee_per_transaction = (
                metrics.total_fees_spent / metrics.total_transactions_relayed
            )
            metrics.daily_fee_spend += actual_fee

        logger.info(
            f"💸 Fee payment confirmed: {transaction_id} {actual_fee} XRP "
            f"(total={self._metrics.total_fees_spent}, daily={self._metrics.daily_fee_spend})"
        )
        self._emit("fee_confirmed", transaction_id=transaction_id, fee=str(actual_fee))
        self._check_health_transition()

    def release_reservation(self, transaction_id: str) -> bool:
        """Drop a hold without booking spend. Releasing twice is a no-op."""
        with self._lock:
            held = self._reservations.pop(transaction_id, None)
            if held is not None:
                self._reserved_balance = max(ZERO, self._reserved_balance - held)

        if held is None:
            logger.debug(f"No reservation to release for {transaction_id}")
            return False

        logger.info(f"🔓 Fee reservation released: {transaction_id} ({held} XRP)")
        self._emit("fee_released", transaction_id=transaction_id, fee=str(held))
        self._check_health_transition()
        return True

    # =========================================================================
    # STATUS & METRICS
    # =========================================================================

    @property
    def current_balance(self) -> Decimal:
        return self._current_balance

    @property
    def reserved_balance(self) -> Decimal:
        return self._reserved_balance

    def outstanding_reservations(self) -> Dict[str, Decimal]:
        with self._lock:
            return dict(self._reservations)

    def get_metrics(self) -> TreasuryMetrics:
        with self._lock:
            m = self._metrics
            return TreasuryMetrics(
                total_fees_spent=m.total_fees_spent,
                total_transactions_relayed=m.total_transactions_relayed,
                average_fee_per_transaction=m.average_fee_per_transaction,
                daily_fee_spend=m.daily_fee_spend,
            )

    def estimate_remaining_capacity(self) -> CapacityEstimate:
        """How many more average-sized fees the balance and the daily cap allow."""
        with self._lock:
            avg_fee = self._metrics.average_fee_per_transaction
            daily_spend = self._metrics.daily_fee_spend
            available = (
                self._current_balance
                - self._reserved_balance
                - Decimal(str(self.config.account_reserve))
            )
        if avg_fee <= 0:
            avg_fee = Decimal(str(self.config.default_fee_estimate))

        daily_remaining = Decimal(str(self.config.daily_fee_limit)) - daily_spend
        by_balance = max(0, int((available / avg_fee).to_integral_value(rounding=ROUND_FLOOR)))
        by_daily = max(0, int((daily_remaining / avg_fee).to_integral_value(rounding=ROUND_FLOOR)))
        return CapacityEstimate(
            by_balance=by_balance,
            by_daily_limit=by_daily,
            effective=min(by_balance, by_daily),
        )

    def get_treasury_status(self) -> dict:
        available = self.get_available_balance()
        return {
            "address": self.address,
            "balance": str(self._current_balance),
            "reserved_balance": str(self._reserved_balance),
            "available_balance": str(available),
            "health": self.get_health_status().value,
            "outstanding_reservations": len(self._reservations),
            "metrics": self.get_metrics().to_dict(),
            "last_updated": self._last_refresh,
        }

    def __repr__(self) -> str:
        return (
            f"TreasuryManager(balance={self._current_balance}, "
            f"reserved={self._reserved_balance}, "
            f"health={self.get_health_status().value})"
        )
