#!/usr/bin/env python3
"""
Treasury Manager Test Suite - tests/test_treasury_manager.py

Proves reservations can never overcommit the treasury.

Run with: python -m pytest tests/test_treasury_manager.py -v
"""

import sys
import unittest
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from config.settings import TreasuryConfig
from relay_guard.treasury_manager import TreasuryHealth, TreasuryManager
from relay_guard.utils.ledger_client import LedgerQueryError
from tests.fakes import FakeClock, FakeLedger, ledger_down


def make_config(**overrides) -> TreasuryConfig:
    values = dict(
        address="rTreasury",
        critical_threshold=100.0,
        warning_threshold=500.0,
        healthy_threshold=1000.0,
        daily_fee_limit=10.0,
        max_fee_per_transaction=2.0,
        account_reserve=10.0,
    )
    values.update(overrides)
    return TreasuryConfig(**values)


class TreasuryTestCase(unittest.IsolatedAsyncioTestCase):
    balance = "1000"
    config_overrides: dict = {}

    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.ledger = FakeLedger(treasury_balance=self.balance)
        self.treasury = TreasuryManager(
            self.ledger, make_config(**self.config_overrides), clock=self.clock
        )
        self.events = []
        self.treasury.add_listener(lambda event: self.events.append(event))
        await self.treasury.refresh_balance()

    def kinds(self):
        return [event.kind for event in self.events]


class TestFeeCaps(TreasuryTestCase):

    # =========================================================================
    # CASE 1: Per-transaction cap
    # =========================================================================

    def test_fee_over_per_transaction_cap_rejected(self):
        result = self.treasury.reserve_fee("tx-big", 3, "rUser")

        self.assertFalse(result.success)
        self.assertEqual(result.error, "Fee exceeds per-transaction limit")
        self.assertEqual(self.treasury.reserved_balance, Decimal("0"))

    def test_fee_at_per_transaction_cap_accepted(self):
        result = self.treasury.reserve_fee("tx-max", 2, "rUser")

        self.assertTrue(result.success)
        self.assertEqual(result.fee, Decimal("2"))
        self.assertEqual(result.treasury_address, "rTreasury")

    # =========================================================================
    # CASE 2: Daily cap counts outstanding holds
    # =========================================================================

    def test_sixth_reservation_hits_daily_cap(self):
        self.treasury.config = make_config(daily_fee_limit=5.0)
        for i in range(5):
            self.assertTrue(self.treasury.reserve_fee(f"tx-{i}", 1, "rUser").success)

        sixth = self.treasury.reserve_fee("tx-5", 1, "rUser")
        self.assertFalse(sixth.success)
        self.assertEqual(sixth.error, "Daily fee limit reached")

    def test_confirmed_spend_counts_toward_daily_cap(self):
        self.treasury.config = make_config(daily_fee_limit=5.0)
        for i in range(5):
            self.treasury.reserve_fee(f"tx-{i}", 1, "rUser")
            self.treasury.confirm_fee_payment(f"tx-{i}", 1)

        self.assertEqual(self.treasury.get_metrics().daily_fee_spend, Decimal("5"))
        self.assertFalse(self.treasury.can_cover_fee(Decimal("0.000012")))

    async def test_headroom_below_buffer_rejected(self):
        self.ledger.treasury_balance = Decimal("21.5")
        await self.treasury.refresh_balance()

        self.assertEqual(self.treasury.safety_buffer, Decimal("20"))
        self.assertTrue(self.treasury.can_cover_fee(Decimal("1.5")))
        result = self.treasury.reserve_fee("tx-1", Decimal("1.6"), "rUser")
        self.assertFalse(result.success)
        self.assertEqual(result.error, "Insufficient treasury balance")

    # =========================================================================
    # CASE 3: Non-positive fees
    # =========================================================================

    def test_non_positive_fees_rejected(self):
        for fee in (Decimal("0"), Decimal("-1000"), Decimal("NaN")):
            result = self.treasury.reserve_fee(f"tx-{fee}", fee, "rUser")
            self.assertFalse(result.success)
            self.assertEqual(result.error, "Invalid fee")
            self.assertFalse(self.treasury.can_cover_fee(fee))

        self.assertEqual(self.treasury.reserved_balance, Decimal("0"))
        self.assertEqual(self.treasury.outstanding_reservations(), {})

    def test_negative_hold_cannot_unlock_overcommit(self):
        self.ledger.treasury_balance = Decimal("100")
        self.treasury.config = make_config(
            daily_fee_limit=1000.0,
            critical_threshold=0.0,
            warning_threshold=0.0,
            healthy_threshold=0.0,
        )
        self.treasury._current_balance = Decimal("100")

        self.assertFalse(self.treasury.reserve_fee("tx-neg", -1000, "rUser").success)
        for i in range(200):
            self.treasury.reserve_fee(f"tx-{i}", 2, "rUser")

        held = sum(self.treasury.outstanding_reservations().values())
        self.assertEqual(held, Decimal("80"))
        self.assertLessEqual(held, self.treasury.current_balance)

    def test_negative_settled_fee_books_reserved_estimate(self):
        self.treasury.reserve_fee("tx-1", Decimal("0.5"), "rUser")
        self.treasury.confirm_fee_payment("tx-1", Decimal("-3"))

        metrics = self.treasury.get_metrics()
        self.assertEqual(metrics.daily_fee_spend, Decimal("0.5"))
        self.assertEqual(metrics.total_fees_spent, Decimal("0.5"))
        self.assertEqual(self.treasury.reserved_balance, Decimal("0"))


class TestReservations(TreasuryTestCase):

    def test_release_is_idempotent(self):
        self.treasury.reserve_fee("tx-1", 1, "rUser")
        self.assertEqual(self.treasury.get_available_balance(), Decimal("999"))

        self.assertTrue(self.treasury.release_reservation("tx-1"))
        self.assertFalse(self.treasury.release_reservation("tx-1"))

        self.assertEqual(self.treasury.get_available_balance(), Decimal("1000"))
        self.assertEqual(self.treasury.reserved_balance, Decimal("0"))
        self.assertEqual(self.kinds().count("fee_released"), 1)

    def test_duplicate_transaction_id_rejected(self):
        self.assertTrue(self.treasury.reserve_fee("tx-1", 1, "rUser").success)
        duplicate = self.treasury.reserve_fee("tx-1", 1, "rUser")

        self.assertFalse(duplicate.success)
        self.assertEqual(self.treasury.reserved_balance, Decimal("1"))

    def test_confirm_books_spend_and_drops_hold(self):
        self.treasury.reserve_fee("tx-1", Decimal("0.5"), "rUser")
        self.treasury.confirm_fee_payment("tx-1", Decimal("0.4"))

        metrics = self.treasury.get_metrics()
        self.assertEqual(self.treasury.reserved_balance, Decimal("0"))
        self.assertEqual(metrics.total_fees_spent, Decimal("0.4"))
        self.assertEqual(metrics.total_transactions_relayed, 1)
        self.assertEqual(metrics.average_fee_per_transaction, Decimal("0.4"))

    def test_confirm_unknown_id_is_a_no_op(self):
        self.treasury.reserve_fee("tx-1", 1, "rUser")
        self.treasury.confirm_fee_payment("tx-ghost", Decimal("0.5"))

        metrics = self.treasury.get_metrics()
        self.assertEqual(self.treasury.reserved_balance, Decimal("1"))
        self.assertEqual(metrics.daily_fee_spend, Decimal("0"))
        self.assertEqual(metrics.total_transactions_relayed, 0)

    def test_second_confirm_is_not_counted_twice(self):
        self.treasury.reserve_fee("tx-1", 1, "rUser")
        self.treasury.confirm_fee_payment("tx-1", 1)
        self.treasury.confirm_fee_payment("tx-1", 1)

        metrics = self.treasury.get_metrics()
        self.assertEqual(metrics.total_transactions_relayed, 1)
        self.assertEqual(metrics.daily_fee_spend, Decimal("1"))
        self.assertEqual(self.kinds().count("fee_confirmed"), 1)

    def test_concurrent_reservations_never_overcommit(self):
        """
        Balance 100, buffer 20: exactly 80 one-unit holds fit no matter how
        the threads interleave.
        """
        self.ledger.treasury_balance = Decimal("100")
        self.treasury.config = make_config(
            daily_fee_limit=1000.0,
            critical_threshold=0.0,
            warning_threshold=0.0,
            healthy_threshold=0.0,
        )
        self.treasury._current_balance = Decimal("100")

        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(
                lambda i: self.treasury.reserve_fee(f"tx-{i}", 1, f"rUser{i % 7}"),
                range(200),
            ))

        self.assertEqual(sum(1 for r in results if r.success), 80)
        outstanding = self.treasury.outstanding_reservations()
        self.assertEqual(sum(outstanding.values()), Decimal("80"))
        self.assertLessEqual(sum(outstanding.values()), self.treasury.current_balance)

    def test_reservation_before_first_refresh_rejected(self):
        fresh = TreasuryManager(FakeLedger(), make_config(), clock=self.clock)
        result = fresh.reserve_fee("tx-1", 1, "rUser")

        self.assertFalse(result.success)
        self.assertEqual(result.error, "Treasury not initialized")


class TestBalanceAndHealth(TreasuryTestCase):

    async def test_refresh_failure_propagates_and_keeps_balance(self):
        self.ledger.error = ledger_down()

        with self.assertRaises(LedgerQueryError):
            await self.treasury.refresh_balance()
        self.assertEqual(self.treasury.current_balance, Decimal("1000"))

    async def test_refresh_keeps_reservations(self):
        self.treasury.reserve_fee("tx-1", 1, "rUser")
        self.ledger.treasury_balance = Decimal("900")
        await self.treasury.refresh_balance()

        self.assertEqual(self.treasury.reserved_balance, Decimal("1"))
        self.assertEqual(self.treasury.get_available_balance(), Decimal("899"))

    async def test_health_classification(self):
        cases = [
            ("1000", TreasuryHealth.HEALTHY),
            ("999", TreasuryHealth.DEGRADED),
            ("499", TreasuryHealth.WARNING),
            ("99", TreasuryHealth.CRITICAL),
        ]
        for balance, expected in cases:
            self.ledger.treasury_balance = Decimal(balance)
            await self.treasury.refresh_balance()
            self.assertEqual(self.treasury.get_health_status(), expected, balance)

    async def test_health_change_emits_event(self):
        self.ledger.treasury_balance = Decimal("450")
        await self.treasury.refresh_balance()

        changes = [e for e in self.events if e.kind == "health_changed"]
        self.assertEqual(len(changes), 1)
        self.assertEqual(changes[0].health, TreasuryHealth.WARNING)
        self.assertEqual(changes[0].details["previous"], "HEALTHY")

    async def test_initialize_requires_address(self):
        treasury = TreasuryManager(FakeLedger(), make_config(address=""), clock=self.clock)
        with self.assertRaises(ValueError):
            await treasury.initialize(start_monitoring=False)

    def test_config_rejects_inconsistent_fee_caps(self):
        with self.assertRaises(ValueError):
            make_config(daily_fee_limit=1.0, max_fee_per_transaction=2.0)
        with self.assertRaises(ValueError):
            make_config(max_fee_per_transaction=0.0)

    def test_daily_counter_resets_at_utc_midnight(self):
        self.clock.set_utc(2026, 3, 10, 23, 59, 0)
        self.treasury.check_daily_reset()
        self.treasury.reserve_fee("tx-1", 1, "rUser")
        self.treasury.confirm_fee_payment("tx-1", 1)

        self.clock.advance(30)
        self.assertFalse(self.treasury.check_daily_reset())
        self.assertEqual(self.treasury.get_metrics().daily_fee_spend, Decimal("1"))

        self.clock.advance(60)
        self.assertTrue(self.treasury.check_daily_reset())
        self.assertEqual(self.treasury.get_metrics().daily_fee_spend, Decimal("0"))
        self.assertEqual(self.treasury.get_metrics().total_fees_spent, Decimal("1"))

    def test_remaining_capacity(self):
        self.treasury.reserve_fee("tx-1", 1, "rUser")
        self.treasury.confirm_fee_payment("tx-1", 1)

        capacity = self.treasury.estimate_remaining_capacity()
        self.assertEqual(capacity.by_balance, 990)
        self.assertEqual(capacity.by_daily_limit, 9)
        self.assertEqual(capacity.effective, 9)

    def test_status_snapshot(self):
        self.treasury.reserve_fee("tx-1", Decimal("0.25"), "rUser")
        status = self.treasury.get_treasury_status()

        self.assertEqual(status["address"], "rTreasury")
        self.assertEqual(status["available_balance"], "999.75")
        self.assertEqual(status["outstanding_reservations"], 1)
        self.assertEqual(status["health"], "DEGRADED")


if __name__ == "__main__":
    unittest.main(verbosity=2)
