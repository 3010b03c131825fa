#!/usr/bin/env python3
"""
Circuit Breaker Test Suite - tests/test_circuit_breaker.py

Run with: python -m pytest tests/test_circuit_breaker.py -v
"""

import sys
import unittest
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from config.settings import CircuitBreakerConfig
from relay_guard.circuit_breaker import (
    CircuitBreaker,
    CircuitState,
    TransactionOutcome,
    TripReason,
)
from relay_guard.treasury_manager import TreasuryHealth
from tests.fakes import FakeClock


def make_config(**overrides) -> CircuitBreakerConfig:
    values = dict(
        velocity_threshold=60,
        velocity_window_s=60.0,
        error_rate_threshold=30.0,
        error_window_s=60.0,
        error_rate_min_samples=1,
        recovery_time_s=300.0,
        min_balance=100.0,
        half_open_test_requests=5,
    )
    values.update(overrides)
    return CircuitBreakerConfig(**values)


class TestTripRules(unittest.TestCase):
    """Which rule trips, and in what order."""

    def setUp(self):
        self.clock = FakeClock()

    def _fill(self, breaker: CircuitBreaker, identity: str, count: int, success: bool = True):
        for _ in range(count):
            breaker._history.append(
                TransactionOutcome(timestamp=self.clock(), identity=identity, success=success)
            )

    # =========================================================================
    # CASE 1: Velocity is reported before suspicious activity
    # =========================================================================

    def test_velocity_reported_before_single_identity_flood(self):
        """
        51 of 60 outcomes from one identity with threshold 50.
        Both rules match; velocity must win.
        """
        breaker = CircuitBreaker(make_config(velocity_threshold=50), clock=self.clock)
        self._fill(breaker, "rFlooder", 51)
        for i in range(9):
            self._fill(breaker, f"rOther{i}", 1)

        self.assertEqual(breaker.evaluate_trip_conditions(), TripReason.HIGH_VELOCITY)
        self.assertEqual(breaker.check_trip_conditions(), TripReason.HIGH_VELOCITY)
        self.assertEqual(breaker.state, CircuitState.OPEN)
        self.assertEqual(breaker.trip_reason, TripReason.HIGH_VELOCITY)

    def test_same_history_is_suspicious_when_velocity_allows_it(self):
        breaker = CircuitBreaker(make_config(velocity_threshold=100), clock=self.clock)
        self._fill(breaker, "rFlooder", 51)
        for i in range(9):
            self._fill(breaker, f"rOther{i}", 1)

        self.assertEqual(breaker.evaluate_trip_conditions(), TripReason.SUSPICIOUS_ACTIVITY)

    def test_evaluation_is_deterministic_and_pure(self):
        breaker = CircuitBreaker(make_config(velocity_threshold=50), clock=self.clock)
        self._fill(breaker, "rFlooder", 60)

        reasons = {breaker.evaluate_trip_conditions() for _ in range(5)}
        self.assertEqual(reasons, {TripReason.HIGH_VELOCITY})
        self.assertEqual(breaker.state, CircuitState.CLOSED)

    def test_velocity_trips_on_record(self):
        breaker = CircuitBreaker(make_config(velocity_threshold=60), clock=self.clock)
        for i in range(60):
            breaker.record_transaction(True, f"rUser{i}")
        self.assertEqual(breaker.state, CircuitState.CLOSED)

        breaker.record_transaction(True, "rUser60")
        self.assertEqual(breaker.state, CircuitState.OPEN)
        self.assertEqual(breaker.trip_reason, TripReason.HIGH_VELOCITY)

    def test_old_outcomes_leave_the_velocity_window(self):
        breaker = CircuitBreaker(make_config(velocity_threshold=10), clock=self.clock)
        for i in range(10):
            breaker.record_transaction(True, f"rUser{i}")
        self.clock.advance(61)
        breaker.record_transaction(True, "rLate")

        self.assertEqual(breaker.state, CircuitState.CLOSED)

    # =========================================================================
    # CASE 2: Error rate
    # =========================================================================

    def test_single_failure_trips_with_default_min_samples(self):
        breaker = CircuitBreaker(make_config(), clock=self.clock)
        breaker.record_transaction(False, "rUser")

        self.assertEqual(breaker.state, CircuitState.OPEN)
        self.assertEqual(breaker.trip_reason, TripReason.HIGH_ERROR_RATE)

    def test_error_rate_must_exceed_threshold(self):
        breaker = CircuitBreaker(make_config(error_rate_min_samples=10), clock=self.clock)
        for i in range(7):
            breaker.record_transaction(True, f"rOk{i}")
        for i in range(3):
            breaker.record_transaction(False, f"rBad{i}")

        # 3/10 = 30%, not above 30%
        self.assertEqual(breaker.state, CircuitState.CLOSED)

        breaker.record_transaction(False, "rBad3")
        self.assertEqual(breaker.state, CircuitState.OPEN)
        self.assertEqual(breaker.trip_reason, TripReason.HIGH_ERROR_RATE)

    # =========================================================================
    # CASE 3: Suspicious activity
    # =========================================================================

    def test_ten_consecutive_failures_are_suspicious(self):
        breaker = CircuitBreaker(make_config(error_rate_threshold=100.0), clock=self.clock)
        for i in range(9):
            breaker.record_transaction(False, f"rUser{i}")
        self.assertEqual(breaker.state, CircuitState.CLOSED)

        breaker.record_transaction(False, "rUser9")
        self.assertEqual(breaker.state, CircuitState.OPEN)
        self.assertEqual(breaker.trip_reason, TripReason.SUSPICIOUS_ACTIVITY)

    def test_suspicious_needs_minimum_samples(self):
        breaker = CircuitBreaker(make_config(), clock=self.clock)
        for _ in range(9):
            breaker.record_transaction(True, "rSameUser")

        self.assertEqual(breaker.state, CircuitState.CLOSED)

        breaker.record_transaction(True, "rSameUser")
        self.assertEqual(breaker.trip_reason, TripReason.SUSPICIOUS_ACTIVITY)

    # =========================================================================
    # CASE 4: Treasury health
    # =========================================================================

    def test_critical_treasury_trips_low_balance(self):
        breaker = CircuitBreaker(make_config(), clock=self.clock)
        breaker.check_treasury_health(TreasuryHealth.CRITICAL, 5000)

        self.assertEqual(breaker.trip_reason, TripReason.LOW_BALANCE)

    def test_balance_under_floor_trips_low_balance(self):
        breaker = CircuitBreaker(make_config(min_balance=100.0), clock=self.clock)
        breaker.check_treasury_health(TreasuryHealth.HEALTHY, 99)

        self.assertTrue(breaker.is_open())

    def test_healthy_treasury_leaves_circuit_closed(self):
        breaker = CircuitBreaker(make_config(), clock=self.clock)
        breaker.check_treasury_health(TreasuryHealth.WARNING, 400)

        self.assertEqual(breaker.state, CircuitState.CLOSED)


class TestRecovery(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.breaker = CircuitBreaker(make_config(), clock=self.clock)
        self.events = []
        self.breaker.add_listener(lambda event: self.events.append(event.kind))

    def test_open_circuit_denies_with_retry_hint(self):
        self.breaker.trip(TripReason.HIGH_VELOCITY)
        self.clock.advance(100)

        decision = self.breaker.can_proceed()
        self.assertFalse(decision.allowed)
        self.assertEqual(decision.trip_reason, TripReason.HIGH_VELOCITY)
        self.assertEqual(decision.retry_after_ms, 200_000)

    def test_recovery_convergence(self):
        self.breaker.trip(TripReason.HIGH_VELOCITY)
        self.clock.advance(300)

        decision = self.breaker.can_proceed()
        self.assertTrue(decision.allowed)
        self.assertEqual(self.breaker.state, CircuitState.HALF_OPEN)

        for i in range(4):
            self.breaker.record_transaction(True, f"rProbe{i}")
        self.assertEqual(self.breaker.state, CircuitState.HALF_OPEN)

        self.breaker.record_transaction(True, "rProbe4")
        self.assertEqual(self.breaker.state, CircuitState.CLOSED)
        self.assertIsNone(self.breaker.trip_reason)
        self.assertEqual(self.events, ["trip", "half_open", "close"])

    def test_half_open_lets_probes_through_beyond_budget(self):
        self.breaker.trip(TripReason.HIGH_ERROR_RATE)
        self.clock.advance(300)

        allowed = [self.breaker.can_proceed().allowed for _ in range(10)]
        self.assertTrue(all(allowed))
        self.assertEqual(self.breaker.state, CircuitState.HALF_OPEN)

    def test_half_open_failure_does_not_reopen(self):
        self.breaker.trip(TripReason.HIGH_ERROR_RATE)
        self.clock.advance(300)
        self.breaker.can_proceed()

        self.breaker.record_transaction(False, "rProbe")
        self.assertEqual(self.breaker.state, CircuitState.HALF_OPEN)

    def test_trip_while_open_is_noop(self):
        self.breaker.trip(TripReason.HIGH_VELOCITY)
        self.breaker.trip(TripReason.LOW_BALANCE)

        self.assertEqual(self.breaker.trip_reason, TripReason.HIGH_VELOCITY)
        self.assertEqual(self.events, ["trip"])

    def test_manual_trip_and_reset(self):
        for i in range(3):
            self.breaker.record_transaction(True, f"rUser{i}")

        self.breaker.manual_trip("ops-admin", "incident drill")
        self.assertEqual(self.breaker.trip_reason, TripReason.MANUAL)
        self.assertFalse(self.breaker.can_proceed().allowed)

        self.breaker.manual_reset("ops-admin")
        state = self.breaker.get_state()
        self.assertEqual(state["state"], "CLOSED")
        self.assertEqual(state["metrics"]["total_transactions"], 0)
        self.assertEqual(self.events, ["trip", "manual_trip", "close", "manual_reset"])

    def test_listener_failure_does_not_block_transition(self):
        def broken(event):
            raise RuntimeError("sink down")

        self.breaker.add_listener(broken)
        self.breaker.trip(TripReason.MANUAL)

        self.assertTrue(self.breaker.is_open())
        self.assertEqual(self.events, ["trip"])


class TestHousekeeping(unittest.TestCase):

    def test_prune_drops_outcomes_past_retention(self):
        clock = FakeClock()
        breaker = CircuitBreaker(make_config(), clock=clock)
        breaker.record_transaction(True, "rOld")
        clock.advance(200)
        breaker.record_transaction(True, "rNew")

        self.assertEqual(breaker.prune_history(), 1)
        self.assertEqual(breaker.get_state()["metrics"]["total_transactions"], 1)

    def test_state_snapshot(self):
        clock = FakeClock()
        breaker = CircuitBreaker(make_config(error_rate_threshold=60.0), clock=clock)
        breaker.record_transaction(True, "rA")
        breaker.record_transaction(False, "rB")

        state = breaker.get_state()
        self.assertEqual(state["velocity"], 2)
        self.assertEqual(state["error_rate"], 50.0)
        self.assertEqual(state["metrics"]["recent_failures"], 1)


if __name__ == "__main__":
    unittest.main(verbosity=2)
