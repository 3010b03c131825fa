#!/usr/bin/env python3
"""
Pre-Flight Startup Checks for the Relayer

Verifies all safety conditions before admitting sponsored relays:
1. Required configuration (treasury address, staking token issuer)
2. No kill switch file present
3. Ledger reachable within latency budget
4. Treasury balance above the critical threshold
5. Circuit breaker closed and clean

Usage:
    from utils.startup_check import perform_safety_checks
    success, issues = await perform_safety_checks(ledger, breaker)
"""

import logging
import os
import time
from decimal import Decimal
from typing import List, Optional, Tuple

from config.settings import (
    StakeConfig,
    TreasuryConfig,
    stake_config,
    treasury_config,
)
from relay_guard.circuit_breaker import CircuitBreaker, CircuitState
from relay_guard.utils.ledger_client import LedgerClient, LedgerQueryError

logger = logging.getLogger(__name__)

KILL_SWITCH_FILE = "KILL_SWITCH.txt"
MAX_LEDGER_LATENCY_MS = 1500.0


def check_configuration(
    treasury: Optional[TreasuryConfig] = None,
    stake: Optional[StakeConfig] = None,
) -> Tuple[bool, str]:
    treasury = treasury or treasury_config
    stake = stake or stake_config

    missing = []
    if not treasury.address:
        missing.append("RELAYER_TREASURY_ADDRESS")
    if not stake.token_issuer:
        missing.append("VRTY_ISSUER_ADDRESS")

    if missing:
        return False, f"Missing configuration: {', '.join(missing)}"
    return True, "Treasury and staking token configured"


def check_kill_switch_file(path: str = KILL_SWITCH_FILE) -> Tuple[bool, str]:
    """Ensure KILL_SWITCH.txt does not exist at startup."""
    if os.path.exists(path):
        return False, f"{path} exists - remove it to start relaying"
    return True, "No kill switch file found"


async def check_ledger(
    ledger: LedgerClient,
    treasury: Optional[TreasuryConfig] = None,
) -> Tuple[bool, str, Optional[Decimal]]:
    """
    Read the treasury account and time the round trip.

    Returns:
        Tuple of (passed, message, balance)
    """
    treasury = treasury or treasury_config
    if not treasury.address:
        return False, "Cannot query ledger without a treasury address", None

    start = time.time()
    try:
        info = await ledger.get_account_info(treasury.address)
    except LedgerQueryError as e:
        return False, f"Ledger query failed: {e}", None
    latency_ms = (time.time() - start) * 1000

    if latency_ms > MAX_LEDGER_LATENCY_MS:
        return False, f"Ledger latency {latency_ms:.0f}ms > {MAX_LEDGER_LATENCY_MS:.0f}ms", info.balance
    return True, f"Ledger reachable at {ledger.endpoint} ({latency_ms:.0f}ms)", info.balance


def check_treasury_balance(
    balance: Optional[Decimal],
    treasury: Optional[TreasuryConfig] = None,
) -> Tuple[bool, str]:
    treasury = treasury or treasury_config
    if balance is None:
        return False, "Treasury balance unknown"

    critical = Decimal(str(treasury.critical_threshold))
    warning = Decimal(str(treasury.warning_threshold))
    if balance < critical:
        return False, f"Treasury balance {balance} XRP below critical threshold {critical} XRP"
    if balance < warning:
        return True, f"Treasury balance {balance} XRP (low - top up soon)"
    return True, f"Treasury balance {balance} XRP"


def check_circuit_breaker(breaker: Optional[CircuitBreaker]) -> Tuple[bool, str]:
    if breaker is None:
        return True, "Circuit breaker not yet created"

    state = breaker.get_state()
    if state["state"] != CircuitState.CLOSED.value:
        return False, f"Circuit breaker {state['state']} ({state['trip_reason']})"
    return True, "Circuit breaker closed"


def check_discord_webhook() -> dict:
    """Optional - the relayer runs without Discord alerts."""
    from utils.notifier import DiscordNotifier
    return DiscordNotifier().get_status()


async def perform_safety_checks(
    ledger: LedgerClient,
    breaker: Optional[CircuitBreaker] = None,
) -> Tuple[bool, List[str]]:
    """
    Run all pre-flight safety checks.

    Returns:
        Tuple of (all_passed, list_of_issues)
    """
    print("\n" + "=" * 60)
    print("🔍 PRE-FLIGHT SAFETY CHECKS")
    print("=" * 60 + "\n")

    issues: List[str] = []

    def report(passed: bool, msg: str):
        if passed:
            print(f"        ✅ {msg}")
        else:
            print(f"        ❌ {msg}")
            issues.append(msg)

    print("  [1/5] Checking configuration...")
    report(*check_configuration())

    print("  [2/5] Checking kill switch file...")
    report(*check_kill_switch_file())

    print("  [3/5] Checking ledger connectivity...")
    passed, msg, balance = await check_ledger(ledger)
    report(passed, msg)

    print("  [4/5] Checking treasury balance...")
    report(*check_treasury_balance(balance))

    print("  [5/5] Checking circuit breaker...")
    report(*check_circuit_breaker(breaker))

    print("\n  [Optional] Checking Discord webhook...")
    discord_status = check_discord_webhook()
    if discord_status["configured"]:
        print("        ✅ Discord alerts enabled")
    else:
        print("        ⚠️  Discord not configured (alerts disabled)")
        print("           Add DISCORD_WEBHOOK_URL to .env to enable")

    print("\n" + "-" * 60)

    all_passed = not issues
    if all_passed:
        print("✅ ALL CHECKS PASSED - Safe to start relaying")
    else:
        print("❌ CHECKS FAILED - Resolve issues before relaying")
        print(f"   Issues: {len(issues)}")
        for i, issue in enumerate(issues, 1):
            print(f"   {i}. {issue}")

    print("=" * 60 + "\n")

    return all_passed, issues
