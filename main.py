"""
Relay Guard - Main Entry Point

Safety layer for a fee-sponsoring transaction relayer:
- CircuitBreaker halts all relays on velocity, error-rate, abuse or low balance
- TreasuryManager reserves each sponsored fee against the shared treasury
- StakeGuard maps staked collateral to an access tier
- RateLimiter enforces per-identity tiered quotas

Modes:
- check:  pre-flight safety checks against the configured ledger
- status: one-shot health snapshot of all guards
- shadow: simulated relay traffic through the real guards, nothing submitted
"""

import argparse
import asyncio
import json
import logging
import os
import random
import signal
import sys
from decimal import Decimal
from typing import List, Optional

from dotenv import load_dotenv

from config.settings import ledger_config, treasury_config
from relay_guard.admission import AdmissionController
from relay_guard.circuit_breaker import CircuitBreaker
from relay_guard.rate_limiter import RateLimiter
from relay_guard.stake_guard import StakeGuard
from relay_guard.treasury_manager import TreasuryManager
from relay_guard.utils.ledger_client import AccountInfo, LedgerClient, LedgerQueryError
from relay_guard.utils.stake_store import InMemoryStakeStore
from utils.startup_check import KILL_SWITCH_FILE

# Load environment variables
load_dotenv()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


class OfflineLedger:
    """
    Fixed balances for running shadow mode without a ledger connection.
    Same read interface as LedgerClient.
    """

    def __init__(self, treasury_balance: Decimal, stakes: dict):
        self.endpoint = "offline"
        self.treasury_balance = treasury_balance
        self.stakes = stakes

    async def get_account_info(self, address: str) -> AccountInfo:
        return AccountInfo(address=address, balance=self.treasury_balance)

    async def get_trustline_balance(self, address: str, currency: str, issuer: str) -> Decimal:
        return self.stakes.get(address, Decimal("0"))

    async def close(self):
        pass


def demo_identities(count: int) -> dict:
    """Identities spread across the tier table, plus one with no stake."""
    amounts = [Decimal("0"), Decimal("5"), Decimal("1500"), Decimal("12000"), Decimal("60000"), Decimal("250000")]
    return {f"rDemoIdentity{i:02d}": amounts[i % len(amounts)] for i in range(count)}


def build_controller(ledger) -> AdmissionController:
    breaker = CircuitBreaker()
    treasury = TreasuryManager(ledger)
    stake_guard = StakeGuard(ledger, InMemoryStakeStore())
    rate_limiter = RateLimiter()
    return AdmissionController(breaker, stake_guard, rate_limiter, treasury)


async def run_check() -> bool:
    from utils.startup_check import perform_safety_checks

    ledger = LedgerClient()
    try:
        success, issues = await perform_safety_checks(ledger)
    finally:
        await ledger.close()
    return success


async def run_status() -> bool:
    ledger = LedgerClient()
    controller = build_controller(ledger)
    try:
        await controller.treasury.initialize(start_monitoring=False)
        print(json.dumps(controller.get_health(), indent=2, default=str))
    finally:
        await ledger.close()
    return True


async def monitor_kill_switch(breaker: CircuitBreaker, check_interval: float = 1.0):
    """Trip the breaker while KILL_SWITCH.txt exists."""
    while True:
        if os.path.exists(KILL_SWITCH_FILE) and not breaker.is_open():
            logger.critical("🚨 KILL SWITCH FILE DETECTED!")
            breaker.manual_trip("kill-switch-file", f"{KILL_SWITCH_FILE} present")
        await asyncio.sleep(check_interval)


async def run_shadow_mode(iterations: int, identity_count: int, failure_rate: float,
                          interval: float, offline: bool) -> bool:
    """Drive simulated relay traffic through the guards - no transaction is submitted."""
    from relay_guard.shadow_submitter import ShadowSubmitter
    from utils.notifier import get_notifier

    stakes = demo_identities(identity_count)
    if offline:
        if not treasury_config.address:
            treasury_config.address = "rShadowTreasury"
        ledger = OfflineLedger(Decimal("5000"), stakes)
    else:
        ledger = LedgerClient()

    controller = build_controller(ledger)
    shadow = ShadowSubmitter(failure_rate=failure_rate)
    notifier = get_notifier()
    notifier.attach(controller.breaker, controller.treasury)

    try:
        await controller.start()
    except (ValueError, LedgerQueryError) as e:
        logger.error(f"❌ Failed to start guards: {e}")
        await ledger.close()
        return False

    await notifier.on_startup(mode="shadow")

    shutdown_event = asyncio.Event()

    def signal_handler(sig, frame):
        print("\n\n🛑 Shutdown signal received...")
        shutdown_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    kill_switch_task = asyncio.create_task(monitor_kill_switch(controller.breaker))
    identities: List[str] = list(stakes)
    fee = Decimal(str(treasury_config.default_fee_estimate))

    print("\n👻 Shadow Mode Active - relays are simulated")
    print(f"   Network: {ledger_config.network} ({ledger.endpoint})")
    print(f"   Relays logged to: {shadow.csv_file}")
    print("   Press Ctrl+C to stop and generate report\n")

    try:
        for iteration in range(1, iterations + 1):
            if shutdown_event.is_set():
                break

            identity = random.choice(identities)
            outcome = await controller.relay(identity, shadow, fee=fee)
            decision = outcome.decision
            if decision.allowed:
                logger.info(f"--- Relay {iteration}: {identity} {'ok' if outcome.success else outcome.error}")
            else:
                logger.info(
                    f"--- Relay {iteration}: {identity} rejected {decision.code.value} "
                    f"(retry in {decision.retry_after_ms}ms)"
                )

            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("Shadow loop cancelled")
    finally:
        kill_switch_task.cancel()
        shadow.print_report()

        health = controller.get_health()
        print("=" * 60)
        print("GUARD SUMMARY")
        print("=" * 60)
        print(f"  Status: {health['status']}")
        print(f"  Circuit: {health['circuit_breaker']['state']}")
        print(f"  Treasury: {health['treasury']['available_balance']} XRP available "
              f"({health['treasury']['health']})")
        print(f"  Admitted: {health['admissions']['admitted']}")
        print(f"  Rejected: {health['admissions']['rejected']}")
        print("=" * 60 + "\n")

        await notifier.on_shutdown(reason="Shadow session complete")
        await notifier.flush()
        await controller.shutdown()
        await ledger.close()

    return True


def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(
        description="Relay Guard - sponsored transaction safety layer"
    )
    parser.add_argument(
        "--mode",
        choices=["check", "status", "shadow"],
        default="check",
        help="Operation mode: check (pre-flight), status (health snapshot), shadow (simulated relays)"
    )
    parser.add_argument("--iterations", type=int, default=50, help="Shadow mode: relays to simulate")
    parser.add_argument("--identities", type=int, default=6, help="Shadow mode: distinct demo identities")
    parser.add_argument("--failure-rate", type=float, default=0.05, help="Shadow mode: simulated failure rate")
    parser.add_argument("--interval", type=float, default=0.5, help="Shadow mode: seconds between relays")
    parser.add_argument("--offline", action="store_true", help="Shadow mode: use fixed balances, no ledger")
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging"
    )

    args = parser.parse_args(argv)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    print("""
    ╔═══════════════════════════════════════════════════════════╗
    ║                                                           ║
    ║   🛡️  RELAY GUARD - SPONSORED TRANSACTION SAFETY          ║
    ║                                                           ║
    ║   CircuitBreaker  | TreasuryManager                       ║
    ║   StakeGuard      | RateLimiter                           ║
    ║                                                           ║
    ╚═══════════════════════════════════════════════════════════╝
    """)

    if args.mode == "check":
        success = asyncio.run(run_check())
    elif args.mode == "status":
        success = asyncio.run(run_status())
    else:
        print("\n👻 SHADOW MODE (Simulated Relays)")
        success = asyncio.run(run_shadow_mode(
            iterations=args.iterations,
            identity_count=args.identities,
            failure_rate=args.failure_rate,
            interval=args.interval,
            offline=args.offline,
        ))
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
