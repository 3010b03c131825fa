#!/usr/bin/env python3
"""
Shadow Submitter - Paper Relaying

Stands in for the real ledger submitter in Shadow Mode: every admitted relay
is logged to CSV instead of being signed and submitted, so the guards can be
exercised against live balances without spending treasury funds.

Usage:
    python main.py --mode shadow
"""

import csv
import logging
import os
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

from relay_guard.admission import RelayTicket

logger = logging.getLogger(__name__)


@dataclass
class ShadowRelay:
    """One simulated submission."""
    timestamp: str
    transaction_id: str
    identity: str
    tier: str
    fee: Decimal
    priority: bool
    status: str = "tesSUCCESS"

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "transaction_id": self.transaction_id,
            "identity": self.identity,
            "tier": self.tier,
            "fee": str(self.fee),
            "priority": self.priority,
            "status": self.status,
        }


@dataclass
class ShadowStats:
    total_relays: int = 0
    succeeded: int = 0
    failed: int = 0
    fees_avoided: Decimal = Decimal("0")

    @property
    def success_rate(self) -> float:
        if self.total_relays == 0:
            return 0.0
        return (self.succeeded / self.total_relays) * 100


class ShadowSubmitter:
    """
    Paper submitter. Call it like the real one: `await submitter(ticket)`.

    `failure_rate` makes a fraction of submissions come back as
    tecNO_DST-style failures so the error-rate path gets traffic too.
    """

    CSV_COLUMNS = ["timestamp", "transaction_id", "identity", "tier", "fee", "priority", "status"]

    def __init__(self, csv_file: str = "logs/shadow_relays.csv", failure_rate: float = 0.0,
                 rng: Optional[random.Random] = None):
        self.csv_file = csv_file
        self.failure_rate = failure_rate
        self._rng = rng or random.Random()
        self.relays: List[ShadowRelay] = []
        self.stats = ShadowStats()
        self._ensure_log_dir()
        self._init_csv()

        logger.info(f"👻 ShadowSubmitter initialized - logging relays to {self.csv_file}")

    def _ensure_log_dir(self):
        Path(self.csv_file).parent.mkdir(parents=True, exist_ok=True)

    def _init_csv(self):
        if not os.path.exists(self.csv_file):
            with open(self.csv_file, "w", newline="") as f:
                writer = csv.DictWriter(f, fieldnames=self.CSV_COLUMNS)
                writer.writeheader()

    def _append_to_csv(self, relay: ShadowRelay):
        with open(self.csv_file, "a", newline="") as f:
            writer = csv.DictWriter(f, fieldnames=self.CSV_COLUMNS)
            writer.writerow(relay.to_dict())

    async def __call__(self, ticket: RelayTicket) -> Dict[str, Any]:
        return await self.submit(ticket)

    async def submit(self, ticket: RelayTicket) -> Dict[str, Any]:
        """Pretend to sign and submit; the full reserved fee is reported as settled."""
        failed = self.failure_rate > 0 and self._rng.random() < self.failure_rate
        relay = ShadowRelay(
            timestamp=datetime.now(timezone.utc).isoformat(),
            transaction_id=ticket.transaction_id,
            identity=ticket.identity,
            tier=ticket.tier.value,
            fee=ticket.fee,
            priority=ticket.priority,
            status="tecNO_DST" if failed else "tesSUCCESS",
        )
        self._append_to_csv(relay)
        self.relays.append(relay)

        self.stats.total_relays += 1
        if failed:
            self.stats.failed += 1
            logger.info(f"📉 SHADOW RELAY FAILED: {ticket.transaction_id} for {ticket.identity}")
            return {"success": False, "error": relay.status, "is_shadow": True}

        self.stats.succeeded += 1
        self.stats.fees_avoided += ticket.fee
        logger.info(
            f"📈 SHADOW RELAY: {ticket.transaction_id} for {ticket.identity} "
            f"({ticket.tier.value}) fee {ticket.fee} XRP"
        )
        return {
            "success": True,
            "fee": ticket.fee,
            "hash": f"shadow_{len(self.relays)}",
            "is_shadow": True,
        }

    def get_stats(self) -> ShadowStats:
        return self.stats

    def print_report(self):
        """Print the session summary and save it next to the CSV."""
        print("\n" + "=" * 60)
        print("👻 SHADOW MODE - RELAY REPORT")
        print("=" * 60)
        print(f"\n📊 RELAYS")
        print(f"   Total Relays:      {self.stats.total_relays}")
        print(f"   Succeeded:         {self.stats.succeeded}")
        print(f"   Failed:            {self.stats.failed}")
        print(f"   Success Rate:      {self.stats.success_rate:.1f}%")
        print(f"\n💰 FEES")
        print(f"   Fees Avoided:      {self.stats.fees_avoided} XRP")
        print("=" * 60 + "\n")

        report_file = str(Path(self.csv_file).parent / "shadow_report.txt")
        with open(report_file, "w") as f:
            f.write("SHADOW MODE - RELAY REPORT\n")
            f.write("=" * 40 + "\n")
            f.write(f"Total Relays: {self.stats.total_relays}\n")
            f.write(f"Succeeded: {self.stats.succeeded}\n")
            f.write(f"Failed: {self.stats.failed}\n")
            f.write(f"Success Rate: {self.stats.success_rate:.1f}%\n")
            f.write(f"Fees Avoided: {self.stats.fees_avoided} XRP\n")

        logger.info(f"Report saved to {report_file}")
