"""
Test doubles shared by the guard test suites.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Optional

from relay_guard.utils.ledger_client import AccountInfo, LedgerQueryError

# 2026-03-10 12:00:00 UTC
NOON = datetime(2026, 3, 10, 12, 0, 0, tzinfo=timezone.utc).timestamp()


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = NOON):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def set_utc(self, *args) -> None:
        self.now = datetime(*args, tzinfo=timezone.utc).timestamp()


class FakeLedger:
    """In-memory ledger answering the two queries the guards make."""

    def __init__(self, treasury_balance="1000", stakes: Optional[Dict[str, str]] = None):
        self.endpoint = "fake://ledger"
        self.treasury_balance = Decimal(str(treasury_balance))
        self.stakes = {k: Decimal(str(v)) for k, v in (stakes or {}).items()}
        self.error: Optional[Exception] = None
        self.account_info_calls = 0
        self.trustline_calls = 0

    async def get_account_info(self, address: str) -> AccountInfo:
        self.account_info_calls += 1
        if self.error:
            raise self.error
        return AccountInfo(address=address, balance=self.treasury_balance)

    async def get_trustline_balance(self, address: str, currency: str, issuer: str) -> Decimal:
        self.trustline_calls += 1
        if self.error:
            raise self.error
        return self.stakes.get(address, Decimal("0"))

    async def close(self):
        pass


def ledger_down() -> LedgerQueryError:
    return LedgerQueryError("account_info failed: Connection refused")
