"""
Ledger Query Client
Read-only JSON-RPC access to the XRP Ledger: account balances and trust lines
"""
import asyncio
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

import aiohttp
import structlog

from config.settings import LedgerConfig, ledger_config

log = structlog.get_logger()

DROPS_PER_XRP = Decimal("1000000")


class LedgerQueryError(Exception):
    """Raised when the ledger cannot answer a query."""

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.error_code = error_code


@dataclass
class AccountInfo:
    address: str
    balance: Decimal          # XRP
    owner_count: int = 0
    sequence: Optional[int] = None


def drops_to_xrp(drops) -> Decimal:
    return Decimal(str(drops)) / DROPS_PER_XRP


def xrp_to_drops(xrp) -> int:
    return int(Decimal(str(xrp)) * DROPS_PER_XRP)


class LedgerClient:
    """
    Thin async client over rippled's JSON-RPC interface.
    Only validated-ledger reads; submission lives elsewhere.
    """

    def __init__(self, config: Optional[LedgerConfig] = None):
        self.config = config or ledger_config
        self.endpoint = self.config.endpoint
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout_s)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    async def request(self, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """Issue one JSON-RPC call and return its `result` object."""
        session = await self._get_session()
        payload = {"method": method, "params": [params]}

        try:
            async with session.post(self.endpoint, json=payload) as resp:
                if resp.status != 200:
                    raise LedgerQueryError(
                        f"{method} failed: HTTP {resp.status}", error_code=str(resp.status)
                    )
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            log.error("ledger_request_failed", method=method, error=str(e))
            raise LedgerQueryError(f"{method} failed: {e}") from e

        result = data.get("result", {})
        if result.get("status") == "error" or "error" in result:
            error_code = result.get("error", "unknown")
            raise LedgerQueryError(
                f"{method} returned {error_code}: {result.get('error_message', '')}".strip(),
                error_code=error_code,
            )
        return result

    async def get_account_info(self, address: str) -> AccountInfo:
        """Validated XRP balance and owner count for an account."""
        result = await self.request(
            "account_info",
            {"account": address, "ledger_index": "validated"},
        )
        account_data = result["account_data"]
        info = AccountInfo(
            address=address,
            balance=drops_to_xrp(account_data["Balance"]),
            owner_count=int(account_data.get("OwnerCount", 0)),
            sequence=account_data.get("Sequence"),
        )
        log.debug("account_info", address=address, balance=str(info.balance))
        return info

    async def get_trustline_balance(self, address: str, currency: str, issuer: str) -> Decimal:
        """
        Balance of an issued token held by `address`.
        An account that does not exist yet holds nothing.
        """
        try:
            result = await self.request(
                "account_lines",
                {"account": address, "peer": issuer, "ledger_index": "validated"},
            )
        except LedgerQueryError as e:
            if e.error_code == "actNotFound":
                return Decimal("0")
            raise

        for line in result.get("lines", []):
            if line.get("currency") == currency:
                return Decimal(str(line.get("balance", "0")))
        return Decimal("0")
