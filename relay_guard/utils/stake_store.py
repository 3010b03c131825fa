"""
Stake Store
Persistent-store collaborator for blacklist entries and escrow-held stake
"""
import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional

import structlog

log = structlog.get_logger()


@dataclass
class BlacklistEntry:
    identity: str
    reason: str
    added_by: str
    added_at: float


class StakeStore(ABC):
    """What StakeGuard needs from the external store."""

    @abstractmethod
    async def get_staked_amount(self, identity: str) -> Decimal:
        """Stake held outside the identity's own trust line (e.g. in escrow)."""

    @abstractmethod
    async def is_blacklisted(self, identity: str) -> bool:
        pass

    @abstractmethod
    async def add_to_blacklist(self, identity: str, reason: str, added_by: str) -> None:
        pass

    @abstractmethod
    async def remove_from_blacklist(self, identity: str) -> bool:
        pass


class InMemoryStakeStore(StakeStore):
    """
    Process-local store. Good for a single relayer instance and for tests;
    entries are lost on restart.
    """

    def __init__(self):
        self._stakes: Dict[str, Decimal] = {}
        self._blacklist: Dict[str, BlacklistEntry] = {}
        self._lock = asyncio.Lock()

    async def get_staked_amount(self, identity: str) -> Decimal:
        return self._stakes.get(identity, Decimal("0"))

    async def set_staked_amount(self, identity: str, amount) -> None:
        async with self._lock:
            self._stakes[identity] = Decimal(str(amount))
        log.info("staked_amount_set", identity=identity, amount=str(amount))

    async def is_blacklisted(self, identity: str) -> bool:
        return identity in self._blacklist

    async def add_to_blacklist(self, identity: str, reason: str, added_by: str) -> None:
        async with self._lock:
            self._blacklist[identity] = BlacklistEntry(
                identity=identity,
                reason=reason,
                added_by=added_by,
                added_at=time.time(),
            )
        log.info("blacklist_added", identity=identity, reason=reason, added_by=added_by)

    async def remove_from_blacklist(self, identity: str) -> bool:
        async with self._lock:
            entry = self._blacklist.pop(identity, None)
        log.info("blacklist_removed", identity=identity, existed=entry is not None)
        return entry is not None

    def get_blacklist_entry(self, identity: str) -> Optional[BlacklistEntry]:
        return self._blacklist.get(identity)
