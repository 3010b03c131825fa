"""
Relay Guard Collaborators
"""
from .ledger_client import LedgerClient, LedgerQueryError, AccountInfo
from .stake_store import StakeStore, InMemoryStakeStore

__all__ = ["LedgerClient", "LedgerQueryError", "AccountInfo", "StakeStore", "InMemoryStakeStore"]
