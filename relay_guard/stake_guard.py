"""
Stake Guard - Anti-Sybil Eligibility

Maps an identity to a tier from its staked collateral:
trust-line balance of the staking token + stake held in the external store.

Fails closed: if either lookup errors, the identity is ineligible for this
request (tier NONE) and nothing is cached.
"""

import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Dict, Optional

from config.settings import StakeConfig, stake_config
from relay_guard.tiers import (
    StakeTier,
    TierBenefits,
    TIER_BENEFITS,
    build_thresholds,
    next_tier,
    tier_for_stake,
)
from relay_guard.utils.ledger_client import LedgerClient
from relay_guard.utils.stake_store import StakeStore

logger = logging.getLogger(__name__)


@dataclass
class StakeVerificationResult:
    eligible: bool
    identity: str
    tier: StakeTier
    stake_amount: Decimal
    minimum_required: Decimal
    additional_needed: Decimal
    benefits: TierBenefits
    verified_at: float
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "eligible": self.eligible,
            "identity": self.identity,
            "tier": self.tier.value,
            "stake_amount": str(self.stake_amount),
            "minimum_required": str(self.minimum_required),
            "additional_needed": str(self.additional_needed),
            "benefits": self.benefits.to_dict(),
            "verified_at": self.verified_at,
            "reason": self.reason,
        }


@dataclass
class TierCacheEntry:
    result: StakeVerificationResult
    verified_at: float


@dataclass
class NextTierInfo:
    next_tier: StakeTier
    stake_required: Decimal
    benefits: TierBenefits


class StakeGuard:
    """
    Eligibility and tier lookup with a short TTL cache.

    Only a cache miss performs I/O. A known collateral change should be
    followed by clear_cache(identity).
    """

    def __init__(
        self,
        ledger: LedgerClient,
        store: StakeStore,
        config: Optional[StakeConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or stake_config
        self._ledger = ledger
        self._store = store
        self._clock = clock

        self._thresholds = build_thresholds(self.config.tier_thresholds)
        self._minimum_stake = Decimal(str(self.config.minimum_stake_for_access))
        self._cache: Dict[str, TierCacheEntry] = {}

        logger.info(
            f"🛡️ StakeGuard initialized: {self.config.token_currency} issued by "
            f"{self.config.token_issuer}, access floor {self._minimum_stake}, "
            f"cache {self.config.cache_ttl_s:.0f}s"
        )

    # =========================================================================
    # ELIGIBILITY
    # =========================================================================

    async def verify_eligibility(self, identity: str) -> StakeVerificationResult:
        cached = self._cache.get(identity)
        if cached and self._clock() - cached.verified_at < self.config.cache_ttl_s:
            return cached.result

        try:
            ledger_stake = await self._ledger.get_trustline_balance(
                identity, self.config.token_currency, self.config.token_issuer
            )
            store_stake = await self._store.get_staked_amount(identity)
        except Exception as e:
            logger.error(f"❌ Stake verification failed for {identity}: {e}")
            return self._ineligible(identity, "Unable to verify stake - please try again")

        total = Decimal(str(ledger_stake)) + Decimal(str(store_stake))
        tier = self.tier_of(total)
        eligible = tier != StakeTier.NONE or total >= self._minimum_stake

        now = self._clock()
        result = StakeVerificationResult(
            eligible=eligible,
            identity=identity,
            tier=tier,
            stake_amount=total,
            minimum_required=self._minimum_stake,
            additional_needed=max(Decimal("0"), self._minimum_stake - total),
            benefits=TIER_BENEFITS[tier],
            verified_at=now,
            reason=None if eligible else (
                f"Minimum stake of {self._minimum_stake} {self.config.token_currency} required"
            ),
        )
        self._cache[identity] = TierCacheEntry(result=result, verified_at=now)

        logger.debug(
            f"Stake verified: {identity} stake={total} tier={tier.value} eligible={eligible}"
        )
        return result

    def _ineligible(self, identity: str, reason: str) -> StakeVerificationResult:
        return StakeVerificationResult(
            eligible=False,
            identity=identity,
            tier=StakeTier.NONE,
            stake_amount=Decimal("0"),
            minimum_required=self._minimum_stake,
            additional_needed=self._minimum_stake,
            benefits=TIER_BENEFITS[StakeTier.NONE],
            verified_at=self._clock(),
            reason=reason,
        )

    def tier_of(self, amount) -> StakeTier:
        return tier_for_stake(Decimal(str(amount)), self._thresholds)

    # =========================================================================
    # BLACKLIST
    # =========================================================================

    async def is_blacklisted(self, identity: str) -> bool:
        """Veto check. A store failure counts as blacklisted."""
        try:
            return await self._store.is_blacklisted(identity)
        except Exception as e:
            logger.error(f"❌ Blacklist lookup failed for {identity}, denying: {e}")
            return True

    async def add_to_blacklist(self, identity: str, reason: str, added_by: str) -> None:
        self._cache.pop(identity, None)
        await self._store.add_to_blacklist(identity, reason, added_by)
        logger.warning(f"🚫 {identity} blacklisted by {added_by}: {reason}")

    async def remove_from_blacklist(self, identity: str) -> bool:
        removed = await self._store.remove_from_blacklist(identity)
        logger.info(f"{identity} removed from blacklist")
        return removed

    # =========================================================================
    # TIER TABLES
    # =========================================================================

    def get_next_tier_info(self, tier: StakeTier) -> Optional[NextTierInfo]:
        upgrade = next_tier(tier)
        if upgrade is None:
            return None
        return NextTierInfo(
            next_tier=upgrade,
            stake_required=self._thresholds[upgrade],
            benefits=TIER_BENEFITS[upgrade],
        )

    def get_stake_thresholds(self) -> Dict[StakeTier, Decimal]:
        return dict(self._thresholds)

    def get_tier_benefits(self) -> Dict[StakeTier, TierBenefits]:
        return dict(TIER_BENEFITS)

    def clear_cache(self, identity: Optional[str] = None) -> None:
        if identity:
            self._cache.pop(identity, None)
        else:
            self._cache.clear()

    def get_status(self) -> dict:
        return {
            "cached_identities": len(self._cache),
            "cache_ttl_s": self.config.cache_ttl_s,
            "minimum_stake_for_access": str(self._minimum_stake),
            "thresholds": {tier.value: str(amount) for tier, amount in self._thresholds.items()},
        }
