"""
Staking Tiers

Collateral-based eligibility classes. Tier is a pure, monotonic function of
staked amount; each tier unlocks a larger quota than the one below it.
"""

from dataclasses import dataclass, asdict
from decimal import Decimal
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple

# Sentinel for "no limit" in quota fields
UNLIMITED = -1


class StakeTier(Enum):
    """Staking tiers, declared lowest first."""
    NONE = "NONE"
    EXPLORER = "EXPLORER"
    NAVIGATOR = "NAVIGATOR"
    CAPTAIN = "CAPTAIN"
    ADMIRAL = "ADMIRAL"
    COMMODORE = "COMMODORE"

    @property
    def rank(self) -> int:
        return TIER_ORDER.index(self)

    def __lt__(self, other: "StakeTier") -> bool:
        if not isinstance(other, StakeTier):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: "StakeTier") -> bool:
        if not isinstance(other, StakeTier):
            return NotImplemented
        return self.rank <= other.rank

    @classmethod
    def parse(cls, value) -> "StakeTier":
        if isinstance(value, cls):
            return value
        return cls(str(value).upper())


TIER_ORDER: Tuple[StakeTier, ...] = (
    StakeTier.NONE,
    StakeTier.EXPLORER,
    StakeTier.NAVIGATOR,
    StakeTier.CAPTAIN,
    StakeTier.ADMIRAL,
    StakeTier.COMMODORE,
)


@dataclass(frozen=True)
class TierBenefits:
    """What a tier unlocks. Limits of UNLIMITED always pass."""
    daily_transactions: int
    monthly_transactions: int
    daily_fee_limit: Decimal      # XRP per identity per UTC day
    burst_limit: int              # transactions per burst window
    priority_submission: bool = False
    reduced_fees: bool = False
    fee_discount: int = 0         # percentage

    def to_dict(self) -> dict:
        data = asdict(self)
        data["daily_fee_limit"] = str(self.daily_fee_limit)
        return data


# Minimum stake (VRTY) for each tier
STAKE_THRESHOLDS: Dict[StakeTier, Decimal] = {
    StakeTier.NONE: Decimal("0"),
    StakeTier.EXPLORER: Decimal("1"),
    StakeTier.NAVIGATOR: Decimal("1000"),
    StakeTier.CAPTAIN: Decimal("10000"),
    StakeTier.ADMIRAL: Decimal("50000"),
    StakeTier.COMMODORE: Decimal("200000"),
}

# NONE still carries a small allowance: identities that clear the absolute
# access floor without reaching EXPLORER are admitted on these limits.
TIER_BENEFITS: Dict[StakeTier, TierBenefits] = {
    StakeTier.NONE: TierBenefits(
        daily_transactions=3,
        monthly_transactions=30,
        daily_fee_limit=Decimal("0.1"),
        burst_limit=2,
    ),
    StakeTier.EXPLORER: TierBenefits(
        daily_transactions=10,
        monthly_transactions=100,
        daily_fee_limit=Decimal("0.5"),
        burst_limit=5,
    ),
    StakeTier.NAVIGATOR: TierBenefits(
        daily_transactions=50,
        monthly_transactions=500,
        daily_fee_limit=Decimal("2"),
        burst_limit=10,
    ),
    StakeTier.CAPTAIN: TierBenefits(
        daily_transactions=200,
        monthly_transactions=2000,
        daily_fee_limit=Decimal("5"),
        burst_limit=20,
        priority_submission=True,
    ),
    StakeTier.ADMIRAL: TierBenefits(
        daily_transactions=500,
        monthly_transactions=5000,
        daily_fee_limit=Decimal("10"),
        burst_limit=30,
        priority_submission=True,
        reduced_fees=True,
        fee_discount=25,
    ),
    StakeTier.COMMODORE: TierBenefits(
        daily_transactions=UNLIMITED,
        monthly_transactions=UNLIMITED,
        daily_fee_limit=Decimal("20"),
        burst_limit=50,
        priority_submission=True,
        reduced_fees=True,
        fee_discount=50,
    ),
}


def build_thresholds(overrides: Optional[Mapping[str, float]] = None) -> Dict[StakeTier, Decimal]:
    """
    Merge configured overrides into the default threshold table.

    Raises:
        ValueError: if the result is not strictly increasing in tier order
    """
    thresholds = dict(STAKE_THRESHOLDS)
    for name, amount in (overrides or {}).items():
        thresholds[StakeTier.parse(name)] = Decimal(str(amount))

    thresholds[StakeTier.NONE] = Decimal("0")
    previous = None
    for tier in TIER_ORDER:
        value = thresholds[tier]
        if previous is not None and value <= previous:
            raise ValueError(
                f"Stake threshold for {tier.value} ({value}) must exceed "
                f"the tier below it ({previous})"
            )
        previous = value
    return thresholds


def tier_for_stake(
    amount: Decimal,
    thresholds: Optional[Mapping[StakeTier, Decimal]] = None,
) -> StakeTier:
    """Highest tier whose minimum is covered by `amount`."""
    table = thresholds or STAKE_THRESHOLDS
    for tier in reversed(TIER_ORDER):
        if amount >= table[tier]:
            return tier
    return StakeTier.NONE


def next_tier(tier: StakeTier) -> Optional[StakeTier]:
    """The tier above `tier`, or None at the ceiling."""
    index = TIER_ORDER.index(tier)
    if index == len(TIER_ORDER) - 1:
        return None
    return TIER_ORDER[index + 1]


def within_limit(used: int, limit: int) -> bool:
    """True while another unit fits under `limit`."""
    return limit == UNLIMITED or used < limit
