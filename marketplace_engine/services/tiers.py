"""
Commission tier resolution.

Tiers are data rows loaded at runtime. A TierTable validates them once
(contiguous, non-overlapping, one unbounded top tier, non-decreasing
rates) so resolution is a binary search that is monotonic in sales volume.
"""

from bisect import bisect_right
from decimal import Decimal
from typing import Iterable, List, Optional

import structlog

from marketplace_engine.core.exceptions import ConfigurationError
from marketplace_engine.core.utils import to_decimal
from marketplace_engine.models.ledger import CommissionTier

logger = structlog.get_logger()


class TierTable:
    def __init__(self, tiers: Iterable[CommissionTier]):
        self.tiers: List[CommissionTier] = sorted(tiers, key=lambda t: t.min_sales)
        self._validate()
        self._bounds = [t.min_sales for t in self.tiers]

    def _validate(self) -> None:
        if not self.tiers:
            raise ConfigurationError("Commission tier table is empty")

        unbounded = [t for t in self.tiers if t.max_sales is None]
        if len(unbounded) != 1:
            raise ConfigurationError("Exactly one commission tier must be unbounded",
                                     details={"unbounded_tiers": [t.tier_name for t in unbounded]})
        if self.tiers[-1].max_sales is not None:
            raise ConfigurationError("The unbounded commission tier must be the highest",
                                     details={"tier": unbounded[0].tier_name})

        for tier in self.tiers:
            if not Decimal("0") <= tier.commission_rate <= Decimal("1"):
                raise ConfigurationError("Commission rate must be between 0 and 1",
                                         details={"tier": tier.tier_name, "rate": str(tier.commission_rate)})
            if tier.max_sales is not None and tier.max_sales <= tier.min_sales:
                raise ConfigurationError("Commission tier range is empty",
                                         details={"tier": tier.tier_name})

        for lower, upper in zip(self.tiers, self.tiers[1:]):
            if lower.max_sales != upper.min_sales:
                raise ConfigurationError(
                    "Commission tiers must be contiguous and non-overlapping",
                    details={"tier": lower.tier_name, "max_sales": str(lower.max_sales),
                             "next_tier": upper.tier_name, "next_min_sales": str(upper.min_sales)},
                )
            if upper.commission_rate < lower.commission_rate:
                raise ConfigurationError(
                    "Commission rates must not decrease as sales volume grows",
                    details={"tier": upper.tier_name, "rate": str(upper.commission_rate)},
                )

    @classmethod
    def from_rows(cls, rows: Iterable) -> "TierTable":
        """Build from store rows (CommissionTier models or plain dicts)."""
        return cls(row if isinstance(row, CommissionTier) else CommissionTier(**row) for row in rows)

    def resolve(self, cumulative_sales) -> CommissionTier:
        """Tier whose [min_sales, max_sales) interval contains cumulative_sales."""
        amount = to_decimal(cumulative_sales, "cumulative_sales")
        index = bisect_right(self._bounds, amount) - 1
        if index < 0:
            # Below the first bracket (e.g. net-negative after reversals)
            return self.tiers[0]
        return self.tiers[index]

    def next_tier(self, tier: CommissionTier) -> Optional[CommissionTier]:
        for lower, upper in zip(self.tiers, self.tiers[1:]):
            if lower.tier_name == tier.tier_name:
                return upper
        return None


def resolve_tier(cumulative_sales, tiers: Iterable[CommissionTier]) -> CommissionTier:
    """Resolve against an ad-hoc tier list."""
    return TierTable(tiers).resolve(cumulative_sales)


DEFAULT_TIERS = [
    CommissionTier(tier_name="Standard", min_sales=Decimal("0"), max_sales=Decimal("415000"), commission_rate=Decimal("0.10")),
    CommissionTier(tier_name="Premium", min_sales=Decimal("415000"), max_sales=Decimal("1245000"), commission_rate=Decimal("0.12")),
    CommissionTier(tier_name="Elite", min_sales=Decimal("1245000"), max_sales=None, commission_rate=Decimal("0.15")),
]
