"""
Plan Catalog

Label quotas and seat allowances per plan tier. Quotas are per billing month;
yearly plans receive the same monthly allotment through rollover.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class PlanTier(Enum):
    """Plan tiers with a label catalog."""
    TRIAL = "trial"
    STARTER = "starter"
    GROWTH = "growth"


class BillingCycle(Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"

    @classmethod
    def parse(cls, value: Optional[str]) -> "BillingCycle":
        try:
            return cls((value or "monthly").strip().lower())
        except ValueError:
            return cls.MONTHLY


@dataclass(frozen=True)
class PlanQuotas:
    """Per-month label quotas for a plan. None means unlimited."""
    name: str
    max_seats: int
    unit_labels_quota: Optional[int]
    box_labels_quota: Optional[int]
    carton_labels_quota: Optional[int]
    pallet_labels_quota: Optional[int]

    @property
    def sscc_labels_quota(self) -> Optional[int]:
        """Box, carton and pallet labels share one consolidated SSCC pool."""
        parts = (self.box_labels_quota, self.carton_labels_quota, self.pallet_labels_quota)
        if any(p is None for p in parts):
            return None
        return sum(parts)

    @property
    def is_unlimited(self) -> bool:
        return self.unit_labels_quota is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "unit_labels_quota": self.unit_labels_quota,
            "box_labels_quota": self.box_labels_quota,
            "carton_labels_quota": self.carton_labels_quota,
            "pallet_labels_quota": self.pallet_labels_quota,
            "sscc_labels_quota": self.sscc_labels_quota,
            "user_seats_quota": self.max_seats,
        }

    @classmethod
    def for_tier(cls, tier: PlanTier) -> "PlanQuotas":
        """Get quotas for a tier."""
        quotas = {
            PlanTier.TRIAL: cls(
                name="Free Trial",
                max_seats=1,
                unit_labels_quota=None,
                box_labels_quota=None,
                carton_labels_quota=None,
                pallet_labels_quota=None,
            ),
            PlanTier.STARTER: cls(
                name="Starter",
                max_seats=1,
                unit_labels_quota=200_000,
                box_labels_quota=20_000,
                carton_labels_quota=2_000,
                pallet_labels_quota=500,
            ),
            PlanTier.GROWTH: cls(
                name="Growth",
                max_seats=5,
                unit_labels_quota=1_000_000,
                box_labels_quota=200_000,
                carton_labels_quota=20_000,
                pallet_labels_quota=2_000,
            ),
        }
        return quotas[tier]


def monthly_allotment(tier: PlanTier) -> Dict[str, int]:
    """Monthly (unit, sscc) allotment credited by rollover. Unlimited plans get 0."""
    quotas = PlanQuotas.for_tier(tier)
    return {
        "unit": quotas.unit_labels_quota or 0,
        "sscc": quotas.sscc_labels_quota or 0,
    }
