"""
Plan tier helpers: max-plan detection and the effective (hybrid) tier.
"""

from typing import Optional, Iterable, List, Tuple

from shared.logging import get_logger
from ..persistence.base import DataStore, PlanRow


def is_max_plan_tier(user_tier_level: Optional[int], plans: Iterable[PlanRow]) -> bool:
    """Whether a tier is at or above the highest purchasable plan.

    Plans with ``is_purchasable`` unset count as purchasable. A user without
    a tier never is on the max plan. Otherwise, with no purchasable plans,
    every user is.
    """
    if user_tier_level is None:
        return False
    purchasable = [plan.tier_level for plan in plans if plan.is_purchasable is not False]
    if not purchasable:
        return True
    return user_tier_level >= max(purchasable)


def effective_tier(personal_tier: Optional[int], sponsored_tiers: Iterable[int]) -> Optional[int]:
    """Max of the personal plan tier and any org-sponsored tier."""
    candidates = [tier for tier in sponsored_tiers if tier is not None]
    if personal_tier is not None:
        candidates.append(personal_tier)
    return max(candidates) if candidates else None


class PlanTierResolver:
    """Looks up a user's effective tier against the active plan catalogue."""

    def __init__(self, store: DataStore):
        self.store = store
        self.logger = get_logger("entitlements.plans")

    async def get_effective_tier(self, user_id: str) -> Tuple[Optional[int], List[PlanRow]]:
        """Return the user's effective tier and the active plans it was read from."""
        plans = await self.store.get_plans()
        tiers_by_plan = {plan.plan_id: plan.tier_level for plan in plans}

        personal_tier = None
        plan_id = await self.store.get_profile_plan_id(user_id)
        if plan_id:
            personal_tier = tiers_by_plan.get(plan_id)

        sponsorships = await self.store.get_org_sponsorships(user_id)
        sponsored = [s.tier_level for s in sponsorships if s.plan_id in tiers_by_plan]

        tier = effective_tier(personal_tier, sponsored)
        self.logger.debug(
            "Effective tier resolved",
            user_id=user_id,
            personal_tier=personal_tier,
            effective_tier=tier
        )
        return tier, plans

    async def is_max_plan(self, user_id: str) -> bool:
        tier, plans = await self.get_effective_tier(user_id)
        return is_max_plan_tier(tier, plans)
