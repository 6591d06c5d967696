"""
Unit tests for max-plan detection and effective tier.
"""

import pytest

from service_entitlements.app.persistence import PlanRow
from service_entitlements.app.rules.plans import (
    is_max_plan_tier, effective_tier, PlanTierResolver
)
from shared.test_helpers import TestDataFactory


CATALOGUE = [
    PlanRow("free", "Free", 0, is_purchasable=True),
    PlanRow("pro", "Pro", 1, is_purchasable=True),
    PlanRow("premium", "Premium", 2, is_purchasable=True),
    PlanRow("enterprise", "Enterprise", 3, is_purchasable=False),
]


class TestIsMaxPlanTier:
    """Test cases for is_max_plan_tier."""

    def test_highest_purchasable_tier(self):
        """Test a user on the top purchasable tier is on the max plan."""
        assert is_max_plan_tier(2, CATALOGUE) is True

    def test_lower_tier(self):
        """Test a lower tier is not the max plan."""
        assert is_max_plan_tier(1, CATALOGUE) is False

    def test_above_purchasable_tier(self):
        """Test a sales-only tier above every purchasable plan counts as max."""
        assert is_max_plan_tier(3, CATALOGUE) is True

    def test_null_tier(self):
        """Test a user without a tier is never on the max plan."""
        assert is_max_plan_tier(None, CATALOGUE) is False

    def test_null_tier_with_empty_catalogue(self):
        """Test a missing tier is not the max plan even with nothing purchasable."""
        assert is_max_plan_tier(None, []) is False
        assert is_max_plan_tier(None, [PlanRow("enterprise", "Enterprise", 3, is_purchasable=False)]) is False

    def test_no_purchasable_plans(self):
        """Test an empty catalogue is vacuously satisfied."""
        assert is_max_plan_tier(0, []) is True
        assert is_max_plan_tier(0, [PlanRow("enterprise", "Enterprise", 3, is_purchasable=False)]) is True

    def test_absent_flag_defaults_to_purchasable(self):
        """Test a missing purchasable flag counts as purchasable."""
        plans = [PlanRow("pro", "Pro", 1, is_purchasable=None), PlanRow("free", "Free", 0)]

        assert is_max_plan_tier(0, plans) is False
        assert is_max_plan_tier(1, plans) is True

    def test_order_independent(self):
        """Test the catalogue order does not matter."""
        assert is_max_plan_tier(2, list(reversed(CATALOGUE))) is True


class TestEffectiveTier:
    """Test cases for effective tier resolution."""

    def test_max_of_personal_and_sponsored(self):
        """Test the higher of personal and sponsored tiers wins."""
        assert effective_tier(1, [3, 2]) == 3
        assert effective_tier(2, [1]) == 2

    def test_none_when_nothing(self):
        """Test no plan at all yields no tier."""
        assert effective_tier(None, []) is None

    @pytest.mark.asyncio
    async def test_resolver_uses_sponsorship(self):
        """Test an org-sponsored plan lifts the effective tier."""
        store = TestDataFactory.seed_client(TestDataFactory.create_store())
        TestDataFactory.seed_sponsorship(store, plan_id="premium", tier_level=2)
        resolver = PlanTierResolver(store)

        tier, plans = await resolver.get_effective_tier("client-1")

        assert tier == 2
        assert await resolver.is_max_plan("client-1") is True

    @pytest.mark.asyncio
    async def test_resolver_personal_plan_only(self):
        """Test the personal plan tier is used without sponsorships."""
        store = TestDataFactory.seed_client(TestDataFactory.create_store())
        resolver = PlanTierResolver(store)

        tier, plans = await resolver.get_effective_tier("client-1")

        assert tier == 1
        assert [plan.plan_id for plan in plans] == ["free", "pro", "premium", "enterprise"]
        assert await resolver.is_max_plan("client-1") is False

    @pytest.mark.asyncio
    async def test_inactive_plan_ignored(self):
        """Test an inactive personal plan gives no tier."""
        store = TestDataFactory.create_store()
        store.plans["legacy"] = PlanRow("legacy", "Legacy", 5, is_active=False)
        store.profile_plans["client-2"] = "legacy"

        tier, plans = await PlanTierResolver(store).get_effective_tier("client-2")

        assert tier is None
