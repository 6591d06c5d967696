"""
Unit tests for the Entitlements aggregator.
"""

import pytest
from datetime import timedelta
from unittest.mock import AsyncMock

from prometheus_client import CollectorRegistry

from service_entitlements.app.persistence import PlanFeatureRow
from service_entitlements.app.rules.engine import EntitlementAggregator, resolve_record
from service_entitlements.app.rules.models import (
    AccessSource, SourceGrant, EntitlementRecord, parse_priority
)
from service_entitlements.app.sources.providers import build_providers
from shared.metrics import MetricsCollector
from shared.test_helpers import TestDataFactory, FixedClock, NOW


class RaisingProvider:
    """Provider that breaks its own contract and raises."""

    source = AccessSource.TRACK

    async def fetch(self, user_id):
        raise RuntimeError("track backend exploded")


class TestResolveRecord:
    """Test cases for the pure resolution helper."""

    PRIORITY = list(AccessSource)

    def test_no_grants(self):
        """Test a key nobody grants is disabled with no source."""
        record = resolve_record("ai_insights", {}, self.PRIORITY)

        assert record == EntitlementRecord("ai_insights", enabled=False)

    def test_limit_zero_counts_as_exhausted(self):
        """Test a zero cap never qualifies."""
        grants = {
            AccessSource.TRACK: SourceGrant("ai_insights", AccessSource.TRACK, limit=0),
        }

        record = resolve_record("ai_insights", grants, self.PRIORITY)

        assert record.enabled is False
        assert record.exhausted_by == AccessSource.TRACK
        assert record.remaining_usage == 0

    def test_remaining_never_negative(self):
        """Test overuse reports zero remaining rather than a negative number."""
        grants = {
            AccessSource.SUBSCRIPTION: SourceGrant("ai_insights", AccessSource.SUBSCRIPTION, limit=3),
        }

        record = resolve_record("ai_insights", grants, self.PRIORITY, used=7)

        assert record.remaining_usage == 0
        assert record.is_usable is False


class TestEntitlementAggregator:
    """Test cases for EntitlementAggregator."""

    @pytest.fixture
    def clock(self):
        """Create a fixed clock."""
        return FixedClock()

    @pytest.fixture
    def store(self):
        """Create a seeded in-memory store."""
        return TestDataFactory.seed_client(TestDataFactory.create_store())

    @pytest.fixture
    def aggregator(self, store, clock):
        """Create EntitlementAggregator instance."""
        return EntitlementAggregator(build_providers(store, clock=clock), store, clock=clock)

    @pytest.mark.asyncio
    async def test_highest_priority_source_wins(self, aggregator):
        """Test the subscription shadows the program plan for a shared key."""
        record = await aggregator.resolve("client-1", "ai_insights")

        assert record.enabled is True
        assert record.source == AccessSource.SUBSCRIPTION
        assert record.remaining_usage == 10
        assert record.limit == 50

    @pytest.mark.asyncio
    async def test_each_source_resolves_its_own_keys(self, aggregator):
        """Test keys granted by a single source resolve to that source."""
        expected = {
            "coaching_sessions": AccessSource.PROGRAM_PLAN,
            "wheel_of_life": AccessSource.ADD_ON,
            "decision_toolkit": AccessSource.TRACK,
            "goals": AccessSource.SUBSCRIPTION,
        }

        for key, source in expected.items():
            record = await aggregator.resolve("client-1", key)
            assert record.source == source, key

    @pytest.mark.asyncio
    async def test_unlimited_grant_has_no_remaining_usage(self, aggregator):
        """Test unlimited grants report remaining usage as None."""
        record = await aggregator.resolve("client-1", "goals")

        assert record.remaining_usage is None
        assert record.limit is None
        assert record.is_usable is True

    @pytest.mark.asyncio
    async def test_not_granted(self, aggregator):
        """Test a key only an expired add-on grants is not enabled."""
        record = await aggregator.resolve("client-1", "skills_map")

        assert record.enabled is False
        assert record.source is None

    @pytest.mark.asyncio
    async def test_exhausted_source_falls_through(self, aggregator, store):
        """Test an exhausted higher-priority cap yields to the next source."""
        TestDataFactory.record_usage(store, "client-1", "ai_insights", 10)

        record = await aggregator.resolve("client-1", "ai_insights")

        assert record.source == AccessSource.PROGRAM_PLAN
        assert record.remaining_usage == 40

    @pytest.mark.asyncio
    async def test_every_source_exhausted(self, aggregator, store):
        """Test a fully capped key is disabled but names the exhausted source."""
        TestDataFactory.record_usage(store, "client-1", "ai_insights", 60)

        record = await aggregator.resolve("client-1", "ai_insights")

        assert record.enabled is False
        assert record.source is None
        assert record.remaining_usage == 0
        assert record.exhausted_by == AccessSource.SUBSCRIPTION

    @pytest.mark.asyncio
    async def test_usage_counts_current_month_only(self, aggregator, store):
        """Test usage from a previous month does not count."""
        TestDataFactory.record_usage(store, "client-1", "ai_insights", 10, at=NOW - timedelta(days=30))

        record = await aggregator.resolve("client-1", "ai_insights")

        assert record.source == AccessSource.SUBSCRIPTION
        assert record.remaining_usage == 10

    @pytest.mark.asyncio
    async def test_usage_lookup_failure_fails_open(self, aggregator, store):
        """Test an unreadable usage counter is treated as zero usage."""
        TestDataFactory.record_usage(store, "client-1", "ai_insights", 60)
        store.failing.add("get_feature_usage")

        record = await aggregator.resolve("client-1", "ai_insights")

        assert record.source == AccessSource.SUBSCRIPTION
        assert record.remaining_usage == 10

    @pytest.mark.asyncio
    async def test_configured_priority(self, store, clock):
        """Test the priority list decides between overlapping sources."""
        priority = parse_priority(["add_on", "subscription"])
        aggregator = EntitlementAggregator(
            build_providers(store, clock=clock), store, priority=priority, clock=clock
        )

        record = await aggregator.resolve("client-1", "goals")

        assert record.source == AccessSource.ADD_ON
        assert priority[:2] == [AccessSource.ADD_ON, AccessSource.SUBSCRIPTION]
        assert len(priority) == len(AccessSource)

    def test_unknown_priority_name_rejected(self):
        """Test a typo in the priority list fails loudly."""
        with pytest.raises(ValueError):
            parse_priority(["subscriptions"])

    @pytest.mark.asyncio
    async def test_org_restriction_denies(self, aggregator, store):
        """Test an organisation restriction overrides personal grants."""
        TestDataFactory.seed_sponsorship(
            store, features=[PlanFeatureRow("community", is_restrictive=True)]
        )

        record = await aggregator.resolve("client-1", "community")
        enabled = await aggregator.resolve_all("client-1")

        assert record.enabled is False
        assert record.denied_by == AccessSource.ORG_SPONSORED
        assert "community" not in enabled

    @pytest.mark.asyncio
    async def test_resolve_all_is_union(self, aggregator, store):
        """Test resolve_all unions every source and ignores usage."""
        TestDataFactory.record_usage(store, "client-1", "ai_insights", 60)

        enabled = await aggregator.resolve_all("client-1")

        assert enabled == {
            "ai_insights", "goals", "community", "coaching_sessions",
            "wheel_of_life", "decision_toolkit",
        }

    @pytest.mark.asyncio
    async def test_raising_provider_does_not_abort(self, store, clock):
        """Test a provider that raises contributes nothing and others still count."""
        providers = [p for p in build_providers(store, clock=clock) if p.source != AccessSource.TRACK]
        providers.append(RaisingProvider())
        aggregator = EntitlementAggregator(providers, store, clock=clock)

        snapshot = await aggregator.fetch_snapshot("client-1")
        enabled = await aggregator.resolve_all("client-1", snapshot=snapshot)

        assert snapshot.is_partial is True
        assert snapshot.failed_sources == [AccessSource.TRACK]
        assert "decision_toolkit" not in enabled
        assert {"ai_insights", "coaching_sessions", "wheel_of_life"} <= enabled

    @pytest.mark.asyncio
    async def test_failing_source_degrades(self, aggregator, store):
        """Test a store failure for one source leaves the others intact."""
        store.failing.add("get_user_add_ons")

        record = await aggregator.resolve("client-1", "wheel_of_life")
        goals = await aggregator.resolve("client-1", "goals")

        assert record.enabled is False
        assert goals.source == AccessSource.SUBSCRIPTION

    @pytest.mark.asyncio
    async def test_resolve_is_idempotent(self, aggregator, store):
        """Test resolving twice without data changes gives the same record."""
        TestDataFactory.record_usage(store, "client-1", "ai_insights", 4)

        first = await aggregator.resolve("client-1", "ai_insights")
        second = await aggregator.resolve("client-1", "ai_insights")

        assert first == second

    @pytest.mark.asyncio
    async def test_get_access_source_matches_resolve(self, aggregator, store):
        """Test get_access_source reports the source resolve picked."""
        TestDataFactory.record_usage(store, "client-1", "ai_insights", 10)

        source = await aggregator.get_access_source("client-1", "ai_insights")
        record = await aggregator.resolve("client-1", "ai_insights")

        assert source == record.source == AccessSource.PROGRAM_PLAN

    @pytest.mark.asyncio
    async def test_complete_snapshot_is_cached(self, store, clock):
        """Test complete snapshots are written to the cache."""
        cache = AsyncMock()
        cache.get_snapshot.return_value = None
        aggregator = EntitlementAggregator(
            build_providers(store, clock=clock), store, cache=cache, cache_ttl=120, clock=clock
        )

        snapshot = await aggregator.fetch_snapshot("client-1")

        cache.set_snapshot.assert_awaited_once_with(snapshot, ttl=120)

    @pytest.mark.asyncio
    async def test_partial_snapshot_is_not_cached(self, store, clock):
        """Test snapshots with a failed source never reach the cache."""
        cache = AsyncMock()
        cache.get_snapshot.return_value = None
        store.failing.add("get_org_sponsorships")
        aggregator = EntitlementAggregator(
            build_providers(store, clock=clock), store, cache=cache, clock=clock
        )

        await aggregator.fetch_snapshot("client-1")

        cache.set_snapshot.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cache_hit_skips_providers(self, aggregator, store):
        """Test a cached snapshot is used without querying providers."""
        snapshot = await aggregator.fetch_snapshot("client-1")
        cache = AsyncMock()
        cache.get_snapshot.return_value = snapshot
        aggregator.cache = cache
        store.failing.update({"get_profile_plan_id", "get_user_add_ons"})

        record = await aggregator.resolve("client-1", "wheel_of_life")

        assert record.source == AccessSource.ADD_ON
        cache.set_snapshot.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalidate_without_cache(self, aggregator):
        """Test invalidation is a no-op without a cache."""
        assert await aggregator.invalidate("client-1") is False

    @pytest.mark.asyncio
    async def test_metrics_recorded(self, store, clock):
        """Test provider failures and resolution outcomes are counted."""
        registry = CollectorRegistry()
        metrics = MetricsCollector("entitlements", registry)
        store.failing.add("get_user_add_ons")
        aggregator = EntitlementAggregator(
            build_providers(store, clock=clock), store, metrics=metrics, clock=clock
        )

        await aggregator.resolve("client-1", "goals")
        await aggregator.resolve("client-1", "skills_map")

        assert registry.get_sample_value("provider_failures_total", {"source": "add_on"}) == 2
        assert registry.get_sample_value("entitlement_resolutions_total", {"outcome": "granted"}) == 1
        assert registry.get_sample_value("entitlement_resolutions_total", {"outcome": "not_granted"}) == 1
