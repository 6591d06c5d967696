"""
Unit tests for the Redis snapshot cache.
"""

import json
import pytest
from unittest.mock import AsyncMock, patch

from service_entitlements.app.cache.redis_cache import (
    RedisSnapshotCache, snapshot_to_dict, snapshot_from_dict
)
from service_entitlements.app.rules.models import (
    AccessSource, SourceGrant, SourceResult, EntitlementSnapshot
)
from shared.errors import ServiceError
from shared.test_helpers import NOW


def make_snapshot(failed=False):
    results = {
        AccessSource.SUBSCRIPTION: SourceResult(
            AccessSource.SUBSCRIPTION,
            {"ai_insights": SourceGrant("ai_insights", AccessSource.SUBSCRIPTION, limit=10)}
        ),
        AccessSource.ORG_SPONSORED: SourceResult(
            AccessSource.ORG_SPONSORED,
            {"community": SourceGrant("community", AccessSource.ORG_SPONSORED, enabled=False, limit=0, denied=True)}
        ),
    }
    if failed:
        results[AccessSource.TRACK] = SourceResult.failure(AccessSource.TRACK, "timeout")
    return EntitlementSnapshot(user_id="client-1", results=results, fetched_at=NOW)


class TestRedisSnapshotCache:
    """Test cases for RedisSnapshotCache."""

    @pytest.fixture
    def cache(self):
        """Create RedisSnapshotCache with a mocked client."""
        cache = RedisSnapshotCache("redis://localhost:6379/0")
        cache.redis = AsyncMock()
        return cache

    def test_serialization_preserves_snapshot(self):
        """Test grants, denials and timestamps survive serialization."""
        snapshot = make_snapshot()

        restored = snapshot_from_dict(json.loads(json.dumps(snapshot_to_dict(snapshot))))

        assert restored == snapshot

    @pytest.mark.asyncio
    async def test_set_snapshot(self, cache):
        """Test complete snapshots are written with the TTL."""
        assert await cache.set_snapshot(make_snapshot(), ttl=120) is True

        key, ttl, payload = cache.redis.setex.call_args.args
        assert key == "entitlements:snapshot:client-1"
        assert ttl == 120
        assert json.loads(payload)["user_id"] == "client-1"

    @pytest.mark.asyncio
    async def test_ttl_is_bounded(self, cache):
        """Test TTLs are clamped to the allowed range."""
        await cache.set_snapshot(make_snapshot(), ttl=5)

        assert cache.redis.setex.call_args.args[1] == cache.min_ttl

    @pytest.mark.asyncio
    async def test_partial_snapshot_refused(self, cache):
        """Test snapshots with failed sources are never written."""
        assert await cache.set_snapshot(make_snapshot(failed=True)) is False

        cache.redis.setex.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_get_snapshot_hit(self, cache):
        """Test a cached payload is rebuilt into a snapshot."""
        snapshot = make_snapshot()
        cache.redis.get.return_value = json.dumps(snapshot_to_dict(snapshot))

        assert await cache.get_snapshot("client-1") == snapshot

    @pytest.mark.asyncio
    async def test_get_snapshot_miss(self, cache):
        """Test a missing key is a miss."""
        cache.redis.get.return_value = None

        assert await cache.get_snapshot("client-1") is None

    @pytest.mark.asyncio
    async def test_redis_error_is_a_miss(self, cache):
        """Test Redis failures degrade to a miss."""
        cache.redis.get.side_effect = ConnectionError("down")
        cache.redis.setex.side_effect = ConnectionError("down")

        assert await cache.get_snapshot("client-1") is None
        assert await cache.set_snapshot(make_snapshot()) is False

    @pytest.mark.asyncio
    async def test_invalidate_user(self, cache):
        """Test invalidation deletes the user's key."""
        cache.redis.delete.return_value = 1

        assert await cache.invalidate_user("client-1") is True
        cache.redis.delete.assert_awaited_once_with("entitlements:snapshot:client-1")

    @pytest.mark.asyncio
    async def test_start_failure(self):
        """Test an unreachable Redis raises a service error."""
        cache = RedisSnapshotCache("redis://localhost:6379/0")
        client = AsyncMock()
        client.ping.side_effect = ConnectionError("refused")

        with patch("service_entitlements.app.cache.redis_cache.redis.from_url", return_value=client):
            with pytest.raises(ServiceError):
                await cache.start()

    @pytest.mark.asyncio
    async def test_health_check(self, cache):
        """Test health check pings Redis."""
        assert await cache.health_check() is True

        cache.redis.ping.side_effect = ConnectionError("down")
        assert await cache.health_check() is False
