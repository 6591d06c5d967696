"""
Redis caching layer for Entitlements Service.

Caches complete provider snapshots per user. Partial snapshots and usage
counters are never written. Any Redis failure is logged and treated as a
cache miss.
"""

import json
from typing import Dict, Any, Optional
from datetime import datetime

import redis.asyncio as redis
from shared.logging import get_logger
from shared.errors import ServiceError
from ..rules.models import AccessSource, SourceGrant, SourceResult, EntitlementSnapshot


def snapshot_to_dict(snapshot: EntitlementSnapshot) -> Dict[str, Any]:
    """Serialize a snapshot to plain JSON types."""
    return {
        "user_id": snapshot.user_id,
        "fetched_at": snapshot.fetched_at.isoformat(),
        "results": {
            source.value: {
                "grants": [
                    {
                        "feature_key": grant.feature_key,
                        "enabled": grant.enabled,
                        "limit": grant.limit,
                        "denied": grant.denied,
                    }
                    for grant in result.grants.values()
                ],
                "error": result.error,
            }
            for source, result in snapshot.results.items()
        },
    }


def snapshot_from_dict(data: Dict[str, Any]) -> EntitlementSnapshot:
    """Rebuild a snapshot from :func:`snapshot_to_dict` output."""
    results = {}
    for source_name, payload in data["results"].items():
        source = AccessSource(source_name)
        grants = {
            item["feature_key"]: SourceGrant(
                feature_key=item["feature_key"],
                source=source,
                enabled=item["enabled"],
                limit=item.get("limit"),
                denied=item.get("denied", False),
            )
            for item in payload.get("grants", [])
        }
        results[source] = SourceResult(source=source, grants=grants, error=payload.get("error"))

    return EntitlementSnapshot(
        user_id=data["user_id"],
        results=results,
        fetched_at=datetime.fromisoformat(data["fetched_at"]),
    )


class RedisSnapshotCache:
    """Redis cache of entitlement snapshots."""

    SNAPSHOT_PREFIX = "entitlements:snapshot:"

    def __init__(self, redis_url: str, default_ttl: int = 300):
        self.redis_url = redis_url
        self.logger = get_logger("entitlements.cache.redis")
        self.redis: Optional[redis.Redis] = None

        self.default_ttl = default_ttl
        self.max_ttl = 3600
        self.min_ttl = 30

    async def start(self):
        """Start the Redis cache."""
        try:
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30
            )

            await self.redis.ping()

            self.logger.info("Redis cache started")

        except Exception as e:
            self.logger.error("Failed to start Redis cache", error=str(e))
            raise ServiceError("Redis cache unavailable", {"error": str(e)})

    async def stop(self):
        """Stop the Redis cache."""
        if self.redis:
            await self.redis.aclose()
            self.logger.info("Redis cache stopped")

    async def get_snapshot(self, user_id: str) -> Optional[EntitlementSnapshot]:
        """Get a cached snapshot for a user."""
        try:
            cached_data = await self.redis.get(self._snapshot_key(user_id))
            if not cached_data:
                return None

            snapshot = snapshot_from_dict(json.loads(cached_data))
            self.logger.debug("Cache hit for snapshot", user_id=user_id)
            return snapshot

        except Exception as e:
            self.logger.error("Error getting cached snapshot", user_id=user_id, error=str(e))
            return None

    async def set_snapshot(self, snapshot: EntitlementSnapshot, ttl: Optional[int] = None) -> bool:
        """Cache a snapshot. Partial snapshots are refused."""
        if snapshot.is_partial:
            self.logger.debug("Refusing to cache partial snapshot", user_id=snapshot.user_id)
            return False

        ttl_seconds = max(self.min_ttl, min(self.max_ttl, ttl or self.default_ttl))
        try:
            await self.redis.setex(
                self._snapshot_key(snapshot.user_id),
                ttl_seconds,
                json.dumps(snapshot_to_dict(snapshot))
            )

            self.logger.debug("Cached snapshot", user_id=snapshot.user_id, ttl=ttl_seconds)
            return True

        except Exception as e:
            self.logger.error("Error caching snapshot", user_id=snapshot.user_id, error=str(e))
            return False

    async def invalidate_user(self, user_id: str) -> bool:
        """Drop the cached snapshot for a user."""
        try:
            deleted = await self.redis.delete(self._snapshot_key(user_id))
            self.logger.info("Invalidated user snapshot", user_id=user_id, deleted=deleted)
            return bool(deleted)

        except Exception as e:
            self.logger.error("Error invalidating user snapshot", user_id=user_id, error=str(e))
            return False

    def _snapshot_key(self, user_id: str) -> str:
        return f"{self.SNAPSHOT_PREFIX}{user_id}"

    async def health_check(self) -> bool:
        """Check Redis health."""
        try:
            await self.redis.ping()
            return True
        except Exception:
            return False
