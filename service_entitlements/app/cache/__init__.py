"""
Cache package for Entitlements Service.

Provides a Redis-backed cache of complete entitlement snapshots so repeated
resolutions for the same user skip the provider fan-out.
"""

from .redis_cache import RedisSnapshotCache, snapshot_to_dict, snapshot_from_dict

__all__ = ["RedisSnapshotCache", "snapshot_to_dict", "snapshot_from_dict"]
