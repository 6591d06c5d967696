"""
Entitlement resolution engine for Entitlements Service.

The aggregator fans out to every access source provider, then resolves each
feature key against the configured source priority. Resolution helpers are
pure functions over a snapshot so several keys can be resolved from a single
fan-out.
"""

import asyncio
from typing import Dict, Any, Optional, List, Sequence, Set

from shared.logging import get_logger, set_user_context
from shared.errors import PlatformException
from shared.metrics import MetricsCollector
from ..persistence.base import DataStore
from ..timeutil import Clock, utcnow, month_start
from .models import (
    AccessSource, SourceGrant, SourceResult, EntitlementSnapshot,
    EntitlementRecord, FeatureLossPreview, DEFAULT_PRIORITY
)


def combined_limit(grants: Sequence[SourceGrant]) -> Optional[int]:
    """Highest limit across grants; unlimited beats any number."""
    limit: Optional[int] = None
    for index, grant in enumerate(grants):
        if grant.limit is None:
            return None
        limit = grant.limit if index == 0 else max(limit, grant.limit)
    return limit


def enabling_grants(grants: Dict[AccessSource, SourceGrant],
                    priority: Sequence[AccessSource]) -> List[SourceGrant]:
    """Grants that enable the feature, highest priority first."""
    return [
        grants[source] for source in priority
        if source in grants and grants[source].enabled and not grants[source].denied
    ]


def denying_source(grants: Dict[AccessSource, SourceGrant],
                   priority: Sequence[AccessSource]) -> Optional[AccessSource]:
    for source in priority:
        grant = grants.get(source)
        if grant is not None and grant.denied:
            return source
    return None


def needs_usage(grants: Dict[AccessSource, SourceGrant], priority: Sequence[AccessSource]) -> bool:
    """Usage is only read when the top-priority enabling grant is capped."""
    if denying_source(grants, priority) is not None:
        return False
    enabling = enabling_grants(grants, priority)
    return bool(enabling) and enabling[0].limit is not None


def resolve_record(feature_key: str,
                   grants: Dict[AccessSource, SourceGrant],
                   priority: Sequence[AccessSource],
                   used: int = 0) -> EntitlementRecord:
    """Resolve one feature from the grants every source holds for it.

    The first source in priority order that enables the key and still has
    usage left wins. When every enabling source is capped out the record is
    disabled and names the highest-priority exhausted source.
    """
    denied_by = denying_source(grants, priority)
    if denied_by is not None:
        return EntitlementRecord(feature_key=feature_key, enabled=False, denied_by=denied_by)

    enabling = enabling_grants(grants, priority)
    if not enabling:
        return EntitlementRecord(feature_key=feature_key, enabled=False)

    limit = combined_limit(enabling)
    exhausted_by: Optional[AccessSource] = None

    for grant in enabling:
        if grant.limit is None:
            return EntitlementRecord(feature_key, True, grant.source, None, limit)

        remaining = max(0, grant.limit - used)
        if remaining > 0:
            return EntitlementRecord(feature_key, True, grant.source, remaining, limit)

        if exhausted_by is None:
            exhausted_by = grant.source

    return EntitlementRecord(
        feature_key=feature_key,
        enabled=False,
        remaining_usage=0,
        limit=limit,
        exhausted_by=exhausted_by
    )


def enabled_keys(snapshot: EntitlementSnapshot) -> Set[str]:
    """Union of keys any source enables, minus explicit denials."""
    keys: Set[str] = set()
    denied: Set[str] = set()
    for result in snapshot.results.values():
        for key, grant in result.grants.items():
            if grant.denied:
                denied.add(key)
            elif grant.enabled:
                keys.add(key)
    return keys - denied


class EntitlementAggregator:
    """Merges access source results into per-feature decisions."""

    def __init__(self,
                 providers: Sequence[Any],
                 store: DataStore,
                 priority: Optional[Sequence[AccessSource]] = None,
                 cache=None,
                 cache_ttl: int = 300,
                 metrics: Optional[MetricsCollector] = None,
                 clock: Clock = utcnow):
        self.logger = get_logger("entitlements.aggregator")
        self.providers = list(providers)
        self.store = store
        self.priority: List[AccessSource] = list(priority or DEFAULT_PRIORITY)
        self.cache = cache
        self.cache_ttl = cache_ttl
        self.metrics = metrics
        self.clock = clock

    async def fetch_snapshot(self, user_id: str, use_cache: bool = True) -> EntitlementSnapshot:
        """Query every provider concurrently and collect their results."""
        set_user_context(user_id=user_id)

        if use_cache and self.cache:
            cached = await self.cache.get_snapshot(user_id)
            if cached is not None:
                return cached

        if self.metrics:
            with self.metrics.time_operation("snapshot_fetch_duration_seconds"):
                snapshot = await self._fan_out(user_id)
        else:
            snapshot = await self._fan_out(user_id)

        if snapshot.is_partial:
            self.logger.warning(
                "Partial entitlement snapshot",
                user_id=user_id,
                failed_sources=[s.value for s in snapshot.failed_sources]
            )
        elif self.cache:
            await self.cache.set_snapshot(snapshot, ttl=self.cache_ttl)

        return snapshot

    async def _fan_out(self, user_id: str) -> EntitlementSnapshot:
        outcomes = await asyncio.gather(
            *(provider.fetch(user_id) for provider in self.providers),
            return_exceptions=True
        )

        results: Dict[AccessSource, SourceResult] = {}
        for provider, outcome in zip(self.providers, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                self.logger.error(
                    "Access source provider raised",
                    source=provider.source.value,
                    error=str(outcome)
                )
                outcome = SourceResult.failure(provider.source, str(outcome))

            if outcome.failed and self.metrics:
                self.metrics.record_provider_failure(provider.source.value)
            results[provider.source] = outcome

        return EntitlementSnapshot(user_id=user_id, results=results, fetched_at=self.clock())

    async def _usage_this_period(self, user_id: str, feature_key: str) -> int:
        period_start = month_start(self.clock())
        try:
            return await self.store.get_feature_usage(user_id, feature_key, period_start)
        except PlatformException as e:
            # Unreadable counters count as unused
            self.logger.warning(
                "Usage lookup failed",
                user_id=user_id,
                feature_key=feature_key,
                error=e.message
            )
            return 0

    async def resolve(self, user_id: str, feature_key: str,
                      snapshot: Optional[EntitlementSnapshot] = None) -> EntitlementRecord:
        """Resolve a single feature for a user."""
        if snapshot is None:
            snapshot = await self.fetch_snapshot(user_id)

        record = await self._resolve_from_snapshot(user_id, feature_key, snapshot)

        if self.metrics:
            self.metrics.record_resolution(self._outcome(record))

        self.logger.debug(
            "Feature resolved",
            user_id=user_id,
            feature_key=feature_key,
            enabled=record.enabled,
            source=record.source.value if record.source else None,
            remaining_usage=record.remaining_usage
        )
        return record

    async def _resolve_from_snapshot(self, user_id: str, feature_key: str,
                                     snapshot: EntitlementSnapshot) -> EntitlementRecord:
        grants = snapshot.grants_for(feature_key)
        used = 0
        if needs_usage(grants, self.priority):
            used = await self._usage_this_period(user_id, feature_key)
        return resolve_record(feature_key, grants, self.priority, used)

    async def resolve_all(self, user_id: str,
                          snapshot: Optional[EntitlementSnapshot] = None) -> Set[str]:
        """Every feature key the user holds through any source."""
        if snapshot is None:
            snapshot = await self.fetch_snapshot(user_id)
        return enabled_keys(snapshot)

    async def get_access_source(self, user_id: str, feature_key: str) -> Optional[AccessSource]:
        """Source that won resolution for a feature."""
        record = await self.resolve(user_id, feature_key)
        return record.source

    async def preview_feature_loss(self, user_id: str,
                                   source_to_remove: AccessSource) -> FeatureLossPreview:
        """Which features would be lost if one source went away.

        A feature is classed as lost whenever its resolved source is the one
        removed, even if a lower-priority source would still grant it. Such
        features are listed again in ``covered_elsewhere``.
        """
        snapshot = await self.fetch_snapshot(user_id)
        to_lose: List[str] = []
        retained: List[str] = []
        covered: List[str] = []

        for key in sorted(enabled_keys(snapshot)):
            record = await self._resolve_from_snapshot(user_id, key, snapshot)
            if record.primary_source != source_to_remove:
                retained.append(key)
                continue

            to_lose.append(key)
            others = [
                grant for grant in enabling_grants(snapshot.grants_for(key), self.priority)
                if grant.source != source_to_remove
            ]
            if others:
                covered.append(key)

        self.logger.info(
            "Feature loss preview",
            user_id=user_id,
            source=source_to_remove.value,
            to_lose=len(to_lose),
            retained=len(retained)
        )
        return FeatureLossPreview(
            source_to_remove=source_to_remove,
            features_to_lose=to_lose,
            features_retained=retained,
            covered_elsewhere=covered
        )

    async def invalidate(self, user_id: str) -> bool:
        """Drop the cached snapshot for a user."""
        if not self.cache:
            return False
        return await self.cache.invalidate_user(user_id)

    @staticmethod
    def _outcome(record: EntitlementRecord) -> str:
        if record.enabled:
            return "granted"
        if record.denied_by:
            return "denied"
        if record.exhausted_by:
            return "exhausted"
        return "not_granted"
