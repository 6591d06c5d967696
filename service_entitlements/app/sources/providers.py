"""
Access source providers for Entitlements Service.

Each provider answers one question: which features does this source enable
for a user right now. "No data" is an empty result; a fetch failure is a
result with ``error`` set. Providers never raise to the aggregator.
"""

from typing import Dict, Optional, List, Iterable

from shared.logging import get_logger
from shared.errors import PlatformException
from ..persistence.base import DataStore, PlanFeatureRow
from ..rules.models import AccessSource, SourceGrant, SourceResult
from ..timeutil import Clock, utcnow, as_utc


def collect_grants(source: AccessSource, rows: Iterable[PlanFeatureRow]) -> Dict[str, SourceGrant]:
    """Fold feature rows into one grant per key.

    Restrictive rows become explicit denials. Disabled rows are ignored.
    When several rows grant the same key the highest limit wins.
    """
    grants: Dict[str, SourceGrant] = {}
    for row in rows:
        if row.is_restrictive:
            grant = SourceGrant(row.feature_key, source, enabled=False, limit=0, denied=True)
        elif row.enabled:
            grant = SourceGrant(row.feature_key, source, limit=row.limit_value)
        else:
            continue

        existing = grants.get(row.feature_key)
        grants[row.feature_key] = existing.merge(grant) if existing else grant
    return grants


class AccessSourceProvider:
    """Base class for a single access source."""

    source: AccessSource

    def __init__(self, store: DataStore):
        self.store = store
        self.logger = get_logger(f"entitlements.sources.{self.source.value}")

    async def fetch(self, user_id: str) -> SourceResult:
        """Fetch this source's grants for a user."""
        try:
            grants = await self._load(user_id)
        except PlatformException as e:
            self.logger.warning("Access source unavailable", user_id=user_id, error=e.message)
            return SourceResult.failure(self.source, e.message)
        except Exception as e:
            self.logger.error("Access source fetch failed", user_id=user_id, error=str(e))
            return SourceResult.failure(self.source, str(e))

        return SourceResult(source=self.source, grants=grants)

    async def _load(self, user_id: str) -> Dict[str, SourceGrant]:
        raise NotImplementedError


class SubscriptionProvider(AccessSourceProvider):
    """Features of the user's personal subscription plan."""

    source = AccessSource.SUBSCRIPTION

    async def _load(self, user_id: str) -> Dict[str, SourceGrant]:
        plan_id = await self.store.get_profile_plan_id(user_id)
        if not plan_id:
            return {}

        rows = await self.store.get_plan_features(plan_id)
        return collect_grants(self.source, (row for row in rows if not row.is_restrictive))


class ProgramPlanProvider(AccessSourceProvider):
    """Features of the program plans behind the user's active enrollments."""

    source = AccessSource.PROGRAM_PLAN

    async def _load(self, user_id: str) -> Dict[str, SourceGrant]:
        enrollments = await self.store.get_active_enrollments(user_id)
        if not enrollments:
            return {}

        needs_tier_lookup = [e.program_id for e in enrollments if not e.program_plan_id and e.tier]
        tier_plans = {}
        if needs_tier_lookup:
            tier_plans = await self.store.get_program_tier_plans(needs_tier_lookup)

        plan_ids: List[str] = []
        for enrollment in enrollments:
            plan_id: Optional[str] = enrollment.program_plan_id
            if not plan_id and enrollment.tier:
                plan_id = tier_plans.get((enrollment.program_id, enrollment.tier))
            if not plan_id:
                plan_id = enrollment.default_program_plan_id
            if plan_id and plan_id not in plan_ids:
                plan_ids.append(plan_id)

        if not plan_ids:
            return {}

        rows = await self.store.get_program_plan_features(plan_ids)
        return collect_grants(self.source, rows)


class AddOnProvider(AccessSourceProvider):
    """Features of unexpired add-on bundles. Add-on features are unlimited."""

    source = AccessSource.ADD_ON

    def __init__(self, store: DataStore, clock: Clock = utcnow):
        super().__init__(store)
        self.clock = clock

    async def _load(self, user_id: str) -> Dict[str, SourceGrant]:
        add_ons = await self.store.get_user_add_ons(user_id)
        now = self.clock()
        active_ids = [
            add_on.add_on_id for add_on in add_ons
            if add_on.expires_at is None or as_utc(add_on.expires_at) > now
        ]
        if not active_ids:
            return {}

        keys = await self.store.get_add_on_features(active_ids)
        return {key: SourceGrant(key, self.source) for key in keys}


class TrackProvider(AccessSourceProvider):
    """Features of active tracks the user is actively enrolled in."""

    source = AccessSource.TRACK

    async def _load(self, user_id: str) -> Dict[str, SourceGrant]:
        tracks = await self.store.get_user_tracks(user_id)
        track_ids = [t.track_id for t in tracks if t.is_active and t.track_is_active]
        if not track_ids:
            return {}

        rows = await self.store.get_track_features(track_ids)
        return collect_grants(self.source, (row for row in rows if not row.is_restrictive))


class OrgSponsoredProvider(AccessSourceProvider):
    """Features of the highest-tier plan sponsored by the user's organisations.

    Restrictive rows on the sponsored plan are organisation policy and deny
    the feature regardless of other sources.
    """

    source = AccessSource.ORG_SPONSORED

    async def _load(self, user_id: str) -> Dict[str, SourceGrant]:
        sponsorships = await self.store.get_org_sponsorships(user_id)
        if not sponsorships:
            return {}

        best = max(sponsorships, key=lambda s: s.tier_level)
        rows = await self.store.get_plan_features(best.plan_id)
        return collect_grants(self.source, rows)


def build_providers(store: DataStore, clock: Clock = utcnow) -> List[AccessSourceProvider]:
    """One provider per access source."""
    return [
        SubscriptionProvider(store),
        ProgramPlanProvider(store),
        AddOnProvider(store, clock=clock),
        TrackProvider(store),
        OrgSponsoredProvider(store),
    ]
