"""
In-memory implementation of the platform query interface.

Used for local runs without a database and throughout the test suite.
Methods listed in ``failing`` raise DataStoreError to simulate an
unreachable backend.
"""

from collections import defaultdict
from datetime import datetime
from typing import Dict, Optional, List, Iterable, Tuple, Set

from shared.errors import DataStoreError
from ..timeutil import as_utc
from .base import (
    DataStore, PlanFeatureRow, EnrollmentRow, UserAddOnRow, UserTrackRow,
    SponsorshipRow, PlanRow, FeatureCatalogRow, AuditEntry
)


class InMemoryDataStore(DataStore):
    """Dictionary-backed data store."""

    def __init__(self):
        self.roles: Dict[str, List[str]] = defaultdict(list)
        self.profile_plans: Dict[str, str] = {}
        self.plans: Dict[str, PlanRow] = {}
        self.plan_features: Dict[str, List[PlanFeatureRow]] = defaultdict(list)
        self.enrollments: List[EnrollmentRow] = []
        self.program_tier_plans: Dict[Tuple[str, str], str] = {}
        self.program_plan_features: Dict[str, List[PlanFeatureRow]] = defaultdict(list)
        self.user_add_ons: Dict[str, List[UserAddOnRow]] = defaultdict(list)
        self.add_on_features: Dict[str, List[str]] = defaultdict(list)
        self.user_tracks: Dict[str, List[UserTrackRow]] = defaultdict(list)
        self.track_features: Dict[str, List[PlanFeatureRow]] = defaultdict(list)
        self.sponsorships: Dict[str, List[SponsorshipRow]] = defaultdict(list)
        self.usage: List[Tuple[str, str, datetime, int]] = []
        self.features: Dict[str, FeatureCatalogRow] = {}
        self.settings: Dict[str, str] = {}
        self.audit_log: List[AuditEntry] = []
        self.failing: Set[str] = set()

    def _check(self, method: str):
        if method in self.failing:
            raise DataStoreError("memory", f"{method} unavailable")

    async def get_user_roles(self, user_id: str) -> List[str]:
        self._check("get_user_roles")
        return list(self.roles.get(user_id, []))

    async def get_profile_plan_id(self, user_id: str) -> Optional[str]:
        self._check("get_profile_plan_id")
        return self.profile_plans.get(user_id)

    async def get_plan_features(self, plan_id: str) -> List[PlanFeatureRow]:
        self._check("get_plan_features")
        return list(self.plan_features.get(plan_id, []))

    async def get_plans(self) -> List[PlanRow]:
        self._check("get_plans")
        active = [plan for plan in self.plans.values() if plan.is_active]
        return sorted(active, key=lambda plan: plan.tier_level)

    async def get_active_enrollments(self, user_id: str) -> List[EnrollmentRow]:
        self._check("get_active_enrollments")
        return [
            enrollment for enrollment in self.enrollments
            if enrollment.user_id == user_id and enrollment.status == "active"
        ]

    async def get_program_tier_plans(self, program_ids: Iterable[str]) -> Dict[Tuple[str, str], str]:
        self._check("get_program_tier_plans")
        wanted = set(program_ids)
        return {key: plan_id for key, plan_id in self.program_tier_plans.items() if key[0] in wanted}

    async def get_program_plan_features(self, program_plan_ids: Iterable[str]) -> List[PlanFeatureRow]:
        self._check("get_program_plan_features")
        rows: List[PlanFeatureRow] = []
        for plan_id in program_plan_ids:
            rows.extend(row for row in self.program_plan_features.get(plan_id, []) if row.enabled)
        return rows

    async def get_user_add_ons(self, user_id: str) -> List[UserAddOnRow]:
        self._check("get_user_add_ons")
        return list(self.user_add_ons.get(user_id, []))

    async def get_add_on_features(self, add_on_ids: Iterable[str]) -> List[str]:
        self._check("get_add_on_features")
        keys: List[str] = []
        for add_on_id in add_on_ids:
            for key in self.add_on_features.get(add_on_id, []):
                if key not in keys:
                    keys.append(key)
        return keys

    async def get_user_tracks(self, user_id: str) -> List[UserTrackRow]:
        self._check("get_user_tracks")
        return list(self.user_tracks.get(user_id, []))

    async def get_track_features(self, track_ids: Iterable[str]) -> List[PlanFeatureRow]:
        self._check("get_track_features")
        rows: List[PlanFeatureRow] = []
        for track_id in track_ids:
            rows.extend(row for row in self.track_features.get(track_id, []) if row.enabled)
        return rows

    async def get_org_sponsorships(self, user_id: str) -> List[SponsorshipRow]:
        self._check("get_org_sponsorships")
        return list(self.sponsorships.get(user_id, []))

    async def get_feature_usage(self, user_id: str, feature_key: str, period_start: datetime) -> int:
        self._check("get_feature_usage")
        return sum(
            count for uid, key, at, count in self.usage
            if uid == user_id and key == feature_key and as_utc(at) >= as_utc(period_start)
        )

    async def get_enrollment(self, user_id: str, program_id: str) -> Optional[EnrollmentRow]:
        self._check("get_enrollment")
        matches = [
            enrollment for enrollment in self.enrollments
            if enrollment.user_id == user_id and enrollment.program_id == program_id
        ]
        if not matches:
            return None
        # Latest enrollment wins; rows without created_at sort first
        return max(matches, key=lambda e: as_utc(e.created_at or datetime.min))

    async def get_feature(self, feature_key: str) -> Optional[FeatureCatalogRow]:
        self._check("get_feature")
        return self.features.get(feature_key)

    async def get_system_setting(self, key: str) -> Optional[str]:
        self._check("get_system_setting")
        return self.settings.get(key)

    async def set_system_setting(self, key: str, value: str) -> Optional[str]:
        self._check("set_system_setting")
        previous = self.settings.get(key)
        self.settings[key] = value
        return previous

    async def insert_audit_log(self, entry: AuditEntry) -> None:
        self._check("insert_audit_log")
        self.audit_log.append(entry)
