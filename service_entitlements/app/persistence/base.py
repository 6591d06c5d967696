"""
Query interface consumed by the Entitlements Service.

Row types mirror the platform tables the service reads. Implementations
return empty lists / None for "no data" and raise for fetch failures.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Any, Optional, List, Iterable, Tuple


@dataclass(frozen=True)
class PlanFeatureRow:
    """A feature row attached to a plan (subscription, program plan or track)."""
    feature_key: str
    enabled: bool = True
    limit_value: Optional[int] = None
    is_restrictive: bool = False


@dataclass(frozen=True)
class EnrollmentRow:
    """A client enrollment in a program."""
    enrollment_id: str
    user_id: str
    program_id: str
    status: str
    program_plan_id: Optional[str] = None
    tier: Optional[str] = None
    default_program_plan_id: Optional[str] = None
    completed_at: Optional[datetime] = None
    end_date: Optional[datetime] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class UserAddOnRow:
    add_on_id: str
    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class UserTrackRow:
    track_id: str
    is_active: bool = True
    track_is_active: bool = True


@dataclass(frozen=True)
class SponsorshipRow:
    """Active organisation membership carrying a sponsored plan."""
    organization_id: str
    plan_id: str
    tier_level: int


@dataclass(frozen=True)
class PlanRow:
    plan_id: str
    name: str
    tier_level: int
    is_purchasable: Optional[bool] = True
    is_active: bool = True


@dataclass(frozen=True)
class FeatureCatalogRow:
    """Catalogue entry for a feature and its cheapest offering."""
    feature_key: str
    is_active: bool
    is_monetized: bool
    offering_name: Optional[str] = None
    offering_kind: Optional[str] = None


@dataclass
class AuditEntry:
    action: str
    entity_type: str
    entity_id: Optional[str]
    actor_id: Optional[str]
    old_values: Optional[Dict[str, Any]] = None
    new_values: Optional[Dict[str, Any]] = None
    created_at: datetime = field(default_factory=datetime.now)


class DataStore(ABC):
    """Read (and narrow write) interface over the platform database."""

    async def start(self):
        """Open connections."""

    async def stop(self):
        """Close connections."""

    async def health_check(self) -> bool:
        return True

    # Identity

    @abstractmethod
    async def get_user_roles(self, user_id: str) -> List[str]:
        ...

    # Subscription plans

    @abstractmethod
    async def get_profile_plan_id(self, user_id: str) -> Optional[str]:
        ...

    @abstractmethod
    async def get_plan_features(self, plan_id: str) -> List[PlanFeatureRow]:
        ...

    @abstractmethod
    async def get_plans(self) -> List[PlanRow]:
        """Active subscription plans ordered by tier level."""

    # Program plans

    @abstractmethod
    async def get_active_enrollments(self, user_id: str) -> List[EnrollmentRow]:
        ...

    @abstractmethod
    async def get_program_tier_plans(self, program_ids: Iterable[str]) -> Dict[Tuple[str, str], str]:
        """Map (program_id, tier_name) to program_plan_id."""

    @abstractmethod
    async def get_program_plan_features(self, program_plan_ids: Iterable[str]) -> List[PlanFeatureRow]:
        ...

    # Add-ons

    @abstractmethod
    async def get_user_add_ons(self, user_id: str) -> List[UserAddOnRow]:
        ...

    @abstractmethod
    async def get_add_on_features(self, add_on_ids: Iterable[str]) -> List[str]:
        ...

    # Tracks

    @abstractmethod
    async def get_user_tracks(self, user_id: str) -> List[UserTrackRow]:
        ...

    @abstractmethod
    async def get_track_features(self, track_ids: Iterable[str]) -> List[PlanFeatureRow]:
        ...

    # Organisations

    @abstractmethod
    async def get_org_sponsorships(self, user_id: str) -> List[SponsorshipRow]:
        ...

    # Usage

    @abstractmethod
    async def get_feature_usage(self, user_id: str, feature_key: str, period_start: datetime) -> int:
        ...

    # Enrollment lifecycle

    @abstractmethod
    async def get_enrollment(self, user_id: str, program_id: str) -> Optional[EnrollmentRow]:
        """Most recent enrollment of a user in a program."""

    # Feature catalogue

    @abstractmethod
    async def get_feature(self, feature_key: str) -> Optional[FeatureCatalogRow]:
        ...

    # System settings

    @abstractmethod
    async def get_system_setting(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set_system_setting(self, key: str, value: str) -> Optional[str]:
        """Upsert a setting, returning the previous value."""

    # Audit

    @abstractmethod
    async def insert_audit_log(self, entry: AuditEntry) -> None:
        ...
