"""
Entitlement data models for Entitlements Service.
"""

from typing import Dict, Optional, List, Sequence, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from ..timeutil import utcnow


class AccessSource(str, Enum):
    """Channels that can grant a feature."""
    SUBSCRIPTION = "subscription"
    PROGRAM_PLAN = "program_plan"
    ADD_ON = "add_on"
    TRACK = "track"
    ORG_SPONSORED = "org_sponsored"


def parse_priority(names: Sequence[str]) -> List[AccessSource]:
    """Build a total source order from configured names.

    Unknown names are rejected; sources missing from the list are appended in
    declaration order so every source keeps a rank.
    """
    order: List[AccessSource] = []
    for name in names:
        source = AccessSource(name)
        if source not in order:
            order.append(source)
    for source in AccessSource:
        if source not in order:
            order.append(source)
    return order


DEFAULT_PRIORITY: List[AccessSource] = list(AccessSource)


@dataclass(frozen=True)
class SourceGrant:
    """What one source says about one feature."""
    feature_key: str
    source: AccessSource
    enabled: bool = True
    limit: Optional[int] = None  # None = unlimited
    denied: bool = False

    def merge(self, other: "SourceGrant") -> "SourceGrant":
        """Combine two grants of the same source; highest limit wins."""
        if self.denied or other.denied:
            return SourceGrant(self.feature_key, self.source, enabled=False, limit=0, denied=True)
        if self.limit is None or other.limit is None:
            limit = None
        else:
            limit = max(self.limit, other.limit)
        return SourceGrant(self.feature_key, self.source, enabled=self.enabled or other.enabled, limit=limit)


@dataclass(frozen=True)
class SourceResult:
    """Outcome of one provider fetch."""
    source: AccessSource
    grants: Dict[str, SourceGrant] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    def enabled_features(self) -> List[str]:
        return [key for key, grant in self.grants.items() if grant.enabled and not grant.denied]

    @classmethod
    def empty(cls, source: AccessSource) -> "SourceResult":
        return cls(source=source)

    @classmethod
    def failure(cls, source: AccessSource, error: str) -> "SourceResult":
        return cls(source=source, error=error)


@dataclass(frozen=True)
class EntitlementSnapshot:
    """Complete set of provider results for one user at one moment."""
    user_id: str
    results: Dict[AccessSource, SourceResult]
    fetched_at: datetime = field(default_factory=utcnow)

    @property
    def is_partial(self) -> bool:
        return any(result.failed for result in self.results.values())

    @property
    def failed_sources(self) -> List[AccessSource]:
        return [source for source, result in self.results.items() if result.failed]

    def grants_for(self, feature_key: str) -> Dict[AccessSource, SourceGrant]:
        grants = {}
        for source, result in self.results.items():
            grant = result.grants.get(feature_key)
            if grant is not None:
                grants[source] = grant
        return grants

    def feature_keys(self) -> Iterable[str]:
        keys = set()
        for result in self.results.values():
            keys.update(result.grants.keys())
        return keys


@dataclass(frozen=True)
class EntitlementRecord:
    """Resolved access to one feature, with provenance."""
    feature_key: str
    enabled: bool
    source: Optional[AccessSource] = None
    remaining_usage: Optional[int] = None
    limit: Optional[int] = None
    denied_by: Optional[AccessSource] = None
    exhausted_by: Optional[AccessSource] = None

    @property
    def is_usable(self) -> bool:
        """Enabled with usage left; enabled-but-exhausted counts as disabled."""
        if not self.enabled:
            return False
        return self.remaining_usage is None or self.remaining_usage > 0

    @property
    def primary_source(self) -> Optional[AccessSource]:
        """Winning source, or the exhausted source when none qualified."""
        return self.source or self.exhausted_by


@dataclass(frozen=True)
class FeatureLossPreview:
    """Features lost vs. retained if one source were removed."""
    source_to_remove: AccessSource
    features_to_lose: List[str]
    features_retained: List[str]
    covered_elsewhere: List[str] = field(default_factory=list)


class EntitlementRecordResponse(BaseModel):
    """Response model for a single feature resolution."""
    user_id: str
    feature_key: str
    enabled: bool
    source: Optional[AccessSource] = None
    remaining_usage: Optional[int] = None
    limit: Optional[int] = None
    denied_by: Optional[AccessSource] = None
    exhausted_by: Optional[AccessSource] = None
    usable: bool = Field(..., description="Enabled and not out of usage")

    @classmethod
    def from_record(cls, user_id: str, record: EntitlementRecord) -> "EntitlementRecordResponse":
        return cls(
            user_id=user_id,
            feature_key=record.feature_key,
            enabled=record.enabled,
            source=record.source,
            remaining_usage=record.remaining_usage,
            limit=record.limit,
            denied_by=record.denied_by,
            exhausted_by=record.exhausted_by,
            usable=record.is_usable,
        )


class EnabledFeaturesResponse(BaseModel):
    """Response model for the enabled feature set."""
    user_id: str
    features: List[str]
    degraded_sources: List[AccessSource] = Field(
        default_factory=list, description="Sources that could not be fetched"
    )


class AccessSourceResponse(BaseModel):
    user_id: str
    feature_key: str
    source: Optional[AccessSource] = None


class FeatureLossPreviewResponse(BaseModel):
    """Response model for a what-if source removal."""
    user_id: str
    source_to_remove: AccessSource
    features_to_lose: List[str]
    features_retained: List[str]
    covered_elsewhere: List[str] = Field(default_factory=list)
