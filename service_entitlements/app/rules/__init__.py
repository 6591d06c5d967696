"""
Entitlement rules package.

Turns per-source grants into one access decision per feature. Sources are
ranked by a configured priority; the highest-ranked source that enables a
feature and still has usage left is reported as its provenance.

Modules of interest:
- models: Access sources, grants, snapshots, records and API models.
- engine: Aggregator and the pure resolution helpers behind it.
- plans: Max-plan detection and effective tier.
"""

from .models import (
    AccessSource, SourceGrant, SourceResult, EntitlementSnapshot,
    EntitlementRecord, FeatureLossPreview, parse_priority
)
from .engine import EntitlementAggregator, resolve_record, enabled_keys
from .plans import is_max_plan_tier, effective_tier, PlanTierResolver

__all__ = [
    "AccessSource",
    "SourceGrant",
    "SourceResult",
    "EntitlementSnapshot",
    "EntitlementRecord",
    "FeatureLossPreview",
    "parse_priority",
    "EntitlementAggregator",
    "resolve_record",
    "enabled_keys",
    "is_max_plan_tier",
    "effective_tier",
    "PlanTierResolver",
]
