"""
Persistence package for Entitlements Service.

- base: DataStore interface and the row types it returns.
- postgres: asyncpg implementation against the platform database.
- memory: dictionary-backed implementation for local runs and tests.
"""

from .base import (
    DataStore, PlanFeatureRow, EnrollmentRow, UserAddOnRow, UserTrackRow,
    SponsorshipRow, PlanRow, FeatureCatalogRow, AuditEntry
)
from .memory import InMemoryDataStore

__all__ = [
    "DataStore",
    "PlanFeatureRow",
    "EnrollmentRow",
    "UserAddOnRow",
    "UserTrackRow",
    "SponsorshipRow",
    "PlanRow",
    "FeatureCatalogRow",
    "AuditEntry",
    "InMemoryDataStore",
]
