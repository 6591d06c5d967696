"""
Access source providers: subscription, program plan, add-on, track and
organisation sponsorship. Each provider resolves the features its source
enables for a user.
"""

from .providers import (
    AccessSourceProvider, SubscriptionProvider, ProgramPlanProvider,
    AddOnProvider, TrackProvider, OrgSponsoredProvider,
    build_providers, collect_grants
)

__all__ = [
    "AccessSourceProvider",
    "SubscriptionProvider",
    "ProgramPlanProvider",
    "AddOnProvider",
    "TrackProvider",
    "OrgSponsoredProvider",
    "build_providers",
    "collect_grants",
]
