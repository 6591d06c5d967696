"""
Feature and capability gates for Entitlements Service.

Gates turn a resolved entitlement into what a client should render: a
loading placeholder, denial copy (optionally with an upgrade prompt) or the
gated content itself.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Iterable

from pydantic import BaseModel

from shared.logging import get_logger
from shared.errors import PlatformException
from ..persistence.base import DataStore, FeatureCatalogRow
from ..rules.models import AccessSource, EntitlementRecord


class GateState(str, Enum):
    LOADING = "loading"
    DENIED = "denied"
    ALLOWED = "allowed"


class DenialReason(str, Enum):
    NOT_ON_PLAN = "not_on_plan"
    USAGE_LIMIT_REACHED = "usage_limit_reached"
    ORG_MANAGED = "org_managed"
    ROLE_REQUIRED = "role_required"


DENIAL_MESSAGES = {
    DenialReason.NOT_ON_PLAN: "This feature is not included in your current plan.",
    DenialReason.USAGE_LIMIT_REACHED: "You have reached your usage limit for this feature this month.",
    DenialReason.ORG_MANAGED: "Access to this feature is managed by your organization. Contact your organization admin.",
    DenialReason.ROLE_REQUIRED: "You do not have permission to access this area.",
}


class FeatureVisibility(str, Enum):
    HIDDEN = "hidden"
    LOCKED = "locked"
    ACCESSIBLE = "accessible"


@dataclass(frozen=True)
class GateDecision:
    state: GateState
    reason: Optional[DenialReason] = None
    message: Optional[str] = None
    show_upgrade_prompt: bool = False
    source: Optional[AccessSource] = None
    remaining_usage: Optional[int] = None

    @property
    def allowed(self) -> bool:
        return self.state == GateState.ALLOWED

    @classmethod
    def deny(cls, reason: DenialReason, show_upgrade_prompt: bool = False) -> "GateDecision":
        return cls(
            state=GateState.DENIED,
            reason=reason,
            message=DENIAL_MESSAGES[reason],
            show_upgrade_prompt=show_upgrade_prompt
        )


@dataclass(frozen=True)
class VisibilityDecision:
    visibility: FeatureVisibility
    offering_name: Optional[str] = None
    offering_kind: Optional[str] = None


def evaluate_gate(record: Optional[EntitlementRecord], is_max_plan: Optional[bool] = False) -> GateDecision:
    """Gate decision for a resolved entitlement; None means still loading.

    The upgrade prompt is only offered when the user is known not to hold
    the max plan. An unknown tier (``is_max_plan=None``) gets no prompt.
    """
    if record is None:
        return GateDecision(state=GateState.LOADING)

    if record.is_usable:
        return GateDecision(
            state=GateState.ALLOWED,
            source=record.source,
            remaining_usage=record.remaining_usage
        )

    if record.denied_by is not None:
        return GateDecision.deny(DenialReason.ORG_MANAGED)

    exhausted = record.exhausted_by or (record.source if record.enabled else None)
    if exhausted is not None:
        if exhausted == AccessSource.ORG_SPONSORED:
            return GateDecision.deny(DenialReason.ORG_MANAGED)
        return GateDecision.deny(DenialReason.USAGE_LIMIT_REACHED)

    return GateDecision.deny(DenialReason.NOT_ON_PLAN, show_upgrade_prompt=is_max_plan is False)


def evaluate_capability(roles: Iterable[str], capability: str) -> GateDecision:
    """Capabilities are role names; admins hold every capability."""
    roles = set(roles)
    if capability in roles or "admin" in roles:
        return GateDecision(state=GateState.ALLOWED)
    return GateDecision.deny(DenialReason.ROLE_REQUIRED)


def evaluate_visibility(feature_key: Optional[str],
                        feature: Optional[FeatureCatalogRow],
                        has_feature: bool,
                        is_admin: bool = False) -> VisibilityDecision:
    """Navigation visibility of a feature-gated item."""
    if not feature_key or is_admin:
        return VisibilityDecision(FeatureVisibility.ACCESSIBLE)

    if feature is None or not feature.is_active:
        return VisibilityDecision(FeatureVisibility.HIDDEN)

    if has_feature:
        return VisibilityDecision(FeatureVisibility.ACCESSIBLE)

    if not feature.is_monetized:
        return VisibilityDecision(FeatureVisibility.HIDDEN)

    return VisibilityDecision(
        FeatureVisibility.LOCKED,
        offering_name=feature.offering_name,
        offering_kind=feature.offering_kind
    )


class FeatureGate:
    """Gate checks backed by the aggregator and the plan catalogue."""

    def __init__(self, aggregator, plan_resolver, store: DataStore):
        self.aggregator = aggregator
        self.plan_resolver = plan_resolver
        self.store = store
        self.logger = get_logger("entitlements.gate")

    async def check_feature(self, user_id: str, feature_key: str) -> GateDecision:
        record = await self.aggregator.resolve(user_id, feature_key)

        is_max_plan: Optional[bool] = False
        if not record.is_usable and record.denied_by is None and record.exhausted_by is None:
            try:
                is_max_plan = await self.plan_resolver.is_max_plan(user_id)
            except PlatformException as e:
                self.logger.warning(
                    "Plan tier unavailable for gate",
                    user_id=user_id,
                    feature_key=feature_key,
                    error=e.message
                )
                is_max_plan = None

        decision = evaluate_gate(record, is_max_plan)
        self.logger.debug(
            "Feature gate evaluated",
            user_id=user_id,
            feature_key=feature_key,
            state=decision.state.value,
            reason=decision.reason.value if decision.reason else None
        )
        return decision

    async def check_capability(self, user_id: str, capability: str) -> GateDecision:
        """Role check; roles that cannot be read deny the capability."""
        try:
            roles = await self.store.get_user_roles(user_id)
        except PlatformException as e:
            self.logger.warning(
                "Roles unavailable for capability gate",
                user_id=user_id,
                capability=capability,
                error=e.message
            )
            return GateDecision.deny(DenialReason.ROLE_REQUIRED)
        return evaluate_capability(roles, capability)

    async def check_visibility(self, user_id: str, feature_key: Optional[str]) -> VisibilityDecision:
        """Navigation visibility; an unreadable catalogue or role list hides the feature."""
        if not feature_key:
            return VisibilityDecision(FeatureVisibility.ACCESSIBLE)

        try:
            roles = await self.store.get_user_roles(user_id)
            feature = await self.store.get_feature(feature_key)
        except PlatformException as e:
            self.logger.warning(
                "Catalogue unavailable for visibility",
                user_id=user_id,
                feature_key=feature_key,
                error=e.message
            )
            return VisibilityDecision(FeatureVisibility.HIDDEN)

        has_feature = feature_key in await self.aggregator.resolve_all(user_id)
        return evaluate_visibility(feature_key, feature, has_feature, is_admin="admin" in roles)


class GateDecisionResponse(BaseModel):
    """Response model for a gate check."""
    user_id: str
    target: str
    state: GateState
    reason: Optional[DenialReason] = None
    message: Optional[str] = None
    show_upgrade_prompt: bool = False
    source: Optional[AccessSource] = None
    remaining_usage: Optional[int] = None

    @classmethod
    def from_decision(cls, user_id: str, target: str, decision: GateDecision) -> "GateDecisionResponse":
        return cls(
            user_id=user_id,
            target=target,
            state=decision.state,
            reason=decision.reason,
            message=decision.message,
            show_upgrade_prompt=decision.show_upgrade_prompt,
            source=decision.source,
            remaining_usage=decision.remaining_usage
        )


class VisibilityResponse(BaseModel):
    user_id: str
    feature_key: str
    visibility: FeatureVisibility
    offering_name: Optional[str] = None
    offering_kind: Optional[str] = None
