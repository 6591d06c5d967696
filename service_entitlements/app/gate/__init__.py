"""
Gate package: feature gate, capability gate and navigation visibility.
"""

from .capability import (
    GateState, DenialReason, DENIAL_MESSAGES, FeatureVisibility, GateDecision,
    VisibilityDecision, FeatureGate, GateDecisionResponse, VisibilityResponse,
    evaluate_gate, evaluate_capability, evaluate_visibility
)

__all__ = [
    "GateState",
    "DenialReason",
    "DENIAL_MESSAGES",
    "FeatureVisibility",
    "GateDecision",
    "VisibilityDecision",
    "FeatureGate",
    "GateDecisionResponse",
    "VisibilityResponse",
    "evaluate_gate",
    "evaluate_capability",
    "evaluate_visibility",
]
