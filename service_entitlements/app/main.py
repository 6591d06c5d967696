"""
Entitlements service for Learnpath Access Layer.
"""

from typing import Dict, Optional

from fastapi import Header, Query
from pydantic import BaseModel, Field

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from shared.errors import AuthenticationError, ServiceError
from shared.logging import set_user_context

from .alumni.lifecycle import (
    AlumniAccessResolver, DeadlineWarningResolver, AlumniAccessResponse,
    DeadlineWarningResponse
)
from .audit.audit import AuditLogger
from .cache.redis_cache import RedisSnapshotCache
from .gate.capability import FeatureGate, GateDecisionResponse, VisibilityResponse
from .persistence.base import DataStore
from .persistence.postgres import PostgreSQLPersistence
from .rules.engine import EntitlementAggregator
from .rules.models import (
    AccessSource, parse_priority, EntitlementRecordResponse, EnabledFeaturesResponse,
    AccessSourceResponse, FeatureLossPreviewResponse
)
from .rules.plans import PlanTierResolver, is_max_plan_tier
from .settings.system_settings import SystemSettingsLoader
from .sources.providers import build_providers
from .timeutil import Clock, utcnow


class SettingUpdateRequest(BaseModel):
    value: str = Field(..., description="New raw setting value")


class MaxTierResponse(BaseModel):
    user_id: str
    tier_level: Optional[int] = None
    is_max_plan: bool


def require_actor(x_user_id: Optional[str]) -> str:
    """Authenticated user id forwarded by the gateway."""
    if not x_user_id:
        raise AuthenticationError("Missing authenticated user")
    return x_user_id


class EntitlementsService(BaseService):
    """Entitlements service implementation."""

    def __init__(self,
                 config: Optional[ServiceConfig] = None,
                 store: Optional[DataStore] = None,
                 cache: Optional[RedisSnapshotCache] = None,
                 clock: Clock = utcnow):
        config = config or get_config("entitlements", 8011)
        super().__init__("entitlements", 8011, config)

        # Initialize components
        self.store = store or PostgreSQLPersistence(self.config.postgres_dsn)
        if cache is None and self.config.enable_snapshot_cache:
            cache = RedisSnapshotCache(self.config.redis_url, self.config.snapshot_cache_ttl_seconds)
        self.cache = cache

        self.audit = AuditLogger(self.store)
        self.settings = SystemSettingsLoader(
            self.store,
            ttl_seconds=self.config.settings_cache_ttl_seconds,
            audit=self.audit
        )
        self.aggregator = EntitlementAggregator(
            build_providers(self.store, clock=clock),
            self.store,
            priority=parse_priority(self.config.source_priority),
            cache=self.cache,
            cache_ttl=self.config.snapshot_cache_ttl_seconds,
            metrics=self.metrics,
            clock=clock
        )
        self.plans = PlanTierResolver(self.store)
        self.gate = FeatureGate(self.aggregator, self.plans, self.store)
        self.alumni = AlumniAccessResolver(
            self.store,
            self.settings,
            staff_roles=self.config.staff_roles,
            urgent_threshold=self.config.urgent_threshold_days,
            clock=clock
        )
        self.deadlines = DeadlineWarningResolver(
            self.store,
            urgent_threshold=self.config.urgent_threshold_days,
            display_window=self.config.deadline_display_window_days,
            clock=clock
        )

        self._setup_entitlements_routes()

    def _setup_entitlements_routes(self):
        """Set up entitlements-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "entitlements",
                "message": "Learnpath Access Layer - Entitlements Service",
                "version": "1.0.0",
                "capabilities": [
                    "entitlements", "feature_gate", "alumni_access", "loss_preview", "settings"
                ],
                "source_priority": [source.value for source in self.aggregator.priority]
            }

        @self.app.get("/entitlements/{user_id}/features", response_model=EnabledFeaturesResponse)
        async def list_features(user_id: str):
            """Every feature the user holds through any source."""
            snapshot = await self.aggregator.fetch_snapshot(user_id)
            features = await self.aggregator.resolve_all(user_id, snapshot=snapshot)
            return EnabledFeaturesResponse(
                user_id=user_id,
                features=sorted(features),
                degraded_sources=snapshot.failed_sources
            )

        @self.app.get("/entitlements/{user_id}/features/{feature_key}",
                      response_model=EntitlementRecordResponse)
        async def resolve_feature(user_id: str, feature_key: str):
            """Resolve a single feature with its provenance."""
            record = await self.aggregator.resolve(user_id, feature_key)
            return EntitlementRecordResponse.from_record(user_id, record)

        @self.app.get("/entitlements/{user_id}/features/{feature_key}/source",
                      response_model=AccessSourceResponse)
        async def feature_source(user_id: str, feature_key: str):
            """Which source grants a feature."""
            source = await self.aggregator.get_access_source(user_id, feature_key)
            return AccessSourceResponse(user_id=user_id, feature_key=feature_key, source=source)

        @self.app.get("/entitlements/{user_id}/loss-preview", response_model=FeatureLossPreviewResponse)
        async def loss_preview(
            user_id: str,
            source: AccessSource = Query(..., description="Access source to remove")
        ):
            """Preview the features lost if one access source were removed."""
            preview = await self.aggregator.preview_feature_loss(user_id, source)
            return FeatureLossPreviewResponse(
                user_id=user_id,
                source_to_remove=preview.source_to_remove,
                features_to_lose=preview.features_to_lose,
                features_retained=preview.features_retained,
                covered_elsewhere=preview.covered_elsewhere
            )

        @self.app.post("/entitlements/{user_id}/invalidate")
        async def invalidate(user_id: str):
            """Drop the cached entitlement snapshot for a user."""
            invalidated = await self.aggregator.invalidate(user_id)
            return {"user_id": user_id, "invalidated": invalidated}

        @self.app.get("/gate/{user_id}/features/{feature_key}", response_model=GateDecisionResponse)
        async def gate_feature(user_id: str, feature_key: str):
            """Feature gate decision."""
            decision = await self.gate.check_feature(user_id, feature_key)
            return GateDecisionResponse.from_decision(user_id, feature_key, decision)

        @self.app.get("/gate/{user_id}/capabilities/{capability}", response_model=GateDecisionResponse)
        async def gate_capability(user_id: str, capability: str):
            """Capability gate decision."""
            decision = await self.gate.check_capability(user_id, capability)
            return GateDecisionResponse.from_decision(user_id, capability, decision)

        @self.app.get("/gate/{user_id}/visibility/{feature_key}", response_model=VisibilityResponse)
        async def gate_visibility(user_id: str, feature_key: str):
            """Navigation visibility of a feature."""
            decision = await self.gate.check_visibility(user_id, feature_key)
            return VisibilityResponse(
                user_id=user_id,
                feature_key=feature_key,
                visibility=decision.visibility,
                offering_name=decision.offering_name,
                offering_kind=decision.offering_kind
            )

        @self.app.get("/plans/{user_id}/max-tier", response_model=MaxTierResponse)
        async def max_tier(user_id: str):
            """Whether the user already holds the highest purchasable tier."""
            tier, plans = await self.plans.get_effective_tier(user_id)
            return MaxTierResponse(
                user_id=user_id,
                tier_level=tier,
                is_max_plan=is_max_plan_tier(tier, plans)
            )

        @self.app.get("/alumni/{user_id}/programs/{program_id}", response_model=AlumniAccessResponse)
        async def alumni_access(user_id: str, program_id: str):
            """Alumni grace-period access for a program."""
            result = await self.alumni.resolve(user_id, program_id)
            return AlumniAccessResponse(
                user_id=user_id,
                program_id=program_id,
                state=result.state,
                has_access=result.has_access,
                read_only=result.read_only,
                in_grace_period=result.in_grace_period,
                grace_expires_at=result.grace_expires_at,
                days_remaining=result.days_remaining,
                enrollment_id=result.enrollment_id,
                urgency=result.urgency
            )

        @self.app.get("/deadlines/{user_id}/programs/{program_id}", response_model=DeadlineWarningResponse)
        async def enrollment_deadline(user_id: str, program_id: str):
            """Enrollment deadline countdown for a program."""
            warning = await self.deadlines.resolve(user_id, program_id)
            return DeadlineWarningResponse(
                user_id=user_id,
                program_id=program_id,
                enrollment_id=warning.enrollment_id,
                end_date=warning.end_date,
                days_remaining=warning.days_remaining,
                is_expired=warning.is_expired,
                urgency=warning.urgency
            )

        @self.app.put("/settings/{key}")
        async def update_setting(
            key: str,
            request: SettingUpdateRequest,
            x_user_id: Optional[str] = Header(None)
        ):
            """Update a system setting. Admin only."""
            actor_id = require_actor(x_user_id)
            set_user_context(user_id=actor_id)
            value = await self.settings.update_setting(key, request.value, actor_id)
            return {"key": key, "value": value}

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check entitlements service dependencies."""
        dependencies = {}

        if self.aggregator.cache:
            try:
                dependencies["redis"] = "ok" if await self.aggregator.cache.health_check() else "error"
            except Exception:
                dependencies["redis"] = "error"

        try:
            dependencies["store"] = "ok" if await self.store.health_check() else "error"
        except Exception:
            dependencies["store"] = "error"

        return dependencies

    async def start(self):
        """Start entitlements service components."""
        await self.store.start()

        if self.cache:
            try:
                await self.cache.start()
            except ServiceError as e:
                self.logger.warning("Snapshot cache disabled", error=e.message)
                self.aggregator.cache = None

        self.logger.info(
            "Entitlements service started",
            source_priority=[source.value for source in self.aggregator.priority],
            snapshot_cache=self.aggregator.cache is not None
        )

    async def stop(self):
        """Stop entitlements service components."""
        await self.audit.drain()
        if self.aggregator.cache:
            await self.aggregator.cache.stop()
        await self.store.stop()

        self.logger.info("Entitlements service stopped")


def create_app(config: Optional[ServiceConfig] = None,
               store: Optional[DataStore] = None,
               cache: Optional[RedisSnapshotCache] = None):
    """Create entitlements service application."""
    service = EntitlementsService(config=config, store=store, cache=cache)
    return service.app


if __name__ == "__main__":
    service = EntitlementsService()
    service.run()
