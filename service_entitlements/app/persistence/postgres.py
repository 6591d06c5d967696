"""
PostgreSQL persistence layer for Entitlements Service.
"""

import json
from typing import Dict, Any, Optional, List, Iterable, Tuple
from datetime import datetime

import asyncpg

from shared.logging import get_logger
from shared.errors import DataStoreError, ServiceError
from shared.retry import retry_on_exception, RetryConfig, RetryError
from .base import (
    DataStore, PlanFeatureRow, EnrollmentRow, UserAddOnRow, UserTrackRow,
    SponsorshipRow, PlanRow, FeatureCatalogRow, AuditEntry
)


_TRANSIENT_ERRORS = (
    asyncpg.exceptions.ConnectionDoesNotExistError,
    asyncpg.exceptions.TooManyConnectionsError,
    asyncpg.exceptions.CannotConnectNowError,
    ConnectionError,
    OSError,
)

_ENROLLMENT_COLUMNS = """
    e.id AS enrollment_id, e.client_user_id AS user_id, e.program_id, e.status,
    e.program_plan_id, e.tier, p.default_program_plan_id,
    e.completed_at, e.end_date, e.created_at
"""


class PostgreSQLPersistence(DataStore):
    """asyncpg-backed implementation of the platform query interface."""

    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 10):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.logger = get_logger("entitlements.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Start the persistence layer."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=30
            )
            self.logger.info("PostgreSQL persistence started")

        except Exception as e:
            self.logger.error("Failed to start PostgreSQL persistence", error=str(e))
            raise ServiceError("PostgreSQL persistence failed to start", details={"error": str(e)})

    async def stop(self):
        """Stop the persistence layer."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL persistence stopped")

    async def health_check(self) -> bool:
        """Check database health."""
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception:
            return False

    @retry_on_exception(_TRANSIENT_ERRORS, config=RetryConfig(max_attempts=3, base_delay=0.2))
    async def _run(self, method: str, query: str, *args):
        if self.pool is None:
            raise DataStoreError("postgres", "persistence not started")
        async with self.pool.acquire() as conn:
            return await getattr(conn, method)(query, *args)

    async def _query(self, method: str, query: str, *args):
        """Run a query, translating driver failures into DataStoreError."""
        try:
            return await self._run(method, query, *args)
        except DataStoreError:
            raise
        except RetryError as e:
            raise DataStoreError("postgres", str(e.last_exception)) from e
        except asyncpg.PostgresError as e:
            self.logger.error("Query failed", error=str(e))
            raise DataStoreError("postgres", str(e)) from e

    # Identity

    async def get_user_roles(self, user_id: str) -> List[str]:
        rows = await self._query("fetch", """
            SELECT role FROM user_roles WHERE user_id = $1
        """, user_id)
        return [row["role"] for row in rows]

    # Subscription plans

    async def get_profile_plan_id(self, user_id: str) -> Optional[str]:
        return await self._query("fetchval", """
            SELECT plan_id FROM profiles WHERE id = $1
        """, user_id)

    async def get_plan_features(self, plan_id: str) -> List[PlanFeatureRow]:
        rows = await self._query("fetch", """
            SELECT f.key AS feature_key, pf.enabled, pf.limit_value,
                   COALESCE(pf.is_restrictive, FALSE) AS is_restrictive
            FROM plan_features pf
            JOIN features f ON f.id = pf.feature_id
            WHERE pf.plan_id = $1
        """, plan_id)
        return [self._row_to_plan_feature(row) for row in rows]

    async def get_plans(self) -> List[PlanRow]:
        rows = await self._query("fetch", """
            SELECT id, name, tier_level, is_purchasable, is_active
            FROM plans
            WHERE is_active = TRUE
            ORDER BY tier_level
        """)
        return [
            PlanRow(
                plan_id=row["id"],
                name=row["name"],
                tier_level=row["tier_level"],
                is_purchasable=row["is_purchasable"],
                is_active=row["is_active"],
            )
            for row in rows
        ]

    # Program plans

    async def get_active_enrollments(self, user_id: str) -> List[EnrollmentRow]:
        rows = await self._query("fetch", f"""
            SELECT {_ENROLLMENT_COLUMNS}
            FROM client_enrollments e
            JOIN programs p ON p.id = e.program_id
            WHERE e.client_user_id = $1 AND e.status = 'active'
        """, user_id)
        return [self._row_to_enrollment(row) for row in rows]

    async def get_program_tier_plans(self, program_ids: Iterable[str]) -> Dict[Tuple[str, str], str]:
        ids = list(program_ids)
        if not ids:
            return {}
        rows = await self._query("fetch", """
            SELECT program_id, tier_name, program_plan_id
            FROM program_tier_plans
            WHERE program_id = ANY($1::text[])
        """, ids)
        return {(row["program_id"], row["tier_name"]): row["program_plan_id"] for row in rows}

    async def get_program_plan_features(self, program_plan_ids: Iterable[str]) -> List[PlanFeatureRow]:
        ids = list(program_plan_ids)
        if not ids:
            return []
        rows = await self._query("fetch", """
            SELECT f.key AS feature_key, ppf.enabled, ppf.limit_value,
                   FALSE AS is_restrictive
            FROM program_plan_features ppf
            JOIN features f ON f.id = ppf.feature_id
            WHERE ppf.program_plan_id = ANY($1::text[]) AND ppf.enabled = TRUE
        """, ids)
        return [self._row_to_plan_feature(row) for row in rows]

    # Add-ons

    async def get_user_add_ons(self, user_id: str) -> List[UserAddOnRow]:
        rows = await self._query("fetch", """
            SELECT add_on_id, expires_at FROM user_add_ons WHERE user_id = $1
        """, user_id)
        return [UserAddOnRow(add_on_id=row["add_on_id"], expires_at=row["expires_at"]) for row in rows]

    async def get_add_on_features(self, add_on_ids: Iterable[str]) -> List[str]:
        ids = list(add_on_ids)
        if not ids:
            return []
        rows = await self._query("fetch", """
            SELECT DISTINCT f.key
            FROM add_on_features af
            JOIN features f ON f.id = af.feature_id
            WHERE af.add_on_id = ANY($1::text[])
        """, ids)
        return [row["key"] for row in rows]

    # Tracks

    async def get_user_tracks(self, user_id: str) -> List[UserTrackRow]:
        rows = await self._query("fetch", """
            SELECT ut.track_id, ut.is_active, t.is_active AS track_is_active
            FROM user_tracks ut
            JOIN tracks t ON t.id = ut.track_id
            WHERE ut.user_id = $1
        """, user_id)
        return [
            UserTrackRow(
                track_id=row["track_id"],
                is_active=row["is_active"],
                track_is_active=row["track_is_active"],
            )
            for row in rows
        ]

    async def get_track_features(self, track_ids: Iterable[str]) -> List[PlanFeatureRow]:
        ids = list(track_ids)
        if not ids:
            return []
        rows = await self._query("fetch", """
            SELECT f.key AS feature_key, tf.is_enabled AS enabled, tf.limit_value,
                   FALSE AS is_restrictive
            FROM track_features tf
            JOIN features f ON f.id = tf.feature_id
            WHERE tf.track_id = ANY($1::text[]) AND tf.is_enabled = TRUE
        """, ids)
        return [self._row_to_plan_feature(row) for row in rows]

    # Organisations

    async def get_org_sponsorships(self, user_id: str) -> List[SponsorshipRow]:
        rows = await self._query("fetch", """
            SELECT om.organization_id, pl.id AS plan_id, pl.tier_level
            FROM organization_members om
            JOIN plans pl ON pl.id = om.sponsored_plan_id
            WHERE om.user_id = $1 AND om.is_active = TRUE
        """, user_id)
        return [
            SponsorshipRow(
                organization_id=row["organization_id"],
                plan_id=row["plan_id"],
                tier_level=row["tier_level"],
            )
            for row in rows
        ]

    # Usage

    async def get_feature_usage(self, user_id: str, feature_key: str, period_start: datetime) -> int:
        used = await self._query("fetchval", """
            SELECT COALESCE(SUM(ut.used_count), 0)
            FROM usage_tracking ut
            JOIN features f ON f.id = ut.feature_id
            WHERE ut.user_id = $1 AND f.key = $2 AND ut.period_start >= $3
        """, user_id, feature_key, period_start)
        return int(used or 0)

    # Enrollment lifecycle

    async def get_enrollment(self, user_id: str, program_id: str) -> Optional[EnrollmentRow]:
        row = await self._query("fetchrow", f"""
            SELECT {_ENROLLMENT_COLUMNS}
            FROM client_enrollments e
            JOIN programs p ON p.id = e.program_id
            WHERE e.client_user_id = $1 AND e.program_id = $2
            ORDER BY e.created_at DESC
            LIMIT 1
        """, user_id, program_id)
        return self._row_to_enrollment(row) if row else None

    # Feature catalogue

    async def get_feature(self, feature_key: str) -> Optional[FeatureCatalogRow]:
        row = await self._query("fetchrow", """
            SELECT f.key, f.is_active, offer.name AS offering_name, offer.kind AS offering_kind
            FROM features f
            LEFT JOIN LATERAL (
                SELECT * FROM (
                    SELECT pl.name, 'plan' AS kind, 0 AS rank, pl.tier_level AS tier
                    FROM plan_features pf JOIN plans pl ON pl.id = pf.plan_id
                    WHERE pf.feature_id = f.id AND pf.enabled = TRUE
                    UNION ALL
                    SELECT t.name, 'track', 1, 0
                    FROM track_features tf JOIN tracks t ON t.id = tf.track_id
                    WHERE tf.feature_id = f.id AND tf.is_enabled = TRUE
                    UNION ALL
                    SELECT a.name, 'add_on', 2, 0
                    FROM add_on_features af JOIN add_ons a ON a.id = af.add_on_id
                    WHERE af.feature_id = f.id
                    UNION ALL
                    SELECT pp.name, 'program_plan', 3, pp.tier_level
                    FROM program_plan_features ppf JOIN program_plans pp ON pp.id = ppf.program_plan_id
                    WHERE ppf.feature_id = f.id AND ppf.enabled = TRUE
                ) offers
                ORDER BY rank, tier
                LIMIT 1
            ) offer ON TRUE
            WHERE f.key = $1
        """, feature_key)
        if not row:
            return None
        return FeatureCatalogRow(
            feature_key=row["key"],
            is_active=row["is_active"],
            is_monetized=row["offering_name"] is not None,
            offering_name=row["offering_name"],
            offering_kind=row["offering_kind"],
        )

    # System settings

    async def get_system_setting(self, key: str) -> Optional[str]:
        return await self._query("fetchval", """
            SELECT value FROM system_settings WHERE key = $1
        """, key)

    async def set_system_setting(self, key: str, value: str) -> Optional[str]:
        previous = await self.get_system_setting(key)
        await self._query("execute", """
            INSERT INTO system_settings (key, value) VALUES ($1, $2)
            ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value
        """, key, value)
        self.logger.info("System setting saved", key=key)
        return previous

    # Audit

    async def insert_audit_log(self, entry: AuditEntry) -> None:
        await self._query("execute", """
            INSERT INTO admin_audit_logs (
                action, entity_type, entity_id, admin_user_id,
                old_values, new_values, created_at
            ) VALUES ($1, $2, $3, $4, $5::jsonb, $6::jsonb, $7)
        """,
            entry.action, entry.entity_type, entry.entity_id, entry.actor_id,
            self._to_json(entry.old_values), self._to_json(entry.new_values), entry.created_at
        )

    @staticmethod
    def _to_json(values: Optional[Dict[str, Any]]) -> Optional[str]:
        return json.dumps(values, default=str) if values is not None else None

    @staticmethod
    def _row_to_plan_feature(row) -> PlanFeatureRow:
        return PlanFeatureRow(
            feature_key=row["feature_key"],
            enabled=row["enabled"],
            limit_value=row["limit_value"],
            is_restrictive=row["is_restrictive"],
        )

    @staticmethod
    def _row_to_enrollment(row) -> EnrollmentRow:
        return EnrollmentRow(
            enrollment_id=row["enrollment_id"],
            user_id=row["user_id"],
            program_id=row["program_id"],
            status=row["status"],
            program_plan_id=row["program_plan_id"],
            tier=row["tier"],
            default_program_plan_id=row["default_program_plan_id"],
            completed_at=row["completed_at"],
            end_date=row["end_date"],
            created_at=row["created_at"],
        )
