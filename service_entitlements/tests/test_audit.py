"""
Unit tests for the audit logger.
"""

import pytest

from service_entitlements.app.audit.audit import AuditLogger
from shared.test_helpers import TestDataFactory


class TestAuditLogger:
    """Test cases for AuditLogger."""

    @pytest.fixture
    def store(self):
        """Create an in-memory store."""
        return TestDataFactory.create_store()

    @pytest.mark.asyncio
    async def test_entry_written(self, store):
        """Test scheduled entries land in the store once drained."""
        audit = AuditLogger(store)

        audit.log(
            action="system_setting.updated",
            entity_type="system_settings",
            entity_id="alumni_grace_period_days",
            actor_id="admin-1",
            old_values={"value": "90"},
            new_values={"value": "60"}
        )
        await audit.drain()

        assert len(store.audit_log) == 1
        entry = store.audit_log[0]
        assert entry.actor_id == "admin-1"
        assert entry.new_values == {"value": "60"}
        assert audit.pending == 0

    @pytest.mark.asyncio
    async def test_failure_is_swallowed(self, store):
        """Test a failing audit write never raises to the caller."""
        store.failing.add("insert_audit_log")
        audit = AuditLogger(store)

        task = audit.log(action="feature.toggled", entity_type="features", entity_id="ai_insights")
        await audit.drain()

        assert task.done() is True
        assert task.exception() is None
        assert store.audit_log == []

    @pytest.mark.asyncio
    async def test_drain_without_pending(self, store):
        """Test draining an idle logger returns immediately."""
        audit = AuditLogger(store)

        await audit.drain()

        assert audit.pending == 0
