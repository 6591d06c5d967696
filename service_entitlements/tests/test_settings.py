"""
Unit tests for the system settings loader.
"""

import pytest
from unittest.mock import MagicMock

from service_entitlements.app.settings.system_settings import (
    SystemSettingsLoader, SETTING_DEFAULTS, parse_setting,
    ALUMNI_GRACE_PERIOD_DAYS, CREDIT_TO_EUR_RATIO, MAX_RECURRENCE_OCCURRENCES
)
from shared.errors import AuthenticationError, AuthorizationError, ValidationError
from shared.test_helpers import TestDataFactory


class TickingClock:
    """Monotonic clock advanced by hand."""

    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestParseSetting:
    """Test cases for raw value parsing."""

    def test_typed_values(self):
        """Test known keys are parsed to their type."""
        assert parse_setting(ALUMNI_GRACE_PERIOD_DAYS, "60") == 60
        assert parse_setting(CREDIT_TO_EUR_RATIO, " 0.5 ") == 0.5

    def test_garbage(self):
        """Test unparsable and negative values are rejected."""
        assert parse_setting(ALUMNI_GRACE_PERIOD_DAYS, "ninety") is None
        assert parse_setting(MAX_RECURRENCE_OCCURRENCES, "-1") is None
        assert parse_setting(ALUMNI_GRACE_PERIOD_DAYS, None) is None

    def test_non_finite_ratio(self):
        """Test NaN and infinite ratios are rejected."""
        assert parse_setting(CREDIT_TO_EUR_RATIO, "nan") is None
        assert parse_setting(CREDIT_TO_EUR_RATIO, "inf") is None
        assert parse_setting(CREDIT_TO_EUR_RATIO, "-inf") is None

    def test_unknown_key_is_raw(self):
        """Test keys without a type are returned verbatim."""
        assert parse_setting("support_email", "help@example.com") == "help@example.com"


class TestSystemSettingsLoader:
    """Test cases for SystemSettingsLoader."""

    @pytest.fixture
    def store(self):
        """Create an in-memory store with an admin."""
        store = TestDataFactory.create_store()
        store.roles["admin-1"] = ["admin"]
        store.roles["client-1"] = ["client"]
        return store

    @pytest.fixture
    def clock(self):
        return TickingClock()

    @pytest.fixture
    def audit(self):
        """Mock audit logger."""
        return MagicMock()

    @pytest.fixture
    def loader(self, store, clock, audit):
        """Create SystemSettingsLoader instance."""
        return SystemSettingsLoader(store, ttl_seconds=300, audit=audit, clock=clock)

    @pytest.mark.asyncio
    async def test_defaults_when_missing(self, loader):
        """Test missing rows resolve to hardcoded defaults."""
        assert await loader.grace_period_days() == 90
        assert await loader.max_recurrence_occurrences() == 52
        assert await loader.credit_to_eur_ratio() == 1.0

    @pytest.mark.asyncio
    async def test_stored_value(self, loader, store):
        """Test stored values override defaults."""
        store.settings[ALUMNI_GRACE_PERIOD_DAYS] = "30"

        assert await loader.grace_period_days() == 30

    @pytest.mark.asyncio
    async def test_unparsable_value_uses_default(self, loader, store):
        """Test a corrupt row falls back to the default."""
        store.settings[ALUMNI_GRACE_PERIOD_DAYS] = "soon"

        assert await loader.grace_period_days() == SETTING_DEFAULTS[ALUMNI_GRACE_PERIOD_DAYS]

    @pytest.mark.asyncio
    async def test_fetch_failure_uses_default(self, loader, store):
        """Test a failing store falls back to the default."""
        store.settings[ALUMNI_GRACE_PERIOD_DAYS] = "30"
        store.failing.add("get_system_setting")

        assert await loader.grace_period_days() == 90

    @pytest.mark.asyncio
    async def test_ttl_cache(self, loader, store, clock):
        """Test values are cached until the TTL elapses."""
        store.settings[ALUMNI_GRACE_PERIOD_DAYS] = "30"
        assert await loader.grace_period_days() == 30

        store.settings[ALUMNI_GRACE_PERIOD_DAYS] = "45"
        clock.now = 299
        assert await loader.grace_period_days() == 30

        clock.now = 301
        assert await loader.grace_period_days() == 45

    @pytest.mark.asyncio
    async def test_update_requires_actor(self, loader):
        """Test anonymous updates fail fast."""
        with pytest.raises(AuthenticationError):
            await loader.update_setting(ALUMNI_GRACE_PERIOD_DAYS, "30", None)

    @pytest.mark.asyncio
    async def test_update_requires_admin(self, loader):
        """Test non-admins cannot update settings."""
        with pytest.raises(AuthorizationError):
            await loader.update_setting(ALUMNI_GRACE_PERIOD_DAYS, "30", "client-1")

    @pytest.mark.asyncio
    async def test_update_rejects_invalid_value(self, loader, store):
        """Test invalid values are not written."""
        with pytest.raises(ValidationError):
            await loader.update_setting(ALUMNI_GRACE_PERIOD_DAYS, "thirty", "admin-1")

        assert ALUMNI_GRACE_PERIOD_DAYS not in store.settings

    @pytest.mark.asyncio
    async def test_update_rejects_non_finite_ratio(self, loader, store):
        """Test an infinite credit ratio is never stored."""
        with pytest.raises(ValidationError):
            await loader.update_setting(CREDIT_TO_EUR_RATIO, "Infinity", "admin-1")

        assert CREDIT_TO_EUR_RATIO not in store.settings
        assert await loader.credit_to_eur_ratio() == SETTING_DEFAULTS[CREDIT_TO_EUR_RATIO]

    @pytest.mark.asyncio
    async def test_update_writes_invalidates_and_audits(self, loader, store, audit):
        """Test an update is written through, visible immediately and audited."""
        store.settings[ALUMNI_GRACE_PERIOD_DAYS] = "90"
        assert await loader.grace_period_days() == 90

        value = await loader.update_setting(ALUMNI_GRACE_PERIOD_DAYS, "60", "admin-1")

        assert value == 60
        assert store.settings[ALUMNI_GRACE_PERIOD_DAYS] == "60"
        assert await loader.grace_period_days() == 60
        audit.log.assert_called_once_with(
            action="system_setting.updated",
            entity_type="system_settings",
            entity_id=ALUMNI_GRACE_PERIOD_DAYS,
            actor_id="admin-1",
            old_values={"value": "90"},
            new_values={"value": "60"}
        )
