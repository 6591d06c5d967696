"""
Typed access to the ``system_settings`` table.

Values are cached in-process for a configurable TTL. A missing row, a failed
read or an unparsable value resolves to the hardcoded default, so callers
always get a usable number.
"""

import math
import time
from typing import Dict, Any, Optional, Callable, Tuple

from shared.logging import get_logger
from shared.errors import (
    PlatformException, AuthenticationError, AuthorizationError, ValidationError
)
from ..persistence.base import DataStore


ALUMNI_GRACE_PERIOD_DAYS = "alumni_grace_period_days"
MAX_RECURRENCE_OCCURRENCES = "max_recurrence_occurrences"
CREDIT_TO_EUR_RATIO = "credit_to_eur_ratio"

SETTING_DEFAULTS: Dict[str, Any] = {
    ALUMNI_GRACE_PERIOD_DAYS: 90,
    MAX_RECURRENCE_OCCURRENCES: 52,
    CREDIT_TO_EUR_RATIO: 1.0,
}

SETTING_TYPES: Dict[str, type] = {
    ALUMNI_GRACE_PERIOD_DAYS: int,
    MAX_RECURRENCE_OCCURRENCES: int,
    CREDIT_TO_EUR_RATIO: float,
}


def parse_setting(key: str, raw: Optional[str]) -> Any:
    """Parse a raw setting value, or return None if it is unusable."""
    if raw is None:
        return None
    kind = SETTING_TYPES.get(key)
    if kind is None:
        return raw
    try:
        value = kind(raw.strip())
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value) or value < 0:
        return None
    return value


class SystemSettingsLoader:
    """Reads and writes platform settings with a TTL cache."""

    def __init__(self,
                 store: DataStore,
                 ttl_seconds: float = 300.0,
                 audit=None,
                 clock: Callable[[], float] = time.monotonic):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.audit = audit
        self.clock = clock
        self.logger = get_logger("entitlements.settings")
        self._cache: Dict[str, Tuple[Any, float]] = {}

    async def get(self, key: str) -> Any:
        """Return a setting value, falling back to its default."""
        cached = self._cache.get(key)
        if cached is not None and cached[1] > self.clock():
            return cached[0]

        default = SETTING_DEFAULTS.get(key)
        try:
            raw = await self.store.get_system_setting(key)
        except PlatformException as e:
            self.logger.warning("Setting read failed, using default", key=key, error=e.message)
            return default

        value = parse_setting(key, raw)
        if value is None:
            if raw is not None:
                self.logger.warning("Unparsable setting, using default", key=key, raw=raw)
            value = default

        self._cache[key] = (value, self.clock() + self.ttl_seconds)
        return value

    async def grace_period_days(self) -> int:
        return await self.get(ALUMNI_GRACE_PERIOD_DAYS)

    async def max_recurrence_occurrences(self) -> int:
        return await self.get(MAX_RECURRENCE_OCCURRENCES)

    async def credit_to_eur_ratio(self) -> float:
        return await self.get(CREDIT_TO_EUR_RATIO)

    def invalidate(self, key: Optional[str] = None):
        """Drop one cached setting, or all of them."""
        if key is None:
            self._cache.clear()
        else:
            self._cache.pop(key, None)

    async def update_setting(self, key: str, value: str, actor_id: Optional[str]) -> Any:
        """Write a setting on behalf of an admin and audit the change."""
        if not actor_id:
            raise AuthenticationError("Updating settings requires an authenticated user")

        roles = await self.store.get_user_roles(actor_id)
        if "admin" not in roles:
            raise AuthorizationError(
                "Only admins can update system settings",
                {"actor_id": actor_id, "key": key}
            )

        parsed = parse_setting(key, value)
        if parsed is None:
            raise ValidationError(
                f"Invalid value for setting '{key}'",
                {"key": key, "value": value}
            )

        previous = await self.store.set_system_setting(key, value)
        self.invalidate(key)

        self.logger.info("System setting updated", key=key, actor_id=actor_id)

        if self.audit:
            self.audit.log(
                action="system_setting.updated",
                entity_type="system_settings",
                entity_id=key,
                actor_id=actor_id,
                old_values={"value": previous},
                new_values={"value": value}
            )

        return parsed
