"""
System settings package: typed, cached reads of platform settings with
hardcoded fallbacks, and audited admin writes.
"""

from .system_settings import (
    SystemSettingsLoader, SETTING_DEFAULTS, parse_setting,
    ALUMNI_GRACE_PERIOD_DAYS, MAX_RECURRENCE_OCCURRENCES, CREDIT_TO_EUR_RATIO
)

__all__ = [
    "SystemSettingsLoader",
    "SETTING_DEFAULTS",
    "parse_setting",
    "ALUMNI_GRACE_PERIOD_DAYS",
    "MAX_RECURRENCE_OCCURRENCES",
    "CREDIT_TO_EUR_RATIO",
]
