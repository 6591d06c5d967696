"""
Alumni grace-period access and enrollment deadline warnings.

An enrollment moves ACTIVE -> GRACE when it is completed (or auto-completed
at its end date) and GRACE -> EXPIRED once the grace window closes. Staff
bypass the machine entirely. Nothing here is stored; every check recomputes
the state from the enrollment row and the current grace-period setting.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Sequence

from pydantic import BaseModel

from shared.logging import get_logger, set_user_context
from shared.errors import PlatformException, AuthorizationError
from ..persistence.base import DataStore, EnrollmentRow
from ..timeutil import Clock, utcnow, as_utc


SECONDS_PER_DAY = 24 * 60 * 60


class AccessState(str, Enum):
    NONE = "none"
    ACTIVE = "active"
    GRACE = "grace"
    EXPIRED = "expired"


class Urgency(str, Enum):
    URGENT = "urgent"
    NOTICE = "notice"
    HIDDEN = "hidden"


def bucket_urgency(days_remaining: Optional[int],
                   urgent_threshold: int = 7,
                   display_window: Optional[int] = None) -> Urgency:
    """Banner urgency for a countdown."""
    if days_remaining is None:
        return Urgency.HIDDEN
    if display_window is not None and days_remaining > display_window:
        return Urgency.HIDDEN
    if days_remaining <= urgent_threshold:
        return Urgency.URGENT
    return Urgency.NOTICE


def days_until(target: datetime, now: datetime) -> int:
    """Whole days left until ``target``, rounded up, never negative."""
    seconds = (as_utc(target) - as_utc(now)).total_seconds()
    return max(0, math.ceil(seconds / SECONDS_PER_DAY))


@dataclass(frozen=True)
class EnrollmentFacts:
    """The enrollment fields the lifecycle depends on."""
    status: str
    completed_at: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: EnrollmentRow) -> "EnrollmentFacts":
        return cls(status=row.status, completed_at=row.completed_at, end_date=row.end_date)

    @property
    def ended_at(self) -> Optional[datetime]:
        """Completion instant; auto-completed enrollments only carry an end date."""
        return as_utc(self.completed_at or self.end_date)


def grace_expires_at(facts: EnrollmentFacts, grace_days: int) -> Optional[datetime]:
    ended_at = facts.ended_at
    if ended_at is None:
        return None
    return ended_at + timedelta(days=grace_days)


def step(facts: Optional[EnrollmentFacts], now: datetime, grace_days: int) -> AccessState:
    """Current lifecycle state of an enrollment."""
    if facts is None:
        return AccessState.NONE
    if facts.status == "active":
        return AccessState.ACTIVE
    if facts.status != "completed":
        return AccessState.NONE

    expires_at = grace_expires_at(facts, grace_days)
    if expires_at is None or as_utc(now) >= expires_at:
        return AccessState.EXPIRED
    return AccessState.GRACE


@dataclass(frozen=True)
class AlumniAccessResult:
    state: AccessState
    has_access: bool
    read_only: bool
    in_grace_period: bool
    grace_expires_at: Optional[datetime] = None
    days_remaining: int = 0
    enrollment_id: Optional[str] = None
    urgency: Urgency = Urgency.HIDDEN

    @classmethod
    def full_access(cls, enrollment_id: Optional[str] = None) -> "AlumniAccessResult":
        return cls(AccessState.ACTIVE, has_access=True, read_only=False,
                   in_grace_period=False, enrollment_id=enrollment_id)

    @classmethod
    def no_access(cls) -> "AlumniAccessResult":
        return cls(AccessState.NONE, has_access=False, read_only=False, in_grace_period=False)


def evaluate_alumni_access(row: Optional[EnrollmentRow],
                           now: datetime,
                           grace_days: int,
                           urgent_threshold: int = 7) -> AlumniAccessResult:
    """Build the access result for one enrollment row."""
    if row is None:
        return AlumniAccessResult.no_access()

    facts = EnrollmentFacts.from_row(row)
    state = step(facts, now, grace_days)

    if state == AccessState.ACTIVE:
        return AlumniAccessResult.full_access(row.enrollment_id)
    if state == AccessState.NONE:
        return AlumniAccessResult.no_access()

    expires_at = grace_expires_at(facts, grace_days)
    if state == AccessState.EXPIRED:
        return AlumniAccessResult(
            state=state,
            has_access=False,
            read_only=False,
            in_grace_period=False,
            grace_expires_at=expires_at,
            enrollment_id=row.enrollment_id
        )

    days_remaining = min(grace_days, days_until(expires_at, now))
    return AlumniAccessResult(
        state=state,
        has_access=True,
        read_only=True,
        in_grace_period=True,
        grace_expires_at=expires_at,
        days_remaining=days_remaining,
        enrollment_id=row.enrollment_id,
        urgency=bucket_urgency(days_remaining, urgent_threshold)
    )


class AlumniAccessResolver:
    """Resolves alumni access for a (user, program) pair."""

    def __init__(self,
                 store: DataStore,
                 settings,
                 staff_roles: Sequence[str] = ("admin", "instructor", "coach"),
                 urgent_threshold: int = 7,
                 clock: Clock = utcnow):
        self.store = store
        self.settings = settings
        self.staff_roles = set(staff_roles)
        self.urgent_threshold = urgent_threshold
        self.clock = clock
        self.logger = get_logger("entitlements.alumni")

    async def is_staff(self, user_id: str) -> bool:
        try:
            roles = await self.store.get_user_roles(user_id)
        except PlatformException as e:
            self.logger.warning("Role lookup failed", user_id=user_id, error=e.message)
            return False
        return bool(self.staff_roles.intersection(roles))

    async def resolve(self, user_id: str, program_id: Optional[str]) -> AlumniAccessResult:
        set_user_context(user_id=user_id, program_id=program_id)

        if await self.is_staff(user_id):
            return AlumniAccessResult.full_access()

        if not program_id:
            return AlumniAccessResult.no_access()

        try:
            row = await self.store.get_enrollment(user_id, program_id)
        except PlatformException as e:
            self.logger.warning("Enrollment lookup failed", user_id=user_id, error=e.message)
            return AlumniAccessResult.no_access()

        grace_days = await self.settings.grace_period_days()
        result = evaluate_alumni_access(row, self.clock(), grace_days, self.urgent_threshold)

        self.logger.debug(
            "Alumni access resolved",
            user_id=user_id,
            program_id=program_id,
            state=result.state.value,
            days_remaining=result.days_remaining
        )
        return result

    async def ensure_writable(self, user_id: str, program_id: Optional[str]) -> AlumniAccessResult:
        """Raise unless the user may modify content in the program."""
        result = await self.resolve(user_id, program_id)
        if not result.has_access or result.read_only:
            raise AuthorizationError(
                "Program content is read-only" if result.has_access else "No access to program",
                {"program_id": program_id, "state": result.state.value}
            )
        return result


@dataclass(frozen=True)
class DeadlineWarning:
    enrollment_id: Optional[str]
    end_date: Optional[datetime]
    days_remaining: Optional[int]
    is_expired: bool
    urgency: Urgency


def evaluate_deadline(row: Optional[EnrollmentRow],
                      now: datetime,
                      urgent_threshold: int = 7,
                      display_window: Optional[int] = 30) -> DeadlineWarning:
    """Pre-expiry countdown for an active enrollment with an end date."""
    if row is None or row.status != "active" or row.end_date is None:
        return DeadlineWarning(
            enrollment_id=row.enrollment_id if row else None,
            end_date=None,
            days_remaining=None,
            is_expired=False,
            urgency=Urgency.HIDDEN
        )

    days_remaining = days_until(row.end_date, now)
    return DeadlineWarning(
        enrollment_id=row.enrollment_id,
        end_date=as_utc(row.end_date),
        days_remaining=days_remaining,
        is_expired=days_remaining <= 0,
        urgency=bucket_urgency(days_remaining, urgent_threshold, display_window)
    )


class DeadlineWarningResolver:
    """Enrollment deadline countdown for banners."""

    def __init__(self,
                 store: DataStore,
                 urgent_threshold: int = 7,
                 display_window: Optional[int] = 30,
                 clock: Clock = utcnow):
        self.store = store
        self.urgent_threshold = urgent_threshold
        self.display_window = display_window
        self.clock = clock
        self.logger = get_logger("entitlements.deadlines")

    async def resolve(self, user_id: str, program_id: Optional[str]) -> DeadlineWarning:
        row = None
        if program_id:
            try:
                row = await self.store.get_enrollment(user_id, program_id)
            except PlatformException as e:
                self.logger.warning("Enrollment lookup failed", user_id=user_id, error=e.message)

        return evaluate_deadline(row, self.clock(), self.urgent_threshold, self.display_window)


class AlumniAccessResponse(BaseModel):
    """Response model for alumni access."""
    user_id: str
    program_id: str
    state: AccessState
    has_access: bool
    read_only: bool
    in_grace_period: bool
    grace_expires_at: Optional[datetime] = None
    days_remaining: int = 0
    enrollment_id: Optional[str] = None
    urgency: Urgency = Urgency.HIDDEN


class DeadlineWarningResponse(BaseModel):
    """Response model for an enrollment deadline countdown."""
    user_id: str
    program_id: str
    enrollment_id: Optional[str] = None
    end_date: Optional[datetime] = None
    days_remaining: Optional[int] = None
    is_expired: bool = False
    urgency: Urgency = Urgency.HIDDEN
