"""
Alumni package: grace-period access after an enrollment ends and the
pre-expiry deadline countdown for active enrollments.
"""

from .lifecycle import (
    AccessState, Urgency, EnrollmentFacts, AlumniAccessResult, DeadlineWarning,
    AlumniAccessResolver, DeadlineWarningResolver, AlumniAccessResponse,
    DeadlineWarningResponse, bucket_urgency, days_until, step,
    evaluate_alumni_access, evaluate_deadline
)

__all__ = [
    "AccessState",
    "Urgency",
    "EnrollmentFacts",
    "AlumniAccessResult",
    "DeadlineWarning",
    "AlumniAccessResolver",
    "DeadlineWarningResolver",
    "AlumniAccessResponse",
    "DeadlineWarningResponse",
    "bucket_urgency",
    "days_until",
    "step",
    "evaluate_alumni_access",
    "evaluate_deadline",
]
