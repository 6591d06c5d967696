"""
Audit package: background writes to the admin audit log.
"""

from .audit import AuditLogger

__all__ = ["AuditLogger"]
