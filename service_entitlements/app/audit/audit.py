"""
Fire-and-forget audit logging for Entitlements Service.
"""

import asyncio
from typing import Dict, Any, Optional, Set

from shared.logging import get_logger
from ..persistence.base import DataStore, AuditEntry


class AuditLogger:
    """Writes audit entries in the background.

    ``log`` returns immediately. Write failures are logged and dropped so an
    audit outage never fails the action being audited.
    """

    def __init__(self, store: DataStore):
        self.store = store
        self.logger = get_logger("entitlements.audit")
        self._pending: Set[asyncio.Task] = set()

    def log(self,
            action: str,
            entity_type: str,
            entity_id: Optional[str] = None,
            actor_id: Optional[str] = None,
            old_values: Optional[Dict[str, Any]] = None,
            new_values: Optional[Dict[str, Any]] = None) -> asyncio.Task:
        """Schedule an audit entry write."""
        entry = AuditEntry(
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            actor_id=actor_id,
            old_values=old_values,
            new_values=new_values
        )
        task = asyncio.create_task(self._write(entry))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _write(self, entry: AuditEntry):
        try:
            await self.store.insert_audit_log(entry)
        except Exception as e:
            self.logger.error(
                "Audit log write failed",
                action=entry.action,
                entity_type=entry.entity_type,
                entity_id=entry.entity_id,
                error=str(e)
            )

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self):
        """Wait for every scheduled write to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending))
