"""
Audit trail for notifications and lifecycle transitions.

Entries are appended after the change they describe has been committed, so
the trail only ever shows what actually happened. Nothing here updates or
removes an entry.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..models.audit_models import AuditActionEnum
from ..notifications.dispatcher import DispatchResult
from ..store.base import AlertStore
from ..utils.timeutils import utcnow
from .records import AuditEntry

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "labalert"


class AuditTrail:
    def __init__(self, store: AlertStore, clock: Callable[[], datetime] = utcnow,
                 system_actor: str = SYSTEM_ACTOR):
        self.store = store
        self.clock = clock
        self.system_actor = system_actor

    def log_activity(self, action: AuditActionEnum, entity_type: str, entity_id: str,
                     tenant_id: str, details: Optional[Dict[str, Any]] = None,
                     actor: Optional[str] = None, success: bool = True) -> AuditEntry:
        entry = AuditEntry(
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            occurred_at=self.clock(),
            tenant_id=tenant_id,
            actor=actor or self.system_actor,
            details=details or {},
            success=success
        )
        self.store.append_audit_entry(entry)
        logger.debug(f"Audit: {action.value} on {entity_type} {entity_id} by {entry.actor}")
        return entry

    def log_dispatch(self, action: AuditActionEnum, entity_type: str, entity_id: str,
                     tenant_id: str, dispatch: DispatchResult, **details) -> AuditEntry:
        """Record who an alert went to and how each channel fared"""
        channels = dispatch.to_dict()['channels']
        details.update({
            'recipients': sorted({c['recipient_id'] for c in channels}),
            'channels': channels,
            'error': dispatch.error_summary()
        })
        return self.log_activity(action, entity_type, entity_id, tenant_id,
                                 details=details, success=dispatch.any_sent)

    def entity_history(self, entity_type: str, entity_id: str) -> List[AuditEntry]:
        """Every entry for one record, oldest first"""
        return self.store.audit_entries(entity_type, entity_id)
