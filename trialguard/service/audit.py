from __future__ import annotations

from typing import Any, Dict, Optional

from trialguard.logging import get_logger
from trialguard.storage.common import AuthStore
from trialguard.storage.models import AuditLogEntry

logger = get_logger(__name__)


class AuditLogSink:
    """Append-only security event record.

    Writes are a side channel: a storage failure is reported to the
    operational log and never reaches the caller.
    """

    def __init__(self, store: AuthStore) -> None:
        self.store = store
        self.logger = logger

    async def record(
        self,
        event_type: str,
        subject_email: Optional[str],
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = dict(details or {})
        entry = AuditLogEntry(
            event_type=event_type,
            subject_email=subject_email or "unknown",
            details=details,
            source_ip=details.get("source_ip") or "unknown",
            user_agent=details.get("user_agent") or "unknown",
        )
        try:
            self.store.append_audit_log(entry)
        except Exception as exc:
            self.logger.error(
                "audit_log_write_failed", event_type=event_type, error=str(exc)
            )
