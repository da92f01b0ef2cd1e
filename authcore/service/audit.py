from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Tuple

from authcore.logging import get_logger
from authcore.storage.models import (
    AuditEvent,
    AuditEventKind,
    AuditQuery,
    Page,
    new_id,
    normalize_paging,
)

logger = get_logger(__name__)


class AuditStore(Protocol):
    def append_audit_event(self, event: AuditEvent) -> None: ...

    def list_audit_events(self, query: AuditQuery) -> Tuple[List[AuditEvent], int]: ...


class AuditSink:
    """Append-only security audit trail.

    ``record`` is best effort: it runs after the primary state change and a
    failing store never reaches the caller.
    """

    def __init__(self, store: AuditStore) -> None:
        self.store = store

    def record(
        self,
        kind: AuditEventKind,
        user_id: Optional[str],
        payload: Optional[Dict[str, Any]],
        *,
        ip_addr: Optional[str],
        user_agent: Optional[str],
        now: datetime,
    ) -> Optional[AuditEvent]:
        event = AuditEvent(
            id=new_id(),
            kind=AuditEventKind(kind),
            created_at=now,
            user_id=user_id,
            payload=dict(payload or {}),
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        try:
            self.store.append_audit_event(event)
        except Exception as exc:
            logger.error(
                "audit_record_failed",
                event_kind=event.kind.value,
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
        return event

    def list_events(self, query: AuditQuery) -> Page[AuditEvent]:
        page, per_page = normalize_paging(query.page, query.per_page)
        query.page, query.per_page = page, per_page
        events, total = self.store.list_audit_events(query)
        return Page(items=events, page=page, per_page=per_page, total=total)
