"""
auth/audit.py -- Fire-and-forget audit recording.

The gateway records every security decision through AuditRecorder. A failed
audit write must never fail the login/refresh/logout it describes, but it must
not vanish either: StoreUnavailable from the sink is logged at WARNING with the
event it was trying to write.

Anything other than StoreUnavailable (a programming error, a bad sink) is NOT
swallowed. It propagates so the primary operation is not reported as a success
on top of an unexplained fault.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from auth.errors import StoreUnavailable
from auth.models import AuditEvent, AuditEventType
from auth.ports import AuditSink

logger = logging.getLogger("estateauth.audit")


class AuditRecorder:
    def __init__(self, sink: AuditSink) -> None:
        self.sink = sink

    def record(
        self,
        event_type: AuditEventType | str,
        *,
        resource: str,
        action: str,
        user_id: str | None = None,
        old_values: dict[str, Any] | None = None,
        new_values: dict[str, Any] | None = None,
        ip_address: str = "",
        user_agent: str = "",
    ) -> None:
        event = AuditEvent(
            event_type=AuditEventType(event_type).value,
            user_id=user_id,
            resource=resource,
            action=action,
            old_values=old_values,
            new_values=new_values,
            ip_address=ip_address,
            user_agent=user_agent,
            timestamp=datetime.now(timezone.utc),
        )
        try:
            self.sink.log_event(event)
        except StoreUnavailable:
            logger.warning(
                "Failed to write audit event %s (user_id=%s, action=%s)",
                event.event_type,
                user_id,
                action,
                exc_info=True,
            )
