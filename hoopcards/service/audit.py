from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from hoopcards.logging import get_logger

logger = get_logger("hoopcards.audit")


@dataclass
class AuditEvent:
    action: str
    ip: str
    user_agent: str
    resource: str
    user_id: Optional[str] = None
    resource_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class AuditLogger:
    """Fire-and-forget audit trail written as structured log lines.

    ``log`` never raises: an audit failure must not turn an auth decision into
    a 500, so errors are reported on the module logger and dropped here.
    """

    def __init__(self, sink: Any = None) -> None:
        self._sink = sink or logger

    def log(self, event: AuditEvent) -> None:
        try:
            payload = asdict(event)
            payload["timestamp"] = event.timestamp.isoformat()
            action = payload.pop("action")
            self._sink.info("audit_event", action=action, **payload)
        except Exception as exc:
            logger.warning(
                "audit_log_failed",
                action=getattr(event, "action", None),
                error_type=type(exc).__name__,
                error=str(exc),
            )

    def record(
        self,
        action: str,
        *,
        ip: str,
        user_agent: str,
        resource: str = "auth",
        user_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            action=action,
            ip=ip,
            user_agent=user_agent,
            resource=resource,
            user_id=user_id,
            resource_id=resource_id,
            details=details,
        )
        self.log(event)
        return event
