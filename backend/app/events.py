"""Domain-Events für externe Benachrichtigung (Break-Glass).

Handler werden pro Event-Typ registriert ("*" = alle). Fehler eines Handlers
werden geloggt und brechen weder andere Handler noch den Aufrufer ab.
Standard-Handler: security.log (notify_security_log).
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from app.audit import utc_now_iso
from app.logging_config import get_logger, security_log

logger = get_logger(__name__)

BREAK_GLASS_REQUESTED = "break_glass.requested"
BREAK_GLASS_APPROVED = "break_glass.approved"
BREAK_GLASS_REVOKED = "break_glass.revoked"
BREAK_GLASS_COMPLETED = "break_glass.completed"
BREAK_GLASS_EXPIRED = "break_glass.expired"


@dataclass(frozen=True)
class DomainEvent:
    name: str
    session_id: str
    user_id: str
    collection_id: Optional[str]
    record_id: Optional[str]
    reason_code: str
    actor_id: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)
    ts: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.name,
            "session_id": self.session_id,
            "user_id": self.user_id,
            "collection_id": self.collection_id,
            "record_id": self.record_id,
            "reason_code": self.reason_code,
            "actor_id": self.actor_id,
            "details": dict(self.details),
            "ts": self.ts,
        }


Handler = Callable[[DomainEvent], None]


class EventBus:
    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = {}
        self._lock = threading.Lock()

    def subscribe(self, name: str, handler: Handler) -> "EventBus":
        with self._lock:
            self._handlers.setdefault(name, []).append(handler)
        return self

    def publish(self, event: DomainEvent) -> None:
        with self._lock:
            handlers = list(self._handlers.get(event.name, ())) + list(self._handlers.get("*", ()))
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.error("event_handler_failed", event=event.name,
                             handler=getattr(handler, "__name__", repr(handler)), exc_info=True)


def notify_security_log(event: DomainEvent) -> None:
    severity = "WARNING" if event.name in (BREAK_GLASS_REQUESTED, BREAK_GLASS_APPROVED) else "INFO"
    security_log(event.name, severity, user_id=event.user_id, details=event.to_dict())
