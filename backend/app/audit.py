"""
Audit-Emission (Entscheidungen, Regel- und Session-Änderungen).

Fire-and-forget: Aufrufer legen ein AuditEvent in eine begrenzte Queue,
ein Hintergrund-Thread schreibt in die Tabelle access_audit_event.
Resilient: Audit-Fehler werden geloggt, aber NIEMALS nach oben propagiert,
damit eine Zugriffsentscheidung nie an einem Audit-Fehler scheitert.

Queue voll -> das älteste Event wird verworfen und gezählt (`dropped`),
der Aufrufer blockiert nie.
Der Worker spiegelt jedes geschriebene Event zusätzlich nach audit.log.
"""
from __future__ import annotations

import json
import queue
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session, sessionmaker

from app.config import AUDIT_QUEUE_SIZE
from app.db import SessionLocal
from app.logging_config import audit_log, get_logger
from app.models import AccessAuditEvent

logger = get_logger(__name__)


def to_iso(dt: datetime) -> str:
    """Einheitliches Zeitformat (UTC, Mikrosekunden) -> String-Vergleich = Zeitvergleich."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def utc_now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))


@dataclass(frozen=True)
class AuditEvent:
    principal_id: Optional[str]
    resource: str
    action: str
    decision: str  # "allow" | "deny"
    context: dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    ts: str = field(default_factory=utc_now_iso)


def write_audit_event(
    event: AuditEvent,
    session_factory: sessionmaker[Session] | Callable[[], Session] = SessionLocal,
) -> None:
    """Schreibt ein Event in die DB. Fängt eigene Fehler ab (resilient).

    WICHTIG: Diese Funktion darf NIEMALS eine Exception nach oben propagieren.
    """
    db = session_factory()
    try:
        db.add(AccessAuditEvent(
            event_id=event.event_id,
            ts=event.ts,
            principal_id=event.principal_id,
            resource=event.resource,
            action=event.action,
            decision=event.decision,
            context=json.dumps(event.context, ensure_ascii=False, default=str),
        ))
        db.commit()
    except Exception:
        # Rollback um die Session nicht in einem kaputten Zustand zu lassen
        try:
            db.rollback()
        except Exception:
            logger.debug("audit_rollback_failed", exc_info=True)
        logger.error(
            "audit_write_failed",
            action=event.action, resource=event.resource, event_id=event.event_id,
            exc_info=True,
        )
    finally:
        db.close()


class AuditSink:
    """Begrenzte Queue + Worker-Thread.

    async_processing=False schreibt synchron (Tests, CLI). Ohne gestarteten
    Worker sammelt die Queue Events bis zum nächsten flush().
    """

    def __init__(
        self,
        writer: Callable[[AuditEvent], None] = write_audit_event,
        *,
        maxsize: int = AUDIT_QUEUE_SIZE,
        async_processing: bool = True,
    ):
        self._writer = writer
        self._queue: queue.Queue[AuditEvent] = queue.Queue(maxsize=max(1, maxsize))
        self._put_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.async_processing = async_processing
        self.dropped = 0

    # ── Producer ────────────────────────────────────────────────────
    def emit(self, event: AuditEvent) -> None:
        """Nicht-blockierend. Darf nie eine Exception werfen."""
        if not self.async_processing:
            self._write(event)
            return

        with self._put_lock:
            while True:
                try:
                    self._queue.put_nowait(event)
                    return
                except queue.Full:
                    try:
                        self._queue.get_nowait()
                        self._queue.task_done()
                        self.dropped += 1
                    except queue.Empty:
                        pass

    def record(
        self,
        *,
        principal_id: Optional[str],
        resource: str,
        action: str,
        decision: str,
        context: dict[str, Any] | None = None,
    ) -> AuditEvent:
        event = AuditEvent(
            principal_id=principal_id,
            resource=resource,
            action=action,
            decision=decision,
            context=dict(context or {}),
        )
        self.emit(event)
        return event

    # ── Consumer ────────────────────────────────────────────────────
    def _write(self, event: AuditEvent) -> None:
        try:
            audit_log(event.action, event.principal_id, event.resource, event.decision, event.context)
        except Exception:
            logger.warning("audit_mirror_failed", action=event.action, exc_info=True)
        try:
            self._writer(event)
        except Exception:
            logger.error("audit_writer_failed", action=event.action, exc_info=True)

    def _drain(self) -> int:
        n = 0
        while True:
            try:
                event = self._queue.get_nowait()
            except queue.Empty:
                return n
            try:
                self._write(event)
                n += 1
            finally:
                self._queue.task_done()

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                event = self._queue.get(timeout=0.5)
            except queue.Empty:
                continue
            try:
                self._write(event)
            finally:
                self._queue.task_done()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running or not self.async_processing:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="audit-writer", daemon=True)
        self._thread.start()
        logger.info("audit_worker_started", maxsize=self._queue.maxsize)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        # Rest synchron wegschreiben
        remaining = self._drain()
        logger.info("audit_worker_stopped", flushed=remaining, dropped=self.dropped)

    def flush(self) -> None:
        """Wartet, bis alle Events geschrieben sind (Tests, Shutdown)."""
        if self.running:
            self._queue.join()
        else:
            self._drain()

    def stats(self) -> dict[str, Any]:
        return {
            "queued": self._queue.qsize(),
            "dropped": self.dropped,
            "running": self.running,
            "async": self.async_processing,
        }


def should_audit_decision(allowed: bool, mode: str) -> bool:
    """AUDIT_DECISIONS: none | deny | all."""
    if mode == "all":
        return True
    if mode == "deny":
        return not allowed
    return False
