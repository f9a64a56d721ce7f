"""
Break-Glass: zeitlich begrenzter Notfallzugang mit optionaler Freigabe.

Zustände (BreakGlassStatus):

    request ──(Freigabe nötig)──> pending ──approve──> active
    request ──(sonst)───────────────────────────────> active
    active  ──revoke──> revoked     pending ──revoke──> revoked
    active  ──complete──> completed
    active  ──expire (Sweep)──> expired

Jeder Übergang ist in TRANSITIONS hinterlegt (erlaubte Vorzustände ->
Zielzustand) und wird im Store als bedingtes UPDATE ausgeführt. Verliert ein
Übergang das Rennen gegen einen parallelen Akteur -> 409.

Jeder Übergang schreibt ein Audit-Event und publiziert ein Domain-Event
(break_glass.requested/approved/revoked/completed/expired).

WICHTIG: Die Engine prüft selbst keine Sessions. Aufrufer kombinieren
check_active_session() mit den effektiven Rechten.
"""
from __future__ import annotations

import threading
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from fastapi import HTTPException

from app import config
from app.access_types import BreakGlassStatus, UserAccessContext
from app.audit import AuditSink, to_iso
from app.events import (
    BREAK_GLASS_APPROVED,
    BREAK_GLASS_COMPLETED,
    BREAK_GLASS_EXPIRED,
    BREAK_GLASS_REQUESTED,
    BREAK_GLASS_REVOKED,
    DomainEvent,
    EventBus,
)
from app.logging_config import get_logger
from app.session_store import SqlSessionStore

logger = get_logger(__name__)

ALL_COLLECTIONS = "all_collections"


class Transition(str, Enum):
    APPROVE = "approve"
    REVOKE = "revoke"
    COMPLETE = "complete"
    EXPIRE = "expire"


TRANSITIONS: dict[Transition, tuple[frozenset[BreakGlassStatus], BreakGlassStatus]] = {
    Transition.APPROVE: (frozenset({BreakGlassStatus.PENDING}), BreakGlassStatus.ACTIVE),
    Transition.REVOKE: (frozenset({BreakGlassStatus.ACTIVE, BreakGlassStatus.PENDING}), BreakGlassStatus.REVOKED),
    Transition.COMPLETE: (frozenset({BreakGlassStatus.ACTIVE}), BreakGlassStatus.COMPLETED),
    Transition.EXPIRE: (frozenset({BreakGlassStatus.ACTIVE}), BreakGlassStatus.EXPIRED),
}

# Endzustände dürfen nirgends Vorzustand sein
_TERMINAL = {BreakGlassStatus.REVOKED, BreakGlassStatus.EXPIRED, BreakGlassStatus.COMPLETED}
for _t, (_from, _to) in TRANSITIONS.items():
    if _from & _TERMINAL:
        raise RuntimeError(f"Transition {_t.value} startet in einem Endzustand")


def allowed_from(transition: Transition) -> frozenset[BreakGlassStatus]:
    return TRANSITIONS[transition][0]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BreakGlassManager:
    def __init__(
        self,
        store: SqlSessionStore,
        audit: Optional[AuditSink] = None,
        events: Optional[EventBus] = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
        default_minutes: int = config.BREAK_GLASS_DEFAULT_MINUTES,
        max_minutes: int = config.BREAK_GLASS_MAX_MINUTES,
        min_justification: int = config.BREAK_GLASS_MIN_JUSTIFICATION,
        approval_reasons: frozenset[str] = config.BREAK_GLASS_APPROVAL_REASONS,
        reason_labels: Optional[dict[str, str]] = None,
    ):
        self._store = store
        self._audit = audit
        self._events = events
        self._clock = clock
        self.default_minutes = default_minutes
        self.max_minutes = max_minutes
        self.min_justification = min_justification
        self.approval_reasons = frozenset(approval_reasons)
        self.reason_labels = dict(config.BREAK_GLASS_REASON_CODES if reason_labels is None else reason_labels)

    # ── Helpers ─────────────────────────────────────────────────────

    def _now(self) -> datetime:
        return self._clock()

    def _present(self, state: dict[str, Any], now_iso: Optional[str] = None) -> dict[str, Any]:
        now_iso = now_iso or to_iso(self._now())
        out = dict(state)
        out["is_active"] = state["status"] == BreakGlassStatus.ACTIVE.value and state["expires_at"] > now_iso
        return out

    def _emit(self, state: dict[str, Any], action: str, actor_id: Optional[str], **context: Any) -> None:
        if self._audit is None:
            return
        self._audit.record(
            principal_id=actor_id,
            resource=state.get("collection_id") or ALL_COLLECTIONS,
            action=action,
            decision="allow",
            context={
                "break_glass_session_id": state["session_id"],
                "session_user_id": state["user_id"],
                "record_id": state.get("record_id"),
                "reason_code": state.get("reason_code"),
                **context,
            },
        )

    def _publish(self, name: str, state: dict[str, Any], actor_id: Optional[str], **details: Any) -> None:
        if self._events is None:
            return
        self._events.publish(DomainEvent(
            name=name,
            session_id=state["session_id"],
            user_id=state["user_id"],
            collection_id=state.get("collection_id"),
            record_id=state.get("record_id"),
            reason_code=state.get("reason_code") or "",
            actor_id=actor_id,
            details=details,
        ))

    def _capped_duration(self, duration_minutes: Optional[int]) -> int:
        if duration_minutes is None or duration_minutes <= 0:
            return self.default_minutes
        return min(int(duration_minutes), self.max_minutes)

    def _load(self, session_id: str) -> dict[str, Any]:
        state = self._store.get(session_id)
        if state is None:
            raise HTTPException(status_code=404, detail="Break-Glass-Session nicht gefunden")
        return state

    def _transition(self, session_id: str, transition: Transition, values: dict[str, Any]) -> dict[str, Any]:
        pre, target = TRANSITIONS[transition]
        new = self._store.transition(session_id, [s.value for s in pre], target.value, values)
        if new is None:
            logger.warning("break_glass_transition_conflict", session_id=session_id, transition=transition.value)
            raise HTTPException(
                status_code=409,
                detail="Session-Status wurde zwischenzeitlich geändert, bitte neu laden",
            )
        return new

    def reason_codes(self) -> list[dict[str, Any]]:
        """Bekannte Reason-Codes für die Antragsmaske. Unbekannte Codes bleiben zulässig."""
        codes = sorted(set(self.reason_labels) | self.approval_reasons)
        return [
            {
                "code": code,
                "label": self.reason_labels.get(code, code),
                "requires_approval": code in self.approval_reasons,
            }
            for code in codes
        ]

    # ── Antrag ──────────────────────────────────────────────────────

    def request_break_glass(
        self,
        user: UserAccessContext,
        *,
        reason_code: str,
        justification: str,
        collection_id: Optional[str] = None,
        record_id: Optional[str] = None,
        duration_minutes: Optional[int] = None,
        external_reference: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> dict[str, Any]:
        justification = (justification or "").strip()
        if len(justification) < self.min_justification:
            raise HTTPException(
                status_code=400,
                detail=f"Begründung muss mindestens {self.min_justification} Zeichen lang sein",
            )
        reason_code = (reason_code or "").strip()
        if not reason_code:
            raise HTTPException(status_code=400, detail="reason_code fehlt")

        now = self._now()
        now_iso = to_iso(now)

        existing = self._store.find_covering(user.user_id, collection_id, record_id, now_iso)
        if existing is not None:
            logger.info("break_glass_request_reused", session_id=existing["session_id"], user_id=user.user_id)
            return self._present(existing, now_iso)

        duration = self._capped_duration(duration_minutes)
        approval_required = reason_code in self.approval_reasons
        status = BreakGlassStatus.PENDING if approval_required else BreakGlassStatus.ACTIVE

        state = self._store.create({
            "session_id": str(uuid.uuid4()),
            "user_id": user.user_id,
            "collection_id": collection_id,
            "record_id": record_id,
            "reason_code": reason_code,
            "justification": justification,
            "external_reference": external_reference,
            "status": status.value,
            "started_at": now_iso,
            "expires_at": to_iso(now + timedelta(minutes=duration)),
            "duration_minutes": duration,
            "approval_required": approval_required,
            "ip_address": ip_address,
            "user_agent": user_agent,
            "context": user.snapshot(),
            "action_count": 0,
        })

        self._emit(state, "break_glass_request", user.user_id,
                   justification=justification, status=state["status"], duration_minutes=duration)
        self._publish(BREAK_GLASS_REQUESTED, state, user.user_id,
                      approval_required=approval_required, justification=justification)
        logger.info("break_glass_requested", session_id=state["session_id"], user_id=user.user_id,
                    status=state["status"], duration_minutes=duration)
        return self._present(state, now_iso)

    # ── Übergänge ───────────────────────────────────────────────────

    def approve(self, session_id: str, approver_id: str, comment: Optional[str] = None) -> dict[str, Any]:
        state = self._load(session_id)
        if state["status"] != BreakGlassStatus.PENDING.value:
            raise HTTPException(status_code=400, detail="Nur ausstehende Sessions können freigegeben werden")
        if approver_id == state["user_id"]:
            raise HTTPException(status_code=403, detail="Selbstfreigabe ist nicht erlaubt")

        now = self._now()
        # Ablauf startet ab Freigabe neu
        new = self._transition(session_id, Transition.APPROVE, {
            "approved_by": approver_id,
            "approved_at": to_iso(now),
            "approval_comment": comment,
            "expires_at": to_iso(now + timedelta(minutes=int(state["duration_minutes"]))),
        })
        self._emit(new, "break_glass_approve", approver_id, comment=comment)
        self._publish(BREAK_GLASS_APPROVED, new, approver_id)
        logger.info("break_glass_approved", session_id=session_id, approver_id=approver_id)
        return self._present(new)

    def revoke(self, session_id: str, revoker_id: str, reason: Optional[str] = None) -> dict[str, Any]:
        state = self._load(session_id)
        if BreakGlassStatus(state["status"]) not in allowed_from(Transition.REVOKE):
            raise HTTPException(status_code=400, detail="Nur aktive oder ausstehende Sessions können widerrufen werden")

        new = self._transition(session_id, Transition.REVOKE, {
            "revoked_by": revoker_id,
            "revocation_reason": reason,
            "ended_at": to_iso(self._now()),
        })
        self._emit(new, "break_glass_revoke", revoker_id, revocation_reason=reason)
        self._publish(BREAK_GLASS_REVOKED, new, revoker_id, revocation_reason=reason)
        logger.info("break_glass_revoked", session_id=session_id, revoker_id=revoker_id)
        return self._present(new)

    def complete(self, session_id: str, user_id: str) -> dict[str, Any]:
        state = self._store.get(session_id)
        if state is None or state["user_id"] != user_id:
            raise HTTPException(status_code=404, detail="Break-Glass-Session nicht gefunden")
        if state["status"] != BreakGlassStatus.ACTIVE.value:
            raise HTTPException(status_code=400, detail="Nur aktive Sessions können beendet werden")

        new = self._transition(session_id, Transition.COMPLETE, {"ended_at": to_iso(self._now())})
        self._emit(new, "break_glass_complete", user_id, action_count=new.get("action_count"))
        self._publish(BREAK_GLASS_COMPLETED, new, user_id)
        logger.info("break_glass_completed", session_id=session_id, user_id=user_id)
        return self._present(new)

    def expire_old_sessions(self) -> int:
        """Setzt abgelaufene aktive Sessions auf expired. Returns: Anzahl (jede genau einmal)."""
        now_iso = to_iso(self._now())
        pre, target = TRANSITIONS[Transition.EXPIRE]
        n = 0
        for session_id in self._store.find_expired_active_ids(now_iso):
            new = self._store.transition(session_id, [s.value for s in pre], target.value, {"ended_at": now_iso})
            if new is None:
                # parallel widerrufen/beendet
                continue
            n += 1
            self._emit(new, "break_glass_expire", None, expires_at=new["expires_at"])
            self._publish(BREAK_GLASS_EXPIRED, new, None)
        if n:
            logger.info("break_glass_expired", count=n)
        return n

    def record_action(self, session_id: str, action: str, details: Optional[dict[str, Any]] = None) -> bool:
        """Zählt eine Aktion unter der Session. Nicht aktiv -> Warnung, kein Fehler."""
        now_iso = to_iso(self._now())
        if not self._store.record_action(session_id, now_iso):
            logger.warning("break_glass_action_on_inactive_session", session_id=session_id, action=action)
            return False
        state = self._store.get(session_id)
        if state is not None:
            self._emit(state, f"break_glass_action:{action}", state["user_id"], details=details or {})
        return True

    # ── Abfragen ────────────────────────────────────────────────────

    def check_active_session(
        self,
        user: UserAccessContext,
        collection_id: Optional[str] = None,
        record_id: Optional[str] = None,
    ) -> Optional[dict[str, Any]]:
        now_iso = to_iso(self._now())
        found = self._store.find_active_covering(user.user_id, collection_id, record_id, now_iso)
        return self._present(found, now_iso) if found is not None else None

    def get_active_sessions_for_user(self, user_id: str) -> list[dict[str, Any]]:
        now_iso = to_iso(self._now())
        return [self._present(s, now_iso) for s in self._store.list_active_for_user(user_id, now_iso)]

    def get_session(self, session_id: str) -> dict[str, Any]:
        return self._present(self._load(session_id))

    def get_pending_sessions(self) -> list[dict[str, Any]]:
        now_iso = to_iso(self._now())
        return [self._present(s, now_iso) for s in self._store.list_pending()]

    def get_session_history(
        self,
        *,
        user_id: Optional[str] = None,
        collection_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> dict[str, Any]:
        now_iso = to_iso(self._now())
        rows, total = self._store.history(
            user_id=user_id, collection_id=collection_id, status=status,
            limit=max(1, min(int(limit), 500)), offset=max(0, int(offset)),
        )
        return {"sessions": [self._present(s, now_iso) for s in rows], "total": total}


class ExpirySweeper:
    """Hintergrund-Thread: expire_old_sessions() alle `interval` Sekunden."""

    def __init__(self, manager: BreakGlassManager, interval: float = config.BREAK_GLASS_SWEEP_SECONDS):
        self._manager = manager
        self._interval = float(interval)
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self._manager.expire_old_sessions()
            except Exception:
                logger.error("break_glass_sweep_failed", exc_info=True)

    def start(self) -> bool:
        if self._interval <= 0 or (self._thread is not None and self._thread.is_alive()):
            return False
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="break-glass-sweeper", daemon=True)
        self._thread.start()
        logger.info("break_glass_sweeper_started", interval=self._interval)
        return True

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
