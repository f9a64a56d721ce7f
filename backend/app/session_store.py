"""
Session Store: Persistenz der Break-Glass-Sessions.

Statuswechsel laufen IMMER als bedingtes UPDATE
(`... WHERE session_id = ? AND status IN (...)`). rowcount == 0 heisst: ein
anderer Akteur (Mensch oder Expiry-Sweep) war schneller. Damit können Sweep
und Approve/Revoke/Complete parallel auf dieselbe Session laufen.

Sessions werden nie gelöscht (Audit).
"""
from __future__ import annotations

import json
from typing import Any, Callable, Iterable, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from app.access_types import BreakGlassStatus
from app.db import SessionLocal
from app.models import BreakGlassSession

_ACTIVE = BreakGlassStatus.ACTIVE.value
_PENDING = BreakGlassStatus.PENDING.value


def session_state(row: BreakGlassSession) -> dict[str, Any]:
    data = {c.name: getattr(row, c.name) for c in row.__table__.columns}
    raw = data.pop("context_json", None)
    try:
        data["context"] = json.loads(raw) if raw else {}
    except ValueError:
        data["context"] = {}
    return data


class SqlSessionStore:
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    def create(self, values: dict[str, Any]) -> dict[str, Any]:
        values = dict(values)
        if "context" in values:
            values["context_json"] = json.dumps(values.pop("context"), ensure_ascii=False)
        with self._session_factory() as db:
            row = BreakGlassSession(**values)
            db.add(row)
            db.commit()
            db.refresh(row)
            return session_state(row)

    def get(self, session_id: str) -> Optional[dict[str, Any]]:
        with self._session_factory() as db:
            row = db.get(BreakGlassSession, session_id)
            return session_state(row) if row is not None else None

    def transition(
        self,
        session_id: str,
        from_statuses: Iterable[str],
        to_status: str,
        values: dict[str, Any] | None = None,
    ) -> Optional[dict[str, Any]]:
        """Atomarer Statuswechsel. Returns neuen Zustand oder None (Race/falscher Status)."""
        from_statuses = [str(getattr(s, "value", s)) for s in from_statuses]
        with self._session_factory() as db:
            res = db.execute(
                update(BreakGlassSession)
                .where(
                    BreakGlassSession.session_id == session_id,
                    BreakGlassSession.status.in_(from_statuses),
                )
                .values(status=to_status, **(values or {}))
            )
            db.commit()
            if res.rowcount != 1:
                return None
            row = db.get(BreakGlassSession, session_id)
            return session_state(row) if row is not None else None

    def record_action(self, session_id: str, now_iso: str) -> bool:
        """Zähler + Zeitstempel, nur für aktive, nicht abgelaufene Sessions."""
        with self._session_factory() as db:
            res = db.execute(
                update(BreakGlassSession)
                .where(
                    BreakGlassSession.session_id == session_id,
                    BreakGlassSession.status == _ACTIVE,
                    BreakGlassSession.expires_at > now_iso,
                )
                .values(
                    action_count=BreakGlassSession.action_count + 1,
                    last_action_at=now_iso,
                )
            )
            db.commit()
            return res.rowcount == 1

    def find_covering(
        self,
        user_id: str,
        collection_id: Optional[str],
        record_id: Optional[str],
        now_iso: str,
    ) -> Optional[dict[str, Any]]:
        """Offene Session (pending oder aktiv+gültig) mit gleichem oder breiterem Scope.

        Abdeckung: Session-Collection NULL oder gleich UND Session-Record NULL
        oder gleich. Ein angefragter NULL-Scope wird nur von NULL abgedeckt.
        """
        col = BreakGlassSession.collection_id
        rec = BreakGlassSession.record_id
        col_match = col.is_(None) if collection_id is None else or_(col.is_(None), col == collection_id)
        rec_match = rec.is_(None) if record_id is None else or_(rec.is_(None), rec == record_id)
        with self._session_factory() as db:
            rows = db.scalars(
                select(BreakGlassSession)
                .where(
                    BreakGlassSession.user_id == user_id,
                    col_match,
                    rec_match,
                    or_(
                        BreakGlassSession.status == _PENDING,
                        (BreakGlassSession.status == _ACTIVE) & (BreakGlassSession.expires_at > now_iso),
                    ),
                )
                .order_by(BreakGlassSession.started_at.desc())
            ).all()
            if not rows:
                return None
            # aktive Sessions vor pending
            rows = sorted(rows, key=lambda r: 0 if r.status == _ACTIVE else 1)
            return session_state(rows[0])

    def find_active_covering(
        self,
        user_id: str,
        collection_id: Optional[str],
        record_id: Optional[str],
        now_iso: str,
    ) -> Optional[dict[str, Any]]:
        found = self.find_covering(user_id, collection_id, record_id, now_iso)
        if found is not None and found["status"] == _ACTIVE:
            return found
        return None

    def list_active_for_user(self, user_id: str, now_iso: str) -> list[dict[str, Any]]:
        with self._session_factory() as db:
            rows = db.scalars(
                select(BreakGlassSession)
                .where(
                    BreakGlassSession.user_id == user_id,
                    BreakGlassSession.status == _ACTIVE,
                    BreakGlassSession.expires_at > now_iso,
                )
                .order_by(BreakGlassSession.started_at.desc())
            ).all()
            return [session_state(r) for r in rows]

    def list_pending(self) -> list[dict[str, Any]]:
        with self._session_factory() as db:
            rows = db.scalars(
                select(BreakGlassSession)
                .where(BreakGlassSession.status == _PENDING)
                .order_by(BreakGlassSession.started_at.asc())
            ).all()
            return [session_state(r) for r in rows]

    def find_expired_active_ids(self, now_iso: str) -> list[str]:
        with self._session_factory() as db:
            return list(db.scalars(
                select(BreakGlassSession.session_id).where(
                    BreakGlassSession.status == _ACTIVE,
                    BreakGlassSession.expires_at < now_iso,
                )
            ).all())

    def history(
        self,
        *,
        user_id: Optional[str] = None,
        collection_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[dict[str, Any]], int]:
        filters = []
        if user_id:
            filters.append(BreakGlassSession.user_id == user_id)
        if collection_id:
            filters.append(BreakGlassSession.collection_id == collection_id)
        if status:
            filters.append(BreakGlassSession.status == status)
        count_stmt = select(func.count()).select_from(BreakGlassSession)
        stmt = select(BreakGlassSession)
        if filters:
            count_stmt = count_stmt.where(*filters)
            stmt = stmt.where(*filters)
        with self._session_factory() as db:
            total = db.scalar(count_stmt) or 0
            rows = db.scalars(
                stmt
                .order_by(BreakGlassSession.started_at.desc())
                .limit(limit)
                .offset(offset)
            ).all()
            return [session_state(r) for r in rows], int(total)
