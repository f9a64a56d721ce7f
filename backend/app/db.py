"""Datenbank-Anbindung (SQLAlchemy 2.0).

DATABASE_URL entscheidet über das Backend:
  - leer: SQLite-Datei unter backend/data/access.db
  - sqlite:///...: explizite SQLite-Datei (Tests)
  - postgresql://...: Produktion, Pool-Größe über DB_POOL_SIZE / DB_MAX_OVERFLOW

Produktiv kommt das Schema aus alembic/versions. `init_db()` legt für
Entwicklung und Tests fehlende Tabellen per create_all an.
"""

import os
from pathlib import Path

from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import DeclarativeBase, sessionmaker


def _resolve_url() -> str:
    configured = os.getenv("DATABASE_URL", "").strip()
    if configured:
        return configured
    data_dir = Path(__file__).resolve().parents[1] / "data"
    data_dir.mkdir(exist_ok=True)
    return "sqlite:///" + (data_dir / "access.db").as_posix()


DB_URL = _resolve_url()
_IS_SQLITE = DB_URL.startswith("sqlite")


def _engine_options() -> dict:
    if _IS_SQLITE:
        # Audit-Worker und Expiry-Sweeper teilen sich die Engine
        return {"pool_pre_ping": True, "connect_args": {"check_same_thread": False}}
    return {
        "pool_pre_ping": True,
        "pool_size": int(os.getenv("DB_POOL_SIZE", "5")),
        "max_overflow": int(os.getenv("DB_MAX_OVERFLOW", "10")),
    }


engine = create_engine(DB_URL, **_engine_options())
SessionLocal = sessionmaker(bind=engine, autoflush=False)


if _IS_SQLITE and ":memory:" not in DB_URL:
    @event.listens_for(engine, "connect")
    def _sqlite_pragmas(dbapi_conn, _record):
        cur = dbapi_conn.cursor()
        cur.execute("PRAGMA journal_mode=WAL")
        cur.execute("PRAGMA synchronous=NORMAL")
        cur.execute("PRAGMA busy_timeout=5000")
        cur.close()


class Base(DeclarativeBase):
    pass


def init_db() -> None:
    import app.models  # noqa: F401  (registriert die Tabellen an Base.metadata)

    Base.metadata.create_all(bind=engine)


def check_database() -> bool:
    """Health-Check: True, wenn ein SELECT 1 durchgeht."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception:
        return False
    return True
