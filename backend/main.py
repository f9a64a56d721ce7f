"""
Datei: backend/main.py

Zweck:
- Haupt-Einstiegspunkt der Zugriffskontroll-API
- Lifespan: Logging, DB, Audit-Worker, Break-Glass-Expiry-Sweeper
- Router-Registrierung, Health-Check, globaler Exception-Handler
"""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.config import DEBUG, LOG_DIR, LOG_JSON, LOG_LEVEL
from app.db import check_database, init_db
from app.logging_config import get_logger, setup_logging
from app.services import audit_sink, expiry_sweeper

logger = get_logger(__name__)


# =============================================================================
# Lifespan Context
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    - Startup: Logging, DB initialisieren, Audit-Worker + Sweeper starten
    - Shutdown: Sweeper stoppen, Audit-Queue wegschreiben
    """
    setup_logging(log_level=LOG_LEVEL, log_dir=LOG_DIR, enable_json=LOG_JSON)
    init_db()
    audit_sink.start()
    expiry_sweeper.start()
    logger.info("backend_ready", debug=DEBUG)

    yield

    expiry_sweeper.stop()
    audit_sink.stop()
    logger.info("backend_shutdown")


# =============================================================================
# App Initialisierung
# =============================================================================

app = FastAPI(
    title="ABAC Access API",
    version="1.0.0",
    description="Zugriffsentscheidungen, Feldrechte/Masking und Break-Glass-Notfallzugang",
    lifespan=lifespan,
    debug=DEBUG,
)


# =============================================================================
# Router Registration
# =============================================================================

from routers import access, break_glass, rules  # noqa: E402

app.include_router(access.router)
app.include_router(rules.router)
app.include_router(break_glass.router)


@app.get("/api/health")
def health():
    db_ok = check_database()
    return {
        "status": "ok" if db_ok else "degraded",
        "database": db_ok,
        "audit": audit_sink.stats(),
    }


# =============================================================================
# Exception Handlers
# =============================================================================

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Unerwartete Fehler: generische 500, Details nur mit ABAC_DEBUG=1."""
    logger.error("unhandled_exception", path=request.url.path, method=request.method, exc_info=exc)
    content = {"detail": "Interner Serverfehler"}
    if DEBUG:
        content["error"] = f"{type(exc).__name__}: {exc}"
    return JSONResponse(status_code=500, content=content)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=DEBUG)
