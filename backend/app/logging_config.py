"""
Datei: backend/app/logging_config.py

Strukturiertes Logging für die Zugriffs-Engine.

Drei Ströme im Log-Verzeichnis:
  app.log       alles über den Root-Logger (structlog rendert hinein)
  audit.log     lokaler Spiegel jedes AuditEvents, zusätzlich zur Tabelle
  security.log  Break-Glass-Benachrichtigungen und auffällige Denials

Datensatzwerte und Ausweisnummern haben in keinem Strom etwas verloren.
Der Filter greift rekursiv auf verschachtelte Kontexte (Trace, previous/new).
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Dict, Iterable

import structlog


SENSITIVE_FIELDS = frozenset({
    'password',
    'token',
    'secret',
    'api_key',
    'ssn',
    'birthdate',
    'insurance_number',
    'record_value',
})

REDACTED = '***FILTERED***'

_MAX_BYTES = 10 * 1024 * 1024

# (Logger-Name, Datei, Backups, Label)
_SIDE_STREAMS = (
    ('audit', 'audit.log', 50, 'AUDIT'),
    ('security', 'security.log', 50, 'SECURITY'),
)


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in SENSITIVE_FIELDS)


def _scrub(key: str, value: Any) -> Any:
    if _is_sensitive(key):
        return REDACTED
    if isinstance(value, dict):
        return {k: _scrub(str(k), v) for k, v in value.items()}
    if isinstance(value, list):
        return [_scrub(key, v) for v in value]
    return value


def filter_sensitive_data(*args: Any) -> Dict[str, Any]:
    """structlog-Processor (logger, method, event_dict) oder direkt mit einem dict."""
    event_dict = args[-1]
    for key, value in list(event_dict.items()):
        event_dict[key] = _scrub(str(key), value)
    return event_dict


def _file_handler(path: Path, backups: int, label: str | None = None) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=_MAX_BYTES, backupCount=backups, encoding='utf-8',
    )
    if label:
        handler.setFormatter(logging.Formatter(f'%(asctime)s {label} %(message)s'))
    return handler


def _processors(enable_json: bool) -> Iterable[Any]:
    yield structlog.contextvars.merge_contextvars
    yield structlog.processors.add_log_level
    yield structlog.processors.TimeStamper(fmt="iso")
    yield filter_sensitive_data
    yield structlog.processors.StackInfoRenderer()
    yield structlog.processors.format_exc_info
    yield structlog.processors.JSONRenderer() if enable_json else structlog.dev.ConsoleRenderer()


def setup_logging(log_level: str = "INFO", log_dir: Path | str = "logs", enable_json: bool = False) -> None:
    """
    Richtet Root-Logger, structlog und die Neben-Ströme ein.

    Mehrfacher Aufruf (Tests, Reload) hängt keine doppelten Handler an
    die Neben-Ströme.
    """
    directory = Path(log_dir)
    directory.mkdir(parents=True, exist_ok=True)
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    logging.basicConfig(
        level=level,
        format='%(asctime)s %(levelname)-8s %(name)s: %(message)s',
        handlers=[logging.StreamHandler(sys.stdout), _file_handler(directory / "app.log", 10)],
    )

    structlog.configure(
        processors=list(_processors(enable_json)),
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    for name, filename, backups, label in _SIDE_STREAMS:
        side = logging.getLogger(name)
        for old in list(side.handlers):
            side.removeHandler(old)
            old.close()
        side.addHandler(_file_handler(directory / filename, backups, label))
        side.setLevel(logging.INFO)
        side.propagate = False


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)


def audit_log(
    action: str,
    principal_id: str | None,
    resource: str,
    decision: str,
    details: Dict[str, Any] | None = None,
) -> None:
    """Spiegelt ein AuditEvent nach audit.log."""
    logging.getLogger('audit').info(
        "action=%s principal=%s resource=%s decision=%s details=%s",
        action, principal_id or '-', resource, decision,
        filter_sensitive_data(dict(details or {})),
    )


def security_log(
    event: str,
    severity: str,
    user_id: str | None = None,
    details: Dict[str, Any] | None = None,
) -> None:
    """Schreibt nach security.log; severity ist ein Level-Name (INFO ... CRITICAL)."""
    level = logging.getLevelName(severity.upper())
    if not isinstance(level, int):
        level = logging.WARNING
    logging.getLogger('security').log(
        level, "event=%s user=%s details=%s",
        event, user_id or '-', filter_sensitive_data(dict(details or {})),
    )
