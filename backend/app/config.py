"""
Zentrale Konfiguration: Environment-Variablen und Konstanten.

ARCHITEKTUR-REGEL:
  Regeln, Principals und Property-Definitionen kommen AUSSCHLIESSLICH aus
  der DB (Rule Store). Hier stehen nur Betriebsparameter der Engine.
"""
from __future__ import annotations

import os
import warnings
from pathlib import Path

from dotenv import load_dotenv

# ── dotenv laden (non-Docker) ────────────────────────────────────────
# Muss ZUERST geschehen, bevor os.getenv aufgerufen wird.
# Lädt .env aus dem Projektroot (zwei Ebenen über app/).
_ENV_FILE = Path(__file__).resolve().parents[2] / ".env"
if _ENV_FILE.exists():
    load_dotenv(dotenv_path=_ENV_FILE, override=False)


# ── Environment-Helper ───────────────────────────────────────────────
# HINWEIS: Env-Var-Namen sind kanonisch mit ABAC_-Prefix.

def _env_bool(primary: str, fallback: str | None = None, default: str = "0") -> bool:
    """Liest eine bool-Env-Var mit optionalem Fallback-Namen."""
    val = os.getenv(primary)
    if val is None and fallback:
        val = os.getenv(fallback)
    if val is None:
        val = default
    return val.lower() in ("1", "true", "yes")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        warnings.warn(f"{name}={raw!r} ist keine Zahl, verwende {default}", stacklevel=2)
        return default


def _env_set(name: str, default: str) -> frozenset[str]:
    raw = os.getenv(name, default)
    return frozenset(p.strip() for p in raw.split(",") if p.strip())


DEBUG = _env_bool("ABAC_DEBUG", "DEBUG", "0")

# ── Rule Cache ───────────────────────────────────────────────────────
RULE_CACHE_TTL_SECONDS = _env_int("ABAC_RULE_CACHE_TTL_SECONDS", 300)  # 5 Minuten

# ── Break-Glass ──────────────────────────────────────────────────────
BREAK_GLASS_DEFAULT_MINUTES = _env_int("ABAC_BREAK_GLASS_DEFAULT_MINUTES", 60)
BREAK_GLASS_MAX_MINUTES = _env_int("ABAC_BREAK_GLASS_MAX_MINUTES", 8 * 60)
BREAK_GLASS_MIN_JUSTIFICATION = _env_int("ABAC_BREAK_GLASS_MIN_JUSTIFICATION", 20)
BREAK_GLASS_APPROVAL_REASONS = _env_set(
    "ABAC_BREAK_GLASS_APPROVAL_REASONS", "compliance_review,data_recovery"
)
BREAK_GLASS_SWEEP_SECONDS = _env_int("ABAC_BREAK_GLASS_SWEEP_SECONDS", 60)

# Bekannte Reason-Codes (Anzeige/Doku). Unbekannte Codes werden akzeptiert.
BREAK_GLASS_REASON_CODES: dict[str, str] = {
    "emergency": "Klinischer Notfall",
    "investigation": "Untersuchung eines Vorfalls",
    "maintenance": "Wartung / Datenkorrektur",
    "compliance_review": "Compliance-Prüfung (Freigabe nötig)",
    "support_escalation": "Support-Eskalation",
    "data_recovery": "Datenwiederherstellung (Freigabe nötig)",
}

# ── Audit ────────────────────────────────────────────────────────────
AUDIT_QUEUE_SIZE = _env_int("ABAC_AUDIT_QUEUE_SIZE", 10_000)
# "none" | "deny" | "all"
AUDIT_DECISIONS = os.getenv("ABAC_AUDIT_DECISIONS", "deny").strip().lower()

# ── Admin-/Reviewer-Rollen (HTTP-Schicht) ────────────────────────────
ADMIN_ROLES = _env_set("ABAC_ADMIN_ROLES", "access_admin")
REVIEWER_ROLES = _env_set("ABAC_REVIEWER_ROLES", "access_admin,break_glass_reviewer")

# ── Masking ──────────────────────────────────────────────────────────
DEFAULT_MASK_VALUE = os.getenv("ABAC_DEFAULT_MASK_VALUE", "****")

# ── Logging ──────────────────────────────────────────────────────────
LOG_LEVEL = os.getenv("ABAC_LOG_LEVEL", "INFO")
LOG_DIR = os.getenv("ABAC_LOG_DIR", "logs")
LOG_JSON = _env_bool("ABAC_LOG_JSON", default="0")


# ── Startup-Warnungen ────────────────────────────────────────────────
if AUDIT_DECISIONS not in ("none", "deny", "all"):
    warnings.warn(
        f"ABAC_AUDIT_DECISIONS={AUDIT_DECISIONS!r} unbekannt, verwende 'deny'.",
        stacklevel=1,
    )
    AUDIT_DECISIONS = "deny"
if BREAK_GLASS_DEFAULT_MINUTES > BREAK_GLASS_MAX_MINUTES:
    warnings.warn(
        "ABAC_BREAK_GLASS_DEFAULT_MINUTES liegt über dem Maximum und wird gekappt.",
        stacklevel=1,
    )
    BREAK_GLASS_DEFAULT_MINUTES = BREAK_GLASS_MAX_MINUTES
