"""
Shared Fixtures fuer die gesamte Test-Suite.

Architektur:
  - App-Tests: temporaere SQLite-Datei (DATABASE_URL wird VOR dem App-Import
    gesetzt), TestClient session-scoped, Seed-Daten einmalig
  - Store-/Manager-Tests: In-Memory SQLite pro Test (StaticPool, isoliert)
  - Engine-Tests: FakeRuleStore ohne DB + feste Uhr

Konvention:
  - `client` ist der primaere TestClient (session-scoped fuer Performance)
  - `api_collection` liefert pro Test eine eigene Collection mit
    Property-Definitionen, damit sich Regeln verschiedener Tests nicht
    gegenseitig ueberholen (first-match-wins)
"""
from __future__ import annotations

import json
import os
import sys
import tempfile
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# ── sys.path: Tests muessen sowohl aus backend/ als auch aus Root funktionieren
_BACKEND_DIR = Path(__file__).resolve().parent.parent
if str(_BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(_BACKEND_DIR))

# ── Env MUSS vor App-Import gesetzt werden ──────────────────────────────
_TMP_DIR = Path(tempfile.mkdtemp(prefix="abac-tests-"))
os.environ.setdefault("DATABASE_URL", f"sqlite:///{(_TMP_DIR / 'access.db').as_posix()}")
os.environ.setdefault("ABAC_LOG_DIR", str(_TMP_DIR / "logs"))
os.environ["ABAC_BREAK_GLASS_SWEEP_SECONDS"] = "0"  # kein Sweeper-Thread in Tests
os.environ["ABAC_AUDIT_DECISIONS"] = "all"

from main import app  # noqa: E402 – nach env setup

from app.access_types import CollectionRule, Everyone, PropertyDef, PropertyRule, UserAccessContext  # noqa: E402
from app.audit import to_iso  # noqa: E402
from app.conditions import parse_stored_condition  # noqa: E402
from app.db import Base, SessionLocal  # noqa: E402
from app.models import (  # noqa: E402
    AccessGroup,
    GroupMember,
    PropertyDefinition,
    Role,
    User,
    UserRole,
)
from app.rule_store import sort_key  # noqa: E402

T0 = datetime(2026, 3, 2, 8, 0, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeClock:
    """Steuerbare Uhr (Break-Glass-Ablauf, Special Values)."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeRuleStore:
    """Rule Store im Speicher. Zaehlt Ladevorgaenge fuer Cache-Tests."""

    def __init__(self) -> None:
        self.collection_rules: list[CollectionRule] = []
        self.property_rules: list[PropertyRule] = []
        self.definitions: list[PropertyDef] = []
        self.loads: dict[str, int] = {}
        self._seq = 0

    def _count(self, key: str) -> None:
        self.loads[key] = self.loads.get(key, 0) + 1

    def _created_at(self) -> str:
        self._seq += 1
        return to_iso(T0 + timedelta(seconds=self._seq))

    def add_rule(
        self,
        rule_id: str,
        collection_id: str = "invoices",
        *,
        principal: Any = None,
        condition: Any = None,
        name: Optional[str] = None,
        priority: int = 100,
        is_active: bool = True,
        **flags: bool,
    ) -> CollectionRule:
        # dict wie von der API, str wie in condition_json gespeichert
        stored = condition if condition is None or isinstance(condition, str) else json.dumps(condition)
        parsed, document = parse_stored_condition(stored, rule_id=rule_id)
        rule = CollectionRule(
            rule_id=rule_id,
            collection_id=collection_id,
            name=name or rule_id,
            principal=principal or Everyone(),
            condition=parsed,
            condition_raw=document,
            priority=priority,
            is_active=is_active,
            created_at=self._created_at(),
            **flags,
        )
        self.collection_rules.append(rule)
        return rule

    def add_property_rule(
        self,
        rule_id: str,
        property_id: str,
        *,
        principal: Any = None,
        can_read: bool = True,
        can_write: bool = True,
        mask_value: Optional[str] = None,
        priority: int = 100,
    ) -> PropertyRule:
        rule = PropertyRule(
            rule_id=rule_id,
            property_id=property_id,
            principal=principal or Everyone(),
            can_read=can_read,
            can_write=can_write,
            mask_value=mask_value,
            priority=priority,
            created_at=self._created_at(),
        )
        self.property_rules.append(rule)
        return rule

    def add_definition(self, property_id: str, code: str, collection_id: str = "invoices", **flags: Any) -> PropertyDef:
        definition = PropertyDef(
            property_id=property_id,
            collection_id=collection_id,
            code=code,
            position=len(self.definitions),
            **flags,
        )
        self.definitions.append(definition)
        return definition

    # ── Query-Port ──────────────────────────────────────────────────
    def find_active_collection_rules(self, collection_id: str) -> list[CollectionRule]:
        self._count(f"rules:{collection_id}")
        rules = [r for r in self.collection_rules if r.collection_id == collection_id and r.is_active]
        return sorted(rules, key=sort_key)

    def find_active_property_rules(self) -> list[PropertyRule]:
        self._count("property-rules")
        return sorted((r for r in self.property_rules if r.is_active), key=sort_key)

    def find_property_definitions(self, collection_id: str) -> list[PropertyDef]:
        self._count(f"defs:{collection_id}")
        return [d for d in self.definitions if d.collection_id == collection_id]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_store() -> FakeRuleStore:
    return FakeRuleStore()


# ---------------------------------------------------------------------------
# UserAccessContext-Factory
# ---------------------------------------------------------------------------

def make_user(
    user_id: str = "u-alice",
    *,
    roles: tuple[str, ...] = (),
    teams: tuple[str, ...] = (),
    groups: tuple[str, ...] = (),
    **attrs: Any,
) -> UserAccessContext:
    return UserAccessContext(
        user_id=user_id,
        role_ids=frozenset(roles),
        team_ids=frozenset(teams),
        group_ids=frozenset(groups),
        **attrs,
    )


@pytest.fixture
def user_factory():
    return make_user


# ---------------------------------------------------------------------------
# In-Memory DB pro Test
# ---------------------------------------------------------------------------

@pytest.fixture
def session_factory():
    """Frische In-Memory-DB mit vollem Schema; eine Connection (StaticPool)."""
    mem_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=mem_engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=mem_engine)
    yield factory
    mem_engine.dispose()


# ---------------------------------------------------------------------------
# Seed-Daten
# ---------------------------------------------------------------------------

SEED_USERS = {
    # user_id: (roles, groups/teams)
    "admin": (("access_admin",), ()),
    "reviewer": (("break_glass_reviewer",), ()),
    "alice": (("viewer",), ("sales",)),
    "bob": (("viewer",), ("analysts",)),
    "carol": ((), ()),
}


def seed_principals(db) -> None:
    now = to_iso(T0)
    for role_id in ("access_admin", "break_glass_reviewer", "viewer", "auditor"):
        db.merge(Role(role_id=role_id))
    db.merge(AccessGroup(group_id="sales", kind="team"))
    db.merge(AccessGroup(group_id="analysts", kind="group"))
    for user_id, (roles, memberships) in SEED_USERS.items():
        db.merge(User(user_id=user_id, email=f"{user_id}@example.org", department_id="finance",
                      is_active=True, created_at=now))
        for role_id in roles:
            db.merge(UserRole(user_id=user_id, role_id=role_id, created_at=now))
        for group_id in memberships:
            db.merge(GroupMember(group_id=group_id, user_id=user_id, created_at=now))
    db.merge(User(user_id="mallory", email="mallory@example.org", is_active=False, created_at=now))
    db.commit()


def seed_properties(db, collection_id: str) -> dict[str, str]:
    """Standard-Felder einer Collection. Returns: code -> property_id."""
    specs = [
        ("amount", {}),
        ("owner_id", {}),
        ("status", {}),
        ("email", {"is_pii": True, "masking_strategy": "full"}),
        ("ssn", {"is_pii": True, "requires_break_glass": True}),
        ("created_at", {"is_readonly": True}),
    ]
    ids: dict[str, str] = {}
    for position, (code, flags) in enumerate(specs):
        property_id = f"{collection_id}.{code}"
        db.merge(PropertyDefinition(
            property_id=property_id, collection_id=collection_id, code=code,
            position=position, is_active=True, **flags,
        ))
        ids[code] = property_id
    db.commit()
    return ids


@pytest.fixture
def seeded_session_factory(session_factory):
    """In-Memory-DB mit Seed-Principals und Feldern der Collection 'invoices'."""
    with session_factory() as db:
        seed_principals(db)
        seed_properties(db, "invoices")
    return session_factory


# ---------------------------------------------------------------------------
# App / TestClient
# ---------------------------------------------------------------------------

@pytest.fixture(scope="session")
def client() -> TestClient:
    """TestClient mit Lifespan (DB-Init, Audit-Worker). Seed einmalig."""
    with TestClient(app, raise_server_exceptions=False) as c:
        with SessionLocal() as db:
            seed_principals(db)
        yield c


def as_user(user_id: str) -> dict[str, str]:
    return {"X-User-Id": user_id, "Content-Type": "application/json"}


@pytest.fixture(scope="session")
def admin_h() -> dict[str, str]:
    return as_user("admin")


@pytest.fixture(scope="session")
def reviewer_h() -> dict[str, str]:
    return as_user("reviewer")


@pytest.fixture(scope="session")
def alice_h() -> dict[str, str]:
    return as_user("alice")


@pytest.fixture(scope="session")
def bob_h() -> dict[str, str]:
    return as_user("bob")


@pytest.fixture
def api_collection(client: TestClient) -> str:
    """Eigene Collection pro Test (mit Standard-Feldern)."""
    collection_id = f"invoices_{uuid.uuid4().hex[:8]}"
    with SessionLocal() as db:
        seed_properties(db, collection_id)
    return collection_id
