"""
Regel-Administration (RuleService ueber SqlRuleStore).

Testet:
  - Validierung: Principal-Typ, Principal-Existenz, Condition-Struktur,
    unbekannte Properties in Conditions
  - Cache-Invalidierung VOR der Rueckgabe (read-your-writes in der Engine)
  - Audit-Event mit previous/new pro Mutation
  - Teil-Updates mit nur principal_id behalten den Principal-Typ
  - Reorder und Property-Regeln
"""
import pytest
from fastapi import HTTPException

from app.access_engine import AccessDecisionEngine
from app.audit import AuditSink
from app.rule_cache import RuleCache
from app.rule_service import RuleService
from app.rule_store import SqlRuleStore

pytestmark = pytest.mark.rules

OWNER_ONLY = {"and": [{"property": "owner_id", "operator": "equals", "value": "@current_user.id"}]}


@pytest.fixture
def audited():
    return []


@pytest.fixture
def store(seeded_session_factory):
    return SqlRuleStore(seeded_session_factory)


@pytest.fixture
def cache(store):
    return RuleCache(store, ttl=300)


@pytest.fixture
def service(store, cache, audited):
    return RuleService(store, cache, AuditSink(audited.append, async_processing=False))


@pytest.fixture
def engine(cache, clock):
    return AccessDecisionEngine(cache, None, clock=clock)


def _viewer_read(**overrides):
    data = {"name": "Viewer lesen", "principal_type": "role", "principal_id": "viewer", "can_read": True}
    data.update(overrides)
    return data


class TestValidation:

    def test_unknown_principal_type(self, service):
        with pytest.raises(HTTPException) as exc:
            service.create_collection_rule("invoices", _viewer_read(principal_type="department"), "admin")
        assert exc.value.status_code == 400

    def test_missing_principal(self, service):
        with pytest.raises(HTTPException) as exc:
            service.create_collection_rule("invoices", _viewer_read(principal_id="ghost-role"), "admin")
        assert exc.value.status_code == 400
        assert "nicht gefunden" in exc.value.detail

    def test_principal_id_required(self, service):
        with pytest.raises(HTTPException) as exc:
            service.create_collection_rule("invoices", _viewer_read(principal_id=None), "admin")
        assert exc.value.status_code == 400

    def test_legacy_columns_exclusive(self, service):
        data = {"name": "legacy", "role_id": "viewer", "user_id": "alice", "can_read": True}
        with pytest.raises(HTTPException) as exc:
            service.create_collection_rule("invoices", data, "admin")
        assert exc.value.status_code == 400

    def test_legacy_single_column_accepted(self, service):
        state = service.create_collection_rule("invoices", {"name": "legacy", "group_id": "sales"}, "admin")
        assert state["principal"] == {"type": "group", "id": "sales"}

    def test_malformed_condition(self, service):
        with pytest.raises(HTTPException) as exc:
            service.create_collection_rule(
                "invoices", _viewer_read(condition={"and": [{"operator": "equals"}]}), "admin",
            )
        assert exc.value.status_code == 400

    def test_condition_on_unknown_property(self, service):
        cond = {"and": [{"property": "colour", "operator": "equals", "value": "red"}]}
        with pytest.raises(HTTPException) as exc:
            service.create_collection_rule("invoices", _viewer_read(condition=cond), "admin")
        assert "colour" in exc.value.detail

    def test_principal_id_without_type_on_create(self, service):
        data = {"name": "ohne Typ", "principal_id": "viewer", "can_read": True}
        with pytest.raises(HTTPException) as exc:
            service.create_collection_rule("invoices", data, "admin")
        assert exc.value.status_code == 400

    def test_condition_as_json_text_is_stored_as_object(self, service, store):
        text = '{"and": [{"property": "owner_id", "operator": "equals", "value": "@current_user.id"}]}'
        state = service.create_collection_rule("invoices", _viewer_read(condition=text), "admin")
        assert state["condition"] == OWNER_ONLY
        rule = store.find_active_collection_rules("invoices")[0]
        assert rule.condition_raw == OWNER_ONLY

    def test_condition_must_be_object(self, service):
        with pytest.raises(HTTPException) as exc:
            service.create_collection_rule("invoices", _viewer_read(condition='"owner_id"'), "admin")
        assert exc.value.status_code == 400

    def test_valid_condition_is_stored(self, service):
        state = service.create_collection_rule("invoices", _viewer_read(condition=OWNER_ONLY), "admin")
        assert state["condition"] == OWNER_ONLY
        assert state["principal"] == {"type": "role", "id": "viewer"}
        assert state["created_by"] == "admin"


class TestCollectionRuleLifecycle:

    def test_create_is_visible_immediately(self, service, engine, user_factory):
        viewer = user_factory("alice", roles=("viewer",))
        assert engine.check_access(viewer, "invoices", "read").allowed is False  # Cache befuellt
        service.create_collection_rule("invoices", _viewer_read(), "admin")
        assert engine.check_access(viewer, "invoices", "read").allowed is True

    def test_update_is_visible_immediately(self, service, engine, user_factory):
        viewer = user_factory("alice", roles=("viewer",))
        rule = service.create_collection_rule("invoices", _viewer_read(), "admin")
        assert engine.check_access(viewer, "invoices", "read").allowed is True
        service.update_collection_rule(rule["rule_id"], {"is_active": False}, "admin")
        assert engine.check_access(viewer, "invoices", "read").allowed is False

    def test_update_keeps_unspecified_fields(self, service):
        rule = service.create_collection_rule("invoices", _viewer_read(condition=OWNER_ONLY), "admin")
        updated = service.update_collection_rule(rule["rule_id"], {"can_update": True}, "editor")
        assert updated["can_read"] is True and updated["can_update"] is True
        assert updated["condition"] == OWNER_ONLY
        assert updated["updated_by"] == "editor"

    def test_update_principal_id_keeps_type(self, service, engine, user_factory):
        rule = service.create_collection_rule("invoices", _viewer_read(), "admin")
        updated = service.update_collection_rule(rule["rule_id"], {"principal_id": "auditor"}, "admin")
        assert updated["principal"] == {"type": "role", "id": "auditor"}

        nobody = user_factory("carol")
        assert engine.check_access(nobody, "invoices", "read").allowed is False
        viewer = user_factory("alice", roles=("viewer",))
        assert engine.check_access(viewer, "invoices", "read").allowed is False
        auditor = user_factory("bob", roles=("auditor",))
        assert engine.check_access(auditor, "invoices", "read").allowed is True

    def test_update_principal_id_validated_against_type(self, service):
        rule = service.create_collection_rule("invoices", _viewer_read(), "admin")
        with pytest.raises(HTTPException) as exc:
            service.update_collection_rule(rule["rule_id"], {"principal_id": "ghost-role"}, "admin")
        assert exc.value.status_code == 400
        assert service.get_collection_rule(rule["rule_id"])["principal"] == {"type": "role", "id": "viewer"}

    def test_update_principal_id_on_everyone_rule_rejected(self, service):
        rule = service.create_collection_rule("invoices", {"name": "alle", "can_read": True}, "admin")
        with pytest.raises(HTTPException) as exc:
            service.update_collection_rule(rule["rule_id"], {"principal_id": "viewer"}, "admin")
        assert exc.value.status_code == 400

    def test_update_to_everyone_needs_explicit_type(self, service):
        rule = service.create_collection_rule("invoices", _viewer_read(), "admin")
        updated = service.update_collection_rule(rule["rule_id"], {"principal_type": "everyone"}, "admin")
        assert updated["principal"] == {"type": "everyone", "id": None}

    def test_update_can_clear_condition(self, service):
        rule = service.create_collection_rule("invoices", _viewer_read(condition=OWNER_ONLY), "admin")
        assert service.update_collection_rule(rule["rule_id"], {"condition": None}, "admin")["condition"] is None

    def test_delete(self, service, engine, user_factory):
        viewer = user_factory("alice", roles=("viewer",))
        rule = service.create_collection_rule("invoices", _viewer_read(), "admin")
        engine.check_access(viewer, "invoices", "read")
        assert service.delete_collection_rule(rule["rule_id"], "admin") == {"ok": True, "rule_id": rule["rule_id"]}
        assert engine.check_access(viewer, "invoices", "read").allowed is False
        with pytest.raises(HTTPException) as exc:
            service.get_collection_rule(rule["rule_id"])
        assert exc.value.status_code == 404

    def test_unknown_rule_404(self, service):
        for call in (
            lambda: service.update_collection_rule("nope", {"can_read": True}, "admin"),
            lambda: service.delete_collection_rule("nope", "admin"),
        ):
            with pytest.raises(HTTPException) as exc:
                call()
            assert exc.value.status_code == 404

    def test_audit_previous_new(self, service, audited):
        rule = service.create_collection_rule("invoices", _viewer_read(), "admin")
        service.update_collection_rule(rule["rule_id"], {"priority": 5}, "admin")
        service.delete_collection_rule(rule["rule_id"], "admin")
        assert [e.action for e in audited] == ["rule_create", "rule_update", "rule_delete"]
        assert audited[0].context["previous"] is None
        assert audited[1].context["previous"]["priority"] == 100
        assert audited[1].context["new"]["priority"] == 5
        assert audited[2].context["new"] is None
        assert all(e.resource == "invoices" for e in audited)

    def test_invalidate_cache_after_direct_db_change(self, service, store, engine, user_factory, audited):
        viewer = user_factory("alice", roles=("viewer",))
        rule = service.create_collection_rule("invoices", _viewer_read(), "admin")
        assert engine.check_access(viewer, "invoices", "read").allowed is True

        store.update_rule("collection", rule["rule_id"], {"is_active": False})  # an der Verwaltung vorbei
        assert engine.check_access(viewer, "invoices", "read").allowed is True

        assert service.invalidate_cache("admin") == {"ok": True}
        assert engine.check_access(viewer, "invoices", "read").allowed is False
        assert audited[-1].action == "rule_cache_invalidate"

    def test_reorder(self, service, engine, user_factory):
        a = service.create_collection_rule("invoices", _viewer_read(name="A", priority=1), "admin")
        b = service.create_collection_rule("invoices", _viewer_read(name="B", priority=2), "admin")
        viewer = user_factory("alice", roles=("viewer",))
        assert engine.check_access(viewer, "invoices", "read").matched_rule_id == a["rule_id"]

        n = service.reorder_rules("invoices", [(a["rule_id"], 20), (b["rule_id"], 10), ("foreign", 1)], "admin")
        assert n == 2
        assert engine.check_access(viewer, "invoices", "read").matched_rule_id == b["rule_id"]
        listed = service.list_collection_rules("invoices")
        assert [r["name"] for r in listed] == ["B", "A"]


class TestPropertyRules:

    def test_create_and_effective(self, service, engine, user_factory):
        auditor = user_factory("bob", roles=("auditor",))
        before = {p.code: p for p in engine.get_effective_permissions("invoices", auditor).properties}
        assert before["amount"].can_read is True

        service.create_property_rule("invoices.amount", {
            "principal_type": "role", "principal_id": "auditor", "can_read": False, "can_write": False,
        }, "admin")
        after = {p.code: p for p in engine.get_effective_permissions("invoices", auditor).properties}
        assert after["amount"].can_read is False

    def test_unknown_property_404(self, service):
        with pytest.raises(HTTPException) as exc:
            service.create_property_rule("invoices.nope", {"principal_type": "everyone"}, "admin")
        assert exc.value.status_code == 404

    def test_update_property_principal_id_keeps_type(self, service):
        rule = service.create_property_rule("invoices.amount", {
            "principal_type": "role", "principal_id": "viewer", "can_read": False,
        }, "admin")
        updated = service.update_property_rule(rule["rule_id"], {"principal_id": "auditor"}, "admin")
        assert updated["principal"] == {"type": "role", "id": "auditor"}

    def test_update_mask_and_delete(self, service, audited):
        rule = service.create_property_rule("invoices.email", {"principal_type": "everyone"}, "admin")
        updated = service.update_property_rule(rule["rule_id"], {"mask_value": "x@x"}, "admin")
        assert updated["mask_value"] == "x@x"
        service.delete_property_rule(rule["rule_id"], "admin")
        assert [e.action for e in audited] == [
            "property_rule_create", "property_rule_update", "property_rule_delete",
        ]
        assert service.list_property_rules("invoices.email") == []
