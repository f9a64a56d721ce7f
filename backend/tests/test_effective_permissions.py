"""
Effektive Rechte: Collection-Flags (Vereinigung) und Feldrechte.

Klinischer/regulatorischer Kontext:
  Felder mit requires_break_glass duerfen NIE ueber normale Regeln lesbar
  werden. Ein Fehler hier legt z.B. Sozialversicherungsnummern offen.
"""
import pytest

from app.access_engine import AccessDecisionEngine, resolve_property
from app.access_types import PropertyDef, PropertyRule, RolePrincipal, TeamPrincipal, UserPrincipal
from app.rule_cache import RuleCache

pytestmark = pytest.mark.rules

OWNER_ONLY = {"and": [{"property": "owner_id", "operator": "equals", "value": "@current_user.id"}]}


@pytest.fixture
def engine(fake_store, clock):
    return AccessDecisionEngine(RuleCache(fake_store, ttl=300), None, clock=clock)


def _props(perms):
    return {p.code: p for p in perms.properties}


class TestCollectionLevel:

    def test_unusable_stored_condition_grants_nothing(self, engine, fake_store, user_factory):
        fake_store.add_rule("r-bad", can_read=True, condition='{"and": [{"operator": "equals"}]}', priority=1)
        perms = engine.get_effective_permissions("invoices", user_factory())
        assert perms.can_read is False
        assert perms.read_condition is None
        assert perms.applied_rules == []

    def test_unusable_condition_does_not_shadow_later_rule(self, engine, fake_store, user_factory):
        fake_store.add_rule("r-bad", can_read=True, condition="kein json", priority=1)
        fake_store.add_rule("r-own", can_read=True, condition=OWNER_ONLY, priority=2)
        perms = engine.get_effective_permissions("invoices", user_factory())
        assert perms.can_read is True
        assert perms.read_condition == OWNER_ONLY
        assert perms.applied_rules == ["r-own"]

    def test_nothing_granted(self, engine, user_factory):
        perms = engine.get_effective_permissions("invoices", user_factory())
        assert not any([perms.can_read, perms.can_create, perms.can_update, perms.can_delete])
        assert perms.applied_rules == []

    def test_union_is_monotonic(self, engine, fake_store, user_factory):
        fake_store.add_rule("read-own", can_read=True, condition=OWNER_ONLY, priority=1)
        fake_store.add_rule("read-update", can_read=True, can_update=True, priority=2)
        fake_store.add_rule("nothing-new", can_read=True, priority=3)

        perms = engine.get_effective_permissions("invoices", user_factory())
        assert perms.can_read and perms.can_update
        assert not perms.can_create and not perms.can_delete
        # erste gewaehrende Regel setzt die Condition
        assert perms.read_condition == OWNER_ONLY
        assert perms.update_condition is None
        assert perms.applied_rules == ["read-own", "read-update"]

    def test_principal_filter(self, engine, fake_store, user_factory):
        fake_store.add_rule("admins", principal=RolePrincipal("admin"), can_delete=True)
        fake_store.add_rule("sales", principal=TeamPrincipal("sales"), can_create=True)
        perms = engine.get_effective_permissions("invoices", user_factory(teams=("sales",)))
        assert perms.can_create and not perms.can_delete


class TestPropertyLevel:

    @pytest.fixture(autouse=True)
    def _definitions(self, fake_store):
        fake_store.add_definition("invoices.amount", "amount")
        fake_store.add_definition("invoices.created_at", "created_at", is_readonly=True)
        fake_store.add_definition("invoices.ssn", "ssn", is_pii=True, requires_break_glass=True)
        fake_store.add_definition("invoices.email", "email", is_pii=True, masking_strategy="full")
        fake_store.add_definition("orders.total", "total", collection_id="orders")

    def test_defaults_without_rules(self, engine, user_factory):
        props = _props(engine.get_effective_permissions("invoices", user_factory()))
        assert list(props) == ["amount", "created_at", "ssn", "email"]
        assert props["amount"].can_read and props["amount"].can_write
        assert props["created_at"].can_read and not props["created_at"].can_write

    def test_break_glass_field_never_readable(self, engine, fake_store, user_factory):
        fake_store.add_property_rule("ssn-all", "invoices.ssn", principal=UserPrincipal("u-alice"),
                                     can_read=True, can_write=True, priority=1)
        ssn = _props(engine.get_effective_permissions("invoices", user_factory("u-alice")))["ssn"]
        assert ssn.can_read is False and ssn.can_write is False
        assert ssn.requires_break_glass is True
        assert ssn.is_masked is False

    def test_priority_then_specificity(self, engine, fake_store, user_factory):
        user = user_factory("u-alice", roles=("viewer",), groups=("analysts",))
        fake_store.add_property_rule("role-deny", "invoices.amount", principal=RolePrincipal("viewer"),
                                     can_read=False, can_write=False, priority=10)
        fake_store.add_property_rule("user-allow", "invoices.amount", principal=UserPrincipal("u-alice"),
                                     can_read=True, can_write=False, priority=10)
        fake_store.add_property_rule("group-late", "invoices.amount", principal=TeamPrincipal("analysts"),
                                     can_read=False, priority=20)
        amount = _props(engine.get_effective_permissions("invoices", user))["amount"]
        assert amount.rule_id == "user-allow"
        assert amount.can_read is True and amount.can_write is False

    def test_lower_priority_beats_specificity(self, engine, fake_store, user_factory):
        fake_store.add_property_rule("everyone-first", "invoices.amount", can_read=False, priority=1)
        fake_store.add_property_rule("user-later", "invoices.amount", principal=UserPrincipal("u-alice"),
                                     can_read=True, priority=2)
        amount = _props(engine.get_effective_permissions("invoices", user_factory("u-alice")))["amount"]
        assert amount.rule_id == "everyone-first"
        assert amount.can_read is False

    def test_rule_can_unlock_readonly_field(self, engine, fake_store, user_factory):
        fake_store.add_property_rule("edit-created", "invoices.created_at", can_write=True)
        created = _props(engine.get_effective_permissions("invoices", user_factory()))["created_at"]
        assert created.can_write is True

    def test_masking(self, engine, fake_store, user_factory):
        props = _props(engine.get_effective_permissions("invoices", user_factory()))
        assert props["email"].is_masked is True
        assert props["email"].mask_value == "****"
        assert props["amount"].is_masked is False
        assert props["amount"].mask_value is None

    def test_rule_mask_value_overrides_default(self, engine, fake_store, user_factory):
        fake_store.add_property_rule("email-mask", "invoices.email", mask_value="x@x")
        email = _props(engine.get_effective_permissions("invoices", user_factory()))["email"]
        assert email.mask_value == "x@x"

    def test_unreadable_field_is_not_masked(self, engine, fake_store, user_factory):
        fake_store.add_property_rule("email-hide", "invoices.email", can_read=False)
        email = _props(engine.get_effective_permissions("invoices", user_factory()))["email"]
        assert email.can_read is False and email.is_masked is False

    def test_group_member_matches_property_rule(self, engine, fake_store, user_factory):
        fake_store.add_property_rule("analysts-hide", "invoices.amount",
                                     principal=TeamPrincipal("analysts"), can_read=False)
        amount = _props(engine.get_effective_permissions("invoices", user_factory(groups=("analysts",))))["amount"]
        assert amount.can_read is False

    def test_other_collection_rules_ignored(self, engine, fake_store, user_factory):
        fake_store.add_property_rule("orders-hide", "orders.total", can_read=False)
        perms = engine.get_effective_permissions("invoices", user_factory())
        assert "total" not in _props(perms)


def test_resolve_property_definition_mask_value():
    definition = PropertyDef("p", "c", "phone", is_sensitive=True, masking_strategy="partial",
                             mask_value="+41 ** *** ** **")
    result = resolve_property(definition, [])
    assert result.is_masked and result.mask_value == "+41 ** *** ** **"


def test_resolve_property_top_rule_only():
    definition = PropertyDef("p", "c", "amount")
    rules = [
        PropertyRule("b", "p", RolePrincipal("r"), can_read=False, priority=5, created_at="2"),
        PropertyRule("a", "p", RolePrincipal("r"), can_read=True, priority=5, created_at="1"),
    ]
    assert resolve_property(definition, rules).rule_id == "a"
