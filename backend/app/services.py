"""
Verdrahtung der prozessweiten Instanzen (Router und main importieren von hier).

Rule Cache ist der einzige geteilte, veränderliche Zustand der Engine.
Audit-Worker und Expiry-Sweeper werden im Lifespan von main.py gestartet.
"""
from __future__ import annotations

from app.access_engine import AccessDecisionEngine
from app.access_ingest import AccessIngestService
from app.audit import AuditSink
from app.break_glass import BreakGlassManager, ExpirySweeper
from app.events import EventBus, notify_security_log
from app.rule_cache import RuleCache
from app.rule_service import RuleService
from app.rule_store import SqlRuleStore
from app.session_store import SqlSessionStore

audit_sink = AuditSink()
event_bus = EventBus().subscribe("*", notify_security_log)

rule_store = SqlRuleStore()
rule_cache = RuleCache(rule_store)
engine = AccessDecisionEngine(rule_cache, audit_sink)
rule_service = RuleService(rule_store, rule_cache, audit_sink)
ingest_service = AccessIngestService(rule_store, rule_service)

session_store = SqlSessionStore()
break_glass = BreakGlassManager(session_store, audit_sink, event_bus)
expiry_sweeper = ExpirySweeper(break_glass)
