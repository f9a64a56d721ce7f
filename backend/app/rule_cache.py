"""
Rule Cache: aktive Regeln pro Collection, TTL-basiert (Standard 300s).

INVALIDIERUNG:
  - TTL-basiert
  - Explizit via invalidate(collection_id) bei jeder Regel-Mutation, synchron
    BEVOR die Mutation an den Aufrufer zurückgeht.

THREAD-SAFETY:
  Pro Key ein Generationszähler unter Lock. Ein Ladevorgang, der vor einer
  Invalidierung gestartet wurde, wird nicht mehr in den Cache geschrieben.
  Damit sieht der mutierende Aufrufer nie einen älteren Regelstand
  (read-your-writes), andere Leser höchstens bis TTL-Ablauf.

Der eigentliche Speicher ist ein austauschbarer Port (get/set/invalidate),
Standard ist TTLCache.
"""
from __future__ import annotations

import threading
import time
from typing import Any, Callable, Optional, Protocol

from app.access_types import CollectionRule, PropertyDef, PropertyRule
from app.config import RULE_CACHE_TTL_SECONDS
from app.logging_config import get_logger

logger = get_logger(__name__)

MISSING = object()


class CachePort(Protocol):
    def get(self, key: str, default: Any = MISSING) -> Any: ...
    def set(self, key: str, value: Any, ttl: float | None = None) -> None: ...
    def invalidate(self, key: str | None = None) -> int: ...


class _CacheEntry:
    __slots__ = ("value", "expires")

    def __init__(self, value: Any, expires: float):
        self.value = value
        self.expires = expires


class TTLCache:
    """Thread-safe TTL-Map."""

    def __init__(self, default_ttl: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self._store: dict[str, _CacheEntry] = {}
        self._lock = threading.Lock()
        self._default_ttl = default_ttl
        self._clock = clock

    def get(self, key: str, default: Any = MISSING) -> Any:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return default
            if entry.expires <= self._clock():
                del self._store[key]
                return default
            return entry.value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        ttl = self._default_ttl if ttl is None else ttl
        with self._lock:
            self._store[key] = _CacheEntry(value, self._clock() + ttl)

    def invalidate(self, key: str | None = None) -> int:
        """Löscht einen Key (oder alle). Returns: Anzahl gelöschter Einträge."""
        with self._lock:
            if key is None:
                n = len(self._store)
                self._store.clear()
                return n
            return 1 if self._store.pop(key, None) is not None else 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)


# ── Keys ─────────────────────────────────────────────────────────────

def collection_rules_key(collection_id: str) -> str:
    return f"collection-rules:{collection_id}"


PROPERTY_RULES_KEY = "property-rules"


def property_defs_key(collection_id: str) -> str:
    return f"property-defs:{collection_id}"


class RuleCache:
    """Cache vor dem Rule Store. Cache-Fehler -> direkter Store-Zugriff."""

    def __init__(self, store: Any, cache: Optional[CachePort] = None, ttl: float = RULE_CACHE_TTL_SECONDS):
        self._store = store
        self._ttl = float(ttl)
        self._cache: CachePort = cache if cache is not None else TTLCache(default_ttl=self._ttl)
        self._lock = threading.Lock()
        self._generations: dict[str, int] = {}
        self._epoch = 0  # invalidate_all()

    def _generation(self, key: str) -> tuple[int, int]:
        return self._epoch, self._generations.get(key, 0)

    @property
    def store(self) -> Any:
        return self._store

    def _get_or_load(self, key: str, loader: Callable[[], Any]) -> Any:
        try:
            value = self._cache.get(key, MISSING)
        except Exception:
            logger.warning("rule_cache_read_failed", key=key, exc_info=True)
            return loader()
        if value is not MISSING:
            return value

        with self._lock:
            generation = self._generation(key)
        value = loader()
        with self._lock:
            # In der Zwischenzeit invalidiert -> nicht cachen
            if self._generation(key) == generation:
                try:
                    self._cache.set(key, value, self._ttl)
                except Exception:
                    logger.warning("rule_cache_write_failed", key=key, exc_info=True)
        return value

    def _invalidate_key(self, key: str) -> None:
        with self._lock:
            self._generations[key] = self._generations.get(key, 0) + 1
            try:
                self._cache.invalidate(key)
            except Exception:
                logger.warning("rule_cache_invalidate_failed", key=key, exc_info=True)

    # ── Lesen ───────────────────────────────────────────────────────

    def get_active_rules(self, collection_id: str) -> list[CollectionRule]:
        return self._get_or_load(
            collection_rules_key(collection_id),
            lambda: self._store.find_active_collection_rules(collection_id),
        )

    def get_active_property_rules(self) -> list[PropertyRule]:
        return self._get_or_load(PROPERTY_RULES_KEY, self._store.find_active_property_rules)

    def get_property_definitions(self, collection_id: str) -> list[PropertyDef]:
        return self._get_or_load(
            property_defs_key(collection_id),
            lambda: self._store.find_property_definitions(collection_id),
        )

    # ── Invalidierung ───────────────────────────────────────────────

    def invalidate(self, collection_id: str) -> None:
        self._invalidate_key(collection_rules_key(collection_id))
        self._invalidate_key(property_defs_key(collection_id))
        logger.debug("rule_cache_invalidated", collection_id=collection_id)

    def invalidate_property_rules(self) -> None:
        self._invalidate_key(PROPERTY_RULES_KEY)

    def invalidate_all(self) -> None:
        with self._lock:
            self._epoch += 1
            try:
                self._cache.invalidate(None)
            except Exception:
                logger.warning("rule_cache_invalidate_failed", key="*", exc_info=True)
