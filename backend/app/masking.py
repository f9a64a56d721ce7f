"""Feld-Masking für Antworten (reine Funktionen).

- can_read False -> Key entfernen
- is_masked      -> Wert durch mask_value ersetzen (Standard "****")
- unbekannte Keys bleiben unverändert

Funktioniert für einen Datensatz, eine Liste oder einen Paginierungs-Wrapper
({"items"|"data"|"results"|"records": [...], ...}).
"""
from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Iterable

from app.access_types import PropertyAccessResult
from app.config import DEFAULT_MASK_VALUE

WRAPPER_KEYS = ("items", "data", "results", "records")


def mask_item(item: Mapping[str, Any], properties: Iterable[PropertyAccessResult]) -> dict[str, Any]:
    by_code = {p.code: p for p in properties}
    out: dict[str, Any] = {}
    for key, value in item.items():
        prop = by_code.get(key)
        if prop is None:
            out[key] = value
        elif not prop.can_read:
            continue
        elif prop.is_masked:
            out[key] = prop.mask_value or DEFAULT_MASK_VALUE
        else:
            out[key] = value
    return out


def _wrapper_key(payload: Mapping[str, Any], codes: set[str]) -> str | None:
    for key in WRAPPER_KEYS:
        if key in codes:
            continue
        value = payload.get(key)
        if isinstance(value, list) and all(isinstance(v, Mapping) for v in value):
            return key
    return None


def apply_masking(payload: Any, properties: list[PropertyAccessResult]) -> Any:
    if isinstance(payload, list):
        return [apply_masking(item, properties) for item in payload]
    if not isinstance(payload, Mapping):
        return payload

    codes = {p.code for p in properties}
    key = _wrapper_key(payload, codes)
    if key is not None:
        out = dict(payload)
        out[key] = [mask_item(item, properties) for item in payload[key]]
        return out
    return mask_item(payload, properties)
