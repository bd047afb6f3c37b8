"""
Field codec: in-memory payloads <-> relational rows.

In memory a document payload is keyed by camelCase field name and holds
native Python values (datetime, bool, nested dicts). Rows are keyed by
snake_case column and hold SQLite-friendly values:

    DATETIME                  -> INTEGER (Unix ms, UTC)
    BOOLEAN                   -> INTEGER (0/1)
    JSON, STRING_LIST,
    MULTILINGUAL*, RICH_TEXT  -> TEXT (JSON)
    everything else           -> stored as-is

Invariants:
    - from_row(to_row(payload)) == payload for every valid payload,
      with datetimes truncated to millisecond precision
    - None is stored as NULL for every kind
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any

from .types import DocumentType, FieldKind

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_JSON_KINDS = frozenset(
    {
        FieldKind.JSON,
        FieldKind.STRING_LIST,
        FieldKind.MULTILINGUAL,
        FieldKind.MULTILINGUAL_LIST,
        FieldKind.RICH_TEXT,
    }
)


def utcnow() -> datetime:
    """Current UTC time at the precision rows can hold."""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


def to_millis(value: datetime) -> int:
    """Convert a datetime to Unix milliseconds (naive values are taken as UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (value - EPOCH) // timedelta(milliseconds=1)


def from_millis(value: int) -> datetime:
    """Convert Unix milliseconds to an aware UTC datetime."""
    return EPOCH + timedelta(milliseconds=value)


def encode_value(kind: FieldKind, value: Any) -> Any:
    if value is None:
        return None
    if kind == FieldKind.DATETIME:
        return to_millis(value)
    if kind == FieldKind.BOOLEAN:
        return 1 if value else 0
    if kind in _JSON_KINDS:
        return json.dumps(value, ensure_ascii=False)
    return value


def decode_value(kind: FieldKind, value: Any) -> Any:
    if value is None:
        return None
    if kind == FieldKind.DATETIME:
        return from_millis(value)
    if kind == FieldKind.BOOLEAN:
        return bool(value)
    if kind in _JSON_KINDS:
        return json.loads(value)
    return value


def to_row(doc_type: DocumentType, payload: dict[str, Any]) -> dict[str, Any]:
    """Encode a payload into column values for every field of doc_type."""
    return {f.column: encode_value(f.kind, payload.get(f.name)) for f in doc_type.fields}


def from_row(doc_type: DocumentType, row: Any) -> dict[str, Any]:
    """Decode a row (mapping or sqlite3.Row) into a camelCase payload.

    Fields stored as NULL are omitted from the payload.
    """
    payload: dict[str, Any] = {}
    for f in doc_type.fields:
        value = decode_value(f.kind, row[f.column])
        if value is not None:
            payload[f.name] = value
    return payload


def sql_type(kind: FieldKind) -> str:
    """SQLite column affinity for a field kind."""
    if kind in (FieldKind.INTEGER, FieldKind.BOOLEAN, FieldKind.DATETIME):
        return "INTEGER"
    if kind == FieldKind.NUMBER:
        return "REAL"
    return "TEXT"
