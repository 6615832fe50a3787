from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from ..db.dynamodb.table import plain

_KEY_ATTRS = ("pk", "sk", "gsi1pk", "gsi1sk", "gsi2pk", "gsi2sk", "entityType")


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def new_id() -> str:
    return str(uuid.uuid4())


def type_pk(t: str) -> str:
    return f"TYPE#{t}"


def normalize_item(item: dict[str, Any] | None) -> dict[str, Any] | None:
    """Strip table keys and convert Decimals so the item can be returned as JSON."""
    if not item:
        return None
    out = plain(dict(item))
    for k in _KEY_ATTRS:
        out.pop(k, None)
    return out


def set_clause(fields: dict[str, Any], *, prefix: str = "f") -> tuple[str, dict[str, str], dict[str, Any]]:
    """
    Build a ``SET`` expression for plain attribute assignments.

    None values are removed instead of stored so absent/null stay equivalent
    for ``attribute_not_exists`` conditions.
    """
    sets: list[str] = []
    removes: list[str] = []
    names: dict[str, str] = {}
    values: dict[str, Any] = {}
    for i, (k, v) in enumerate(fields.items()):
        n = f"#{prefix}{i}"
        names[n] = k
        if v is None:
            removes.append(n)
            continue
        vn = f":{prefix}{i}"
        sets.append(f"{n} = {vn}")
        values[vn] = v
    parts: list[str] = []
    if sets:
        parts.append("SET " + ", ".join(sets))
    if removes:
        parts.append("REMOVE " + ", ".join(removes))
    return " ".join(parts), names, values
