from __future__ import annotations

import json
from decimal import Decimal
from typing import Any

from ...services.token_crypto import decrypt_string, encrypt_string
from .errors import DdbValidation


_TOKEN_VERSION = 1


def _json_default(v: Any) -> Any:
    # LastEvaluatedKey values may carry numeric sort keys as Decimal.
    if isinstance(v, Decimal):
        return int(v) if v == v.to_integral_value() else float(v)
    raise TypeError(f"not JSON serializable: {type(v).__name__}")


def encode_next_token(last_evaluated_key: dict[str, Any] | None) -> str | None:
    if not last_evaluated_key:
        return None

    payload = {"v": _TOKEN_VERSION, "lek": last_evaluated_key}
    raw = json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=_json_default)
    return encrypt_string(raw)


def decode_next_token(next_token: str | None) -> dict[str, Any] | None:
    if not next_token:
        return None

    raw = decrypt_string(next_token)
    if not raw:
        raise DdbValidation(message="Invalid nextToken", operation="DecodeNextToken")

    try:
        payload = json.loads(raw)
    except ValueError as e:
        raise DdbValidation(message="Invalid nextToken", operation="DecodeNextToken") from e

    if not isinstance(payload, dict) or payload.get("v") != _TOKEN_VERSION:
        raise DdbValidation(message="Invalid nextToken", operation="DecodeNextToken")

    lek = payload.get("lek")
    if lek is None:
        return None
    if not isinstance(lek, dict):
        raise DdbValidation(message="Invalid nextToken", operation="DecodeNextToken")

    return lek
