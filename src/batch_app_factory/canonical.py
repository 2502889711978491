from __future__ import annotations

import hashlib
from datetime import date, datetime
from enum import Enum
from typing import Any

import rfc8785
from pydantic import BaseModel

# JSON-primitive types that rfc8785 can serialize directly.
_PASSTHROUGH_TYPES = (bool, int, float, str, type(None))


def _normalize_for_jcs(value: Any) -> bool | int | float | str | None | list[Any] | dict[str, Any]:
    """Recursively convert Python/Pydantic values into JSON-primitive types.

    Models are dumped by alias so persisted documents and journal lines share
    the same camelCase keys.

    Raises:
        TypeError: If value contains a type that has no JSON representation.
    """
    if isinstance(value, _PASSTHROUGH_TYPES):
        return value

    if isinstance(value, BaseModel):
        return _normalize_for_jcs(value.model_dump(mode="json", by_alias=True))

    if isinstance(value, dict):
        return {str(k): _normalize_for_jcs(v) for k, v in value.items()}

    if isinstance(value, (list, tuple)):
        return [_normalize_for_jcs(item) for item in value]

    if isinstance(value, Enum):
        return _normalize_for_jcs(value.value)

    if isinstance(value, (datetime, date)):
        return value.isoformat()

    raise TypeError(
        f"Cannot serialize type {type(value).__name__} to canonical JSON. "
        f"Convert to a JSON-compatible type first."
    )


def to_canonical_json(value: Any) -> str:
    """Serialize a value to deterministic JSON per RFC 8785.

    Args:
        value: Any Python value including Pydantic models, enums and datetimes.

    Returns:
        The canonicalized JSON text.

    Raises:
        TypeError: If value contains an unsupported type.
        rfc8785.CanonicalizationError: If rfc8785 rejects the normalized value.
    """
    return rfc8785.dumps(_normalize_for_jcs(value)).decode("utf-8")


def canonical_digest(value: Any, *, length: int = 64) -> str:
    """Return the hex SHA-256 of the canonical JSON form, truncated to ``length``."""
    digest = hashlib.sha256(to_canonical_json(value).encode("utf-8")).hexdigest()
    return digest[:length]
