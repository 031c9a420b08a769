from __future__ import annotations

from enum import Enum
from typing import Any

import rfc8785
from pydantic import BaseModel

# JSON-primitive types that rfc8785 can serialize directly.
_PASSTHROUGH_TYPES = (bool, int, float, str, type(None))


def _normalize_for_jcs(value: Any) -> bool | int | float | str | None | list[Any] | dict[str, Any]:
    """Recursively convert checkpoint values into JSON-primitive types.

    Sets are emitted as sorted lists so that two equal states always
    serialize to the same bytes.

    Raises:
        TypeError: If value contains a type that cannot be converted to JSON.
    """
    if isinstance(value, Enum):
        return _normalize_for_jcs(value.value)

    if isinstance(value, _PASSTHROUGH_TYPES):
        return value

    if isinstance(value, BaseModel):
        return _normalize_for_jcs(value.model_dump(mode="python", by_alias=True))

    if isinstance(value, dict):
        return {str(k): _normalize_for_jcs(v) for k, v in value.items()}

    if isinstance(value, (set, frozenset)):
        items = [_normalize_for_jcs(item) for item in value]
        return sorted(items, key=lambda item: rfc8785.dumps(item))

    if isinstance(value, (list, tuple)):
        return [_normalize_for_jcs(item) for item in value]

    raise TypeError(
        f"Cannot serialize type {type(value).__name__} to canonical JSON. "
        f"Convert to a JSON-compatible type first."
    )


def to_canonical_json(value: Any) -> str:
    """Serialize a value to deterministic JSON per RFC 8785.

    Args:
        value: Any Python value including Pydantic models, enums and sets.

    Returns:
        A UTF-8 string containing the canonicalized JSON representation.

    Raises:
        TypeError: If value contains an unsupported type.
        rfc8785.CanonicalizationError: If rfc8785 rejects the normalized value.
    """
    normalized = _normalize_for_jcs(value)
    return rfc8785.dumps(normalized).decode("utf-8")
