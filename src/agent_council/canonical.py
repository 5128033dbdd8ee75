"""RFC 8785 canonical JSON for persisted snapshots and ledger fingerprints."""

from __future__ import annotations

import hashlib
from datetime import date, datetime
from enum import Enum
from typing import Any
from uuid import UUID

import rfc8785
from pydantic import BaseModel

_PASSTHROUGH_TYPES = (bool, int, float, str, type(None))


def _normalize(value: Any) -> Any:
    """Reduce models, enums, timestamps and tuples to JSON primitives.

    Raises:
        TypeError: If value contains a type with no JSON representation.
    """
    if isinstance(value, _PASSTHROUGH_TYPES):
        return value
    if isinstance(value, BaseModel):
        return _normalize(value.model_dump(mode="json"))
    if isinstance(value, dict):
        return {str(_normalize(key)): _normalize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(item) for item in value]
    if isinstance(value, Enum):
        return _normalize(value.value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    raise TypeError(f"Cannot serialize type {type(value).__name__} to canonical JSON")


def to_canonical_json(value: Any) -> str:
    """Serialize a value to byte-for-byte reproducible JSON per RFC 8785.

    Args:
        value: Any JSON-compatible value, including pydantic models and enums.

    Returns:
        The canonical JSON text.

    Raises:
        TypeError: If value contains an unsupported type.
    """
    return rfc8785.dumps(_normalize(value)).decode("utf-8")


def fingerprint(value: Any) -> str:
    """SHA-256 of the canonical JSON form."""
    return hashlib.sha256(to_canonical_json(value).encode("utf-8")).hexdigest()
