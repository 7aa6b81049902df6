"""JSON-safe encoding of domain events for the outbox table.

``event_to_payload`` flattens a frozen dataclass into plain JSON types
(``Decimal`` -> str, ``datetime`` -> ISO-8601).  ``event_from_payload``
restores the original variant using its dataclass field types.
"""

from __future__ import annotations

import dataclasses
import typing
from datetime import datetime
from decimal import Decimal
from typing import Any

from mechanic_shop.core.errors import OutboxError

from .events import EVENT_REGISTRY, DomainEvent


def _encode(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, tuple):
        return [_encode(v) for v in value]
    return value


def event_to_payload(event: DomainEvent) -> dict[str, Any]:
    """Serialize *event* to a JSON-safe dict (tag stored separately)."""
    return {
        f.name: _encode(getattr(event, f.name))
        for f in dataclasses.fields(event)
    }


def _restore(field_type: Any, value: Any) -> Any:
    if value is None:
        return None
    args = typing.get_args(field_type)
    candidates = args if args else (field_type,)
    if Decimal in candidates:
        return Decimal(str(value))
    if datetime in candidates and isinstance(value, str):
        return datetime.fromisoformat(value)
    if isinstance(value, list):
        return tuple(value)
    return value


def event_from_payload(
    event_type: str,
    payload: dict[str, Any],
    registry: dict[str, type[DomainEvent]] | None = None,
) -> DomainEvent:
    """Rebuild a ``DomainEvent`` variant from its tag and payload.

    Raises:
        OutboxError: If *event_type* is not a known variant.
    """
    reg = registry if registry is not None else EVENT_REGISTRY
    cls = reg.get(event_type)
    if cls is None:
        raise OutboxError(f"Unknown event type {event_type!r}")

    hints = typing.get_type_hints(cls)
    restored: dict[str, Any] = {}
    for f in dataclasses.fields(cls):
        if f.name in payload:
            restored[f.name] = _restore(hints.get(f.name), payload[f.name])
    return cls(**restored)
