"""Canonical ID and timestamp factories for the shop.

All modules import from here instead of defining local _uuid()/_now() copies.

ID Categories
-------------
1. Entity IDs: UUID v4 strings (customer, vehicle, work order, ...).
2. Event IDs: UUID v4 strings; ``event_id`` doubles as the outbox key.
3. Save IDs: short UUID v4 prefixes correlating log lines of one save.

Timestamp Rule
--------------
All timestamps are ``datetime`` with ``tzinfo=timezone.utc``, never naive.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone


def new_id() -> str:
    """Generate a new UUID v4 string.  Use for all entity and event IDs."""
    return str(uuid.uuid4())


def new_save_id() -> str:
    """Short correlation id for one ``save_changes`` call."""
    return uuid.uuid4().hex[:12]


def utc_now() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on reload)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
