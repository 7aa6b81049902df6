"""Canonical domain events for the mechanic shop.

Design invariants
-----------------
1.  Every event is **immutable** (``frozen=True``).
2.  ``event_id`` is a UUID4 generated at creation time; it serves as the
    idempotency key of the outbox table.
3.  ``aggregate_id`` is the id of the entity whose queue the event was
    raised on.
4.  Subscribers route on the concrete class.  ``ALL_DOMAIN_EVENTS`` is
    the closed set of variants; ``EVENT_REGISTRY`` maps each variant's
    tag (its class name) back to the class for outbox decoding.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from mechanic_shop.core.ids import new_id as _uuid
from mechanic_shop.core.ids import utc_now as _now

# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DomainEvent:
    """Immutable base for every domain event.

    Shared fields
    ~~~~~~~~~~~~~
    event_id        Unique identity (UUID4).  Idempotency key.
    occurred_at     UTC creation time.
    aggregate_id    Id of the entity that raised the event.
    """

    event_id: str = field(default_factory=_uuid)
    occurred_at: datetime = field(default_factory=_now)
    aggregate_id: str = ""

    @property
    def event_type(self) -> str:
        return type(self).__name__


# =========================================================================
# Customers
# =========================================================================

@dataclass(frozen=True)
class CustomerRegistered(DomainEvent):
    """A new customer was added to the shop's books."""

    customer_id: str = ""
    name: str = ""
    email: str = ""


# =========================================================================
# Work orders
# =========================================================================

@dataclass(frozen=True)
class WorkOrderCreated(DomainEvent):
    """A work order was scheduled into a spot."""

    work_order_id: str = ""
    vehicle_id: str = ""
    labor_id: str | None = None
    start_at: datetime | None = None
    end_at: datetime | None = None
    spot: str = ""


@dataclass(frozen=True)
class WorkOrderStateChanged(DomainEvent):
    """A work order moved through its lifecycle."""

    work_order_id: str = ""
    previous_state: str = ""
    new_state: str = ""


@dataclass(frozen=True)
class WorkOrderRescheduled(DomainEvent):
    """A scheduled work order changed its time window or spot."""

    work_order_id: str = ""
    start_at: datetime | None = None
    end_at: datetime | None = None
    spot: str = ""


# =========================================================================
# Billing
# =========================================================================

@dataclass(frozen=True)
class InvoiceIssued(DomainEvent):
    """An invoice was issued for a completed work order."""

    invoice_id: str = ""
    work_order_id: str = ""
    total: Decimal = Decimal("0")


@dataclass(frozen=True)
class InvoicePaid(DomainEvent):
    """An invoice was settled."""

    invoice_id: str = ""
    paid_at: datetime | None = None


# =========================================================================
# Registry
# =========================================================================

#: All domain event types in a deterministic order.
ALL_DOMAIN_EVENTS: tuple[type[DomainEvent], ...] = (
    CustomerRegistered,
    WorkOrderCreated,
    WorkOrderStateChanged,
    WorkOrderRescheduled,
    InvoiceIssued,
    InvoicePaid,
)

#: Variant tag -> class, used to decode persisted outbox payloads.
EVENT_REGISTRY: dict[str, type[DomainEvent]] = {
    cls.__name__: cls for cls in ALL_DOMAIN_EVENTS
}
