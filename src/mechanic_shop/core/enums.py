"""Enumerations used across the shop."""

from enum import Enum


class WorkOrderState(str, Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Spot(str, Enum):
    """Service bay a work order occupies."""

    A = "A"
    B = "B"
    C = "C"
    D = "D"


class EmployeeRole(str, Enum):
    MANAGER = "manager"
    LABOR = "labor"


class InvoiceStatus(str, Enum):
    UNPAID = "unpaid"
    PAID = "paid"


class OutboxStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class DispatchMode(str, Enum):
    """How ``save_changes`` hands events to subscribers."""

    INLINE = "inline"    # publish in-process right after commit
    OUTBOX = "outbox"    # persist with the commit, drain later
