"""SQLAlchemy ORM models for the mechanic shop database.

The mapped classes are the domain entities themselves: the session's
change tracker is what ``PersistenceContext.save_changes`` scans for
pending domain events.  All tables use UUID strings for primary keys
and UTC timestamps.

Relationships:
    Customer 1--* Vehicle
    RepairTask 1--* Part
    Vehicle 1--* WorkOrder *--* RepairTask  (work_order_repair_tasks)
    Employee 1--* WorkOrder                 (labor_id)
    WorkOrder 1--1 Invoice 1--* InvoiceLineItem
"""

from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Table,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)

from mechanic_shop.core.enums import (
    EmployeeRole,
    InvoiceStatus,
    OutboxStatus,
    Spot,
    WorkOrderState,
)
from mechanic_shop.core.errors import (
    DomainValidationError,
    InvalidStateTransitionError,
    InvoiceAlreadyPaidError,
)
from mechanic_shop.core.ids import ensure_utc, new_id, utc_now
from mechanic_shop.domain.entity import Entity
from mechanic_shop.domain.events import (
    CustomerRegistered,
    InvoiceIssued,
    InvoicePaid,
    WorkOrderCreated,
    WorkOrderRescheduled,
    WorkOrderStateChanged,
)

CENTS = Decimal("0.01")

_JSON = JSON().with_variant(JSONB(), "postgresql")


def _money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    """Shared declarative base for all ORM models."""

    pass


work_order_repair_tasks = Table(
    "work_order_repair_tasks",
    Base.metadata,
    Column("work_order_id", ForeignKey("work_orders.id", ondelete="CASCADE"), primary_key=True),
    Column("repair_task_id", ForeignKey("repair_tasks.id"), primary_key=True),
)


# ---------------------------------------------------------------------------
# Customer / Vehicle
# ---------------------------------------------------------------------------

class Customer(Base, Entity):
    """A person or company the shop services vehicles for."""

    __tablename__ = "customers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    phone: Mapped[str] = mapped_column(String(32), nullable=False)
    email: Mapped[str] = mapped_column(String(256), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(),
    )

    vehicles: Mapped[list[Vehicle]] = relationship(
        back_populates="customer",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @classmethod
    def register(
        cls, *, name: str, phone: str, email: str,
    ) -> tuple[Customer, CustomerRegistered]:
        """Create a customer and raise ``CustomerRegistered``."""
        name = name.strip()
        email = email.strip().lower()
        if not name:
            raise DomainValidationError("Customer name is required")
        if "@" not in email:
            raise DomainValidationError(f"Invalid email address {email!r}")

        customer = cls(id=new_id(), name=name, phone=phone.strip(), email=email)
        event = customer.raise_event(CustomerRegistered(
            aggregate_id=customer.id,
            customer_id=customer.id,
            name=name,
            email=email,
        ))
        return customer, event

    def __repr__(self) -> str:
        return f"<Customer(id={self.id!r}, email={self.email!r})>"


class Vehicle(Base, Entity):
    """A vehicle owned by a customer."""

    __tablename__ = "vehicles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    customer_id: Mapped[str] = mapped_column(
        ForeignKey("customers.id", ondelete="CASCADE"), nullable=False,
    )
    make: Mapped[str] = mapped_column(String(64), nullable=False)
    model: Mapped[str] = mapped_column(String(64), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    license_plate: Mapped[str] = mapped_column(String(16), unique=True, nullable=False)

    customer: Mapped[Customer | None] = relationship(back_populates="vehicles")

    __table_args__ = (
        Index("ix_vehicles_customer_id", "customer_id"),
    )

    def __repr__(self) -> str:
        return f"<Vehicle(id={self.id!r}, plate={self.license_plate!r})>"


# ---------------------------------------------------------------------------
# RepairTask / Part
# ---------------------------------------------------------------------------

class RepairTask(Base, Entity):
    """A catalogue repair with its labor cost and required parts."""

    __tablename__ = "repair_tasks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    labor_cost: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    estimated_duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)

    parts: Mapped[list[Part]] = relationship(
        back_populates="repair_task",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def total_cost(self) -> Decimal:
        """Labor plus every part at its quantity."""
        parts = sum((p.cost * p.quantity for p in self.parts), Decimal("0"))
        return _money(self.labor_cost + parts)

    def __repr__(self) -> str:
        return f"<RepairTask(id={self.id!r}, name={self.name!r})>"


class Part(Base, Entity):
    """A part consumed by a repair task."""

    __tablename__ = "parts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    repair_task_id: Mapped[str | None] = mapped_column(
        ForeignKey("repair_tasks.id", ondelete="CASCADE"), nullable=True,
    )
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    cost: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    repair_task: Mapped[RepairTask | None] = relationship(back_populates="parts")

    def __repr__(self) -> str:
        return f"<Part(id={self.id!r}, name={self.name!r}, qty={self.quantity})>"


# ---------------------------------------------------------------------------
# Employee
# ---------------------------------------------------------------------------

class Employee(Base, Entity):
    """Shop staff; labor employees are assigned to work orders."""

    __tablename__ = "employees"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    first_name: Mapped[str] = mapped_column(String(64), nullable=False)
    last_name: Mapped[str] = mapped_column(String(64), nullable=False)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default=EmployeeRole.LABOR.value)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def __repr__(self) -> str:
        return f"<Employee(id={self.id!r}, role={self.role!r})>"


# ---------------------------------------------------------------------------
# WorkOrder
# ---------------------------------------------------------------------------

_ALLOWED_TRANSITIONS: dict[WorkOrderState, frozenset[WorkOrderState]] = {
    WorkOrderState.SCHEDULED: frozenset({WorkOrderState.IN_PROGRESS, WorkOrderState.CANCELLED}),
    WorkOrderState.IN_PROGRESS: frozenset({WorkOrderState.COMPLETED}),
    WorkOrderState.COMPLETED: frozenset(),
    WorkOrderState.CANCELLED: frozenset(),
}


class WorkOrder(Base, Entity):
    """A scheduled job for one vehicle in one spot.

    Every UPDATE bumps ``version``; a stale in-memory copy fails its
    commit with ``sqlalchemy.orm.exc.StaleDataError``.
    """

    __tablename__ = "work_orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    vehicle_id: Mapped[str] = mapped_column(ForeignKey("vehicles.id"), nullable=False)
    labor_id: Mapped[str | None] = mapped_column(ForeignKey("employees.id"), nullable=True)
    start_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    spot: Mapped[str] = mapped_column(String(4), nullable=False)
    state: Mapped[str] = mapped_column(
        String(16), nullable=False, default=WorkOrderState.SCHEDULED.value,
    )
    discount_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0"),
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, server_default=func.now(),
    )

    vehicle: Mapped[Vehicle | None] = relationship(lazy="selectin")
    labor: Mapped[Employee | None] = relationship(lazy="selectin")
    repair_tasks: Mapped[list[RepairTask]] = relationship(
        secondary=work_order_repair_tasks,
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_work_orders_vehicle_id", "vehicle_id"),
        Index("ix_work_orders_state", "state"),
        Index("ix_work_orders_start_at", "start_at"),
    )

    @classmethod
    def schedule(
        cls,
        *,
        vehicle_id: str,
        start_at: datetime,
        end_at: datetime,
        spot: Spot | str,
        repair_tasks: list[RepairTask],
        labor_id: str | None = None,
        discount_amount: Decimal = Decimal("0"),
    ) -> tuple[WorkOrder, WorkOrderCreated]:
        """Create a scheduled work order and raise ``WorkOrderCreated``."""
        spot = Spot(spot)
        _validate_window(start_at, end_at)
        if not repair_tasks:
            raise DomainValidationError("A work order needs at least one repair task")
        if discount_amount < 0:
            raise DomainValidationError("Discount cannot be negative")

        work_order = cls(
            id=new_id(),
            vehicle_id=vehicle_id,
            labor_id=labor_id,
            start_at=start_at,
            end_at=end_at,
            spot=spot.value,
            state=WorkOrderState.SCHEDULED.value,
            discount_amount=_money(discount_amount),
            repair_tasks=list(repair_tasks),
        )
        event = work_order.raise_event(WorkOrderCreated(
            aggregate_id=work_order.id,
            work_order_id=work_order.id,
            vehicle_id=vehicle_id,
            labor_id=labor_id,
            start_at=start_at,
            end_at=end_at,
            spot=spot.value,
        ))
        return work_order, event

    @property
    def current_state(self) -> WorkOrderState:
        return WorkOrderState(self.state)

    def transition_to(self, new_state: WorkOrderState | str) -> WorkOrderStateChanged:
        """Move along the lifecycle and raise ``WorkOrderStateChanged``.

        Raises:
            InvalidStateTransitionError: If the move is not allowed.
        """
        new_state = WorkOrderState(new_state)
        current = self.current_state
        if new_state not in _ALLOWED_TRANSITIONS[current]:
            raise InvalidStateTransitionError(current.value, new_state.value)

        self.state = new_state.value
        return self.raise_event(WorkOrderStateChanged(
            aggregate_id=self.id,
            work_order_id=self.id,
            previous_state=current.value,
            new_state=new_state.value,
        ))

    def reschedule(
        self,
        *,
        start_at: datetime,
        end_at: datetime,
        spot: Spot | str | None = None,
    ) -> WorkOrderRescheduled:
        """Move a scheduled work order to a new window (and optionally spot)."""
        if self.current_state is not WorkOrderState.SCHEDULED:
            raise DomainValidationError(
                f"Only scheduled work orders can be rescheduled (state={self.state})"
            )
        _validate_window(start_at, end_at)

        self.start_at = start_at
        self.end_at = end_at
        if spot is not None:
            self.spot = Spot(spot).value
        return self.raise_event(WorkOrderRescheduled(
            aggregate_id=self.id,
            work_order_id=self.id,
            start_at=start_at,
            end_at=end_at,
            spot=self.spot,
        ))

    @property
    def subtotal(self) -> Decimal:
        return _money(sum((t.total_cost for t in self.repair_tasks), Decimal("0")))

    def __repr__(self) -> str:
        return (
            f"<WorkOrder(id={self.id!r}, vehicle_id={self.vehicle_id!r}, "
            f"state={self.state!r}, spot={self.spot!r})>"
        )


def _validate_window(start_at: datetime, end_at: datetime) -> None:
    if ensure_utc(end_at) <= ensure_utc(start_at):
        raise DomainValidationError("Work order must end after it starts")


# ---------------------------------------------------------------------------
# Invoice / InvoiceLineItem
# ---------------------------------------------------------------------------

class Invoice(Base, Entity):
    """Bill issued for a completed work order."""

    __tablename__ = "invoices"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    work_order_id: Mapped[str] = mapped_column(
        ForeignKey("work_orders.id"), unique=True, nullable=False,
    )
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=InvoiceStatus.UNPAID.value,
    )
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    line_items: Mapped[list[InvoiceLineItem]] = relationship(
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceLineItem.line_number",
        lazy="selectin",
    )

    @classmethod
    def issue_for(
        cls,
        work_order: WorkOrder,
        *,
        tax_rate: Decimal = Decimal("0"),
        issued_at: datetime | None = None,
    ) -> tuple[Invoice, InvoiceIssued]:
        """Bill a completed work order, one line item per repair task."""
        if work_order.current_state is not WorkOrderState.COMPLETED:
            raise DomainValidationError(
                f"Work order {work_order.id} is {work_order.state}, not completed"
            )
        if tax_rate < 0:
            raise DomainValidationError("Tax rate cannot be negative")

        items = [
            InvoiceLineItem(
                line_number=i,
                description=task.name,
                quantity=1,
                unit_price=task.total_cost,
            )
            for i, task in enumerate(work_order.repair_tasks, start=1)
        ]
        subtotal = _money(sum((item.line_total for item in items), Decimal("0")))
        discount = min(_money(work_order.discount_amount), subtotal)
        tax = _money((subtotal - discount) * tax_rate)

        invoice = cls(
            id=new_id(),
            work_order_id=work_order.id,
            issued_at=issued_at or utc_now(),
            subtotal=subtotal,
            discount_amount=discount,
            tax_amount=tax,
            total=subtotal - discount + tax,
            status=InvoiceStatus.UNPAID.value,
            line_items=items,
        )
        event = invoice.raise_event(InvoiceIssued(
            aggregate_id=invoice.id,
            invoice_id=invoice.id,
            work_order_id=work_order.id,
            total=invoice.total,
        ))
        return invoice, event

    def mark_paid(self, at: datetime | None = None) -> InvoicePaid:
        """Settle the invoice and raise ``InvoicePaid``."""
        if self.status == InvoiceStatus.PAID.value:
            raise InvoiceAlreadyPaidError(f"Invoice {self.id} is already paid")
        self.status = InvoiceStatus.PAID.value
        self.paid_at = at or utc_now()
        return self.raise_event(InvoicePaid(
            aggregate_id=self.id,
            invoice_id=self.id,
            paid_at=self.paid_at,
        ))

    def __repr__(self) -> str:
        return f"<Invoice(id={self.id!r}, total={self.total}, status={self.status!r})>"


class InvoiceLineItem(Base):
    """One billed line of an invoice."""

    __tablename__ = "invoice_line_items"

    invoice_id: Mapped[str] = mapped_column(
        ForeignKey("invoices.id", ondelete="CASCADE"), primary_key=True,
    )
    line_number: Mapped[int] = mapped_column(Integer, primary_key=True)
    description: Mapped[str] = mapped_column(String(256), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    invoice: Mapped[Invoice | None] = relationship(back_populates="line_items")

    @property
    def line_total(self) -> Decimal:
        return _money(self.unit_price * self.quantity)


# ---------------------------------------------------------------------------
# RefreshToken
# ---------------------------------------------------------------------------

class RefreshToken(Base, Entity):
    """Opaque refresh token issued to an authenticated user."""

    __tablename__ = "refresh_tokens"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    token: Mapped[str] = mapped_column(String(256), unique=True, nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_refresh_tokens_user_id", "user_id"),
    )

    def is_expired(self, now: datetime | None = None) -> bool:
        return ensure_utc(self.expires_at) <= ensure_utc(now or utc_now())


# ---------------------------------------------------------------------------
# OutboxMessage
# ---------------------------------------------------------------------------

class OutboxMessage(Base):
    """A domain event persisted in the same transaction as its mutation.

    ``id`` is the event's ``event_id``.  Rows are drained oldest first by
    ``(enqueued_at, position)``; ``position`` is the event's index within
    the save that wrote it.
    """

    __tablename__ = "outbox_messages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    aggregate_id: Mapped[str] = mapped_column(String(36), nullable=False, default="")
    payload: Mapped[dict] = mapped_column(_JSON, nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    enqueued_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=OutboxStatus.PENDING.value,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_outbox_messages_status_order", "status", "enqueued_at", "position"),
    )

    def __repr__(self) -> str:
        return (
            f"<OutboxMessage(id={self.id!r}, event_type={self.event_type!r}, "
            f"status={self.status!r}, attempts={self.attempts})>"
        )
