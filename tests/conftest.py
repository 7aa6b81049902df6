"""Shared fixtures for the mechanic-shop test suite."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
import pytest_asyncio

from mechanic_shop.core.enums import EmployeeRole
from mechanic_shop.domain.events import ALL_DOMAIN_EVENTS, DomainEvent
from mechanic_shop.infrastructure.event_bus import InMemoryEventBus
from mechanic_shop.storage.connection import (
    create_all,
    create_engine,
    create_session_factory,
)
from mechanic_shop.storage.context import PersistenceContext
from mechanic_shop.storage.models import (
    Customer,
    Employee,
    Part,
    RepairTask,
    Vehicle,
)

MEMORY_URL = "sqlite+aiosqlite://"

BASE_TIME = datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def engine():
    """Fresh in-memory SQLite database with the full schema."""
    eng = create_engine(MEMORY_URL)
    await create_all(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

class EventRecorder:
    """Handler that remembers every event it was offered."""

    def __init__(self) -> None:
        self.events: list[DomainEvent] = []

    async def __call__(self, event: DomainEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: type[DomainEvent]) -> list[DomainEvent]:
        return [e for e in self.events if type(e) is event_type]


@pytest.fixture
def bus() -> InMemoryEventBus:
    return InMemoryEventBus()


@pytest.fixture
def recorder(bus: InMemoryEventBus) -> EventRecorder:
    """Recorder subscribed to every domain event variant on ``bus``."""
    rec = EventRecorder()
    for event_type in ALL_DOMAIN_EVENTS:
        bus.subscribe(event_type, rec)
    return rec


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------

@dataclass
class Shop:
    customer_id: str
    vehicle_id: str
    brake_task_id: str
    oil_task_id: str
    labor_id: str


def make_brake_task() -> RepairTask:
    return RepairTask(
        name="Brake pad replacement",
        labor_cost=Decimal("100.00"),
        estimated_duration_minutes=90,
        parts=[Part(name="Brake pad", cost=Decimal("25.50"), quantity=2)],
    )


def make_oil_task() -> RepairTask:
    return RepairTask(
        name="Oil change",
        labor_cost=Decimal("40.00"),
        estimated_duration_minutes=30,
        parts=[],
    )


@pytest_asyncio.fixture
async def shop(session_factory) -> Shop:
    """Customer, vehicle, two repair tasks and a mechanic, already saved."""
    async with PersistenceContext.open(session_factory) as ctx:
        customer, _ = Customer.register(
            name="Ana Ortiz", phone="555-0100", email="ana@example.com",
        )
        vehicle = Vehicle(
            make="Toyota", model="Corolla", year=2018, license_plate="ABC-123",
        )
        customer.vehicles.append(vehicle)
        brake = make_brake_task()
        oil = make_oil_task()
        mechanic = Employee(
            first_name="Sam", last_name="Reyes", role=EmployeeRole.LABOR.value,
        )
        ctx.customers.add(customer)
        ctx.repair_tasks.add_all([brake, oil])
        ctx.employees.add(mechanic)
        await ctx.save_changes()
        return Shop(
            customer_id=customer.id,
            vehicle_id=vehicle.id,
            brake_task_id=brake.id,
            oil_task_id=oil.id,
            labor_id=mechanic.id,
        )


def window(hours: int = 0, length: int = 2) -> tuple[datetime, datetime]:
    start = BASE_TIME + timedelta(hours=hours)
    return start, start + timedelta(hours=length)
