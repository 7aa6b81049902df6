"""Tests for the in-memory event bus (``infrastructure/event_bus.py``).

Covers:
- publish/subscribe type-based routing.
- Error propagation (default) and dead-letter isolation.
- History and observability helpers.
- Multiple subscribers, unsubscribe, protocol conformance.
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from mechanic_shop.domain.events import (
    CustomerRegistered,
    DomainEvent,
    InvoiceIssued,
)
from mechanic_shop.infrastructure.event_bus import (
    IEventBus,
    IEventPublisher,
    InMemoryEventBus,
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def isolated_bus() -> InMemoryEventBus:
    return InMemoryEventBus(isolate_errors=True)


def _make_customer(**overrides) -> CustomerRegistered:
    defaults = dict(
        customer_id="c1",
        name="Ana Ortiz",
        email="ana@example.com",
    )
    defaults.update(overrides)
    return CustomerRegistered(**defaults)


def _make_invoice(**overrides) -> InvoiceIssued:
    defaults = dict(
        invoice_id="i1",
        work_order_id="w1",
        total=Decimal("198.00"),
    )
    defaults.update(overrides)
    return InvoiceIssued(**defaults)


# ---------------------------------------------------------------------------
# Publish / Subscribe
# ---------------------------------------------------------------------------

class TestPublishSubscribe:
    @pytest.mark.asyncio
    async def test_handler_receives_event(self, bus: InMemoryEventBus):
        received: list[DomainEvent] = []

        async def handler(event: DomainEvent) -> None:
            received.append(event)

        bus.subscribe(CustomerRegistered, handler)
        event = _make_customer()
        await bus.publish(event)

        assert len(received) == 1
        assert received[0] is event

    @pytest.mark.asyncio
    async def test_no_crosstalk(self, bus: InMemoryEventBus):
        """Subscribing to CustomerRegistered doesn't receive InvoiceIssued."""
        received: list[DomainEvent] = []

        async def handler(event: DomainEvent) -> None:
            received.append(event)

        bus.subscribe(CustomerRegistered, handler)
        await bus.publish(_make_invoice())

        assert len(received) == 0

    @pytest.mark.asyncio
    async def test_handlers_run_in_subscription_order(self, bus: InMemoryEventBus):
        calls: list[str] = []

        async def handler_a(event: DomainEvent) -> None:
            calls.append("a")

        async def handler_b(event: DomainEvent) -> None:
            calls.append("b")

        bus.subscribe(CustomerRegistered, handler_a)
        bus.subscribe(CustomerRegistered, handler_b)
        await bus.publish(_make_customer())

        assert calls == ["a", "b"]
        assert bus.handler_count(CustomerRegistered) == 2

    @pytest.mark.asyncio
    async def test_unsubscribe(self, bus: InMemoryEventBus):
        received: list[DomainEvent] = []

        async def handler(event: DomainEvent) -> None:
            received.append(event)

        bus.subscribe(CustomerRegistered, handler)
        bus.unsubscribe(CustomerRegistered, handler)
        bus.unsubscribe(InvoiceIssued, handler)  # unknown: ignored
        await bus.publish(_make_customer())

        assert received == []

    @pytest.mark.asyncio
    async def test_publish_without_subscribers(self, bus: InMemoryEventBus):
        """Publishing to an event with no subscribers is a no-op."""
        await bus.publish(_make_customer())  # should not raise
        assert len(bus.get_history()) == 1

    def test_satisfies_protocols(self, bus: InMemoryEventBus):
        assert isinstance(bus, IEventPublisher)
        assert isinstance(bus, IEventBus)


# ---------------------------------------------------------------------------
# Error Handling
# ---------------------------------------------------------------------------

class TestErrorPropagation:
    @pytest.mark.asyncio
    async def test_handler_error_reaches_publisher(self, bus: InMemoryEventBus):
        after: list[DomainEvent] = []

        async def bad_handler(event: DomainEvent) -> None:
            raise ValueError("boom")

        async def good_handler(event: DomainEvent) -> None:
            after.append(event)

        bus.subscribe(CustomerRegistered, bad_handler)
        bus.subscribe(CustomerRegistered, good_handler)

        with pytest.raises(ValueError, match="boom"):
            await bus.publish(_make_customer())

        assert after == []
        assert bus.dead_letters == []
        assert bus.get_error_counts() == {"CustomerRegistered": 1}


class TestErrorIsolation:
    @pytest.mark.asyncio
    async def test_handler_error_produces_dead_letter(self, isolated_bus: InMemoryEventBus):
        async def bad_handler(event: DomainEvent) -> None:
            raise ValueError("boom")

        isolated_bus.subscribe(CustomerRegistered, bad_handler)
        await isolated_bus.publish(_make_customer())

        assert len(isolated_bus.dead_letters) == 1
        dead_event, dead_error = isolated_bus.dead_letters[0]
        assert isinstance(dead_event, CustomerRegistered)
        assert "boom" in dead_error

    @pytest.mark.asyncio
    async def test_error_count_incremented(self, isolated_bus: InMemoryEventBus):
        async def bad_handler(event: DomainEvent) -> None:
            raise RuntimeError("fail")

        isolated_bus.subscribe(CustomerRegistered, bad_handler)
        await isolated_bus.publish(_make_customer())
        await isolated_bus.publish(_make_customer())

        counts = isolated_bus.get_error_counts()
        assert counts["CustomerRegistered"] == 2

    @pytest.mark.asyncio
    async def test_one_bad_handler_doesnt_block_others(self, isolated_bus: InMemoryEventBus):
        results: list[DomainEvent] = []

        async def bad_handler(event: DomainEvent) -> None:
            raise RuntimeError("fail")

        async def good_handler(event: DomainEvent) -> None:
            results.append(event)

        isolated_bus.subscribe(CustomerRegistered, bad_handler)
        isolated_bus.subscribe(CustomerRegistered, good_handler)
        await isolated_bus.publish(_make_customer())

        # Good handler still runs
        assert len(results) == 1
        # Bad handler recorded in dead letters
        assert len(isolated_bus.dead_letters) == 1

    @pytest.mark.asyncio
    async def test_clear_dead_letters(self, isolated_bus: InMemoryEventBus):
        async def bad_handler(event: DomainEvent) -> None:
            raise RuntimeError("fail")

        isolated_bus.subscribe(CustomerRegistered, bad_handler)
        await isolated_bus.publish(_make_customer())

        drained = isolated_bus.clear_dead_letters()
        assert len(drained) == 1
        assert len(isolated_bus.dead_letters) == 0


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------

class TestHistory:
    @pytest.mark.asyncio
    async def test_history_records_all(self, bus: InMemoryEventBus):
        await bus.publish(_make_customer())
        await bus.publish(_make_invoice())
        assert len(bus.get_history()) == 2

    @pytest.mark.asyncio
    async def test_history_filter_by_type(self, bus: InMemoryEventBus):
        await bus.publish(_make_customer())
        await bus.publish(_make_invoice())
        assert len(bus.get_history(CustomerRegistered)) == 1
        assert len(bus.get_history(InvoiceIssued)) == 1

    @pytest.mark.asyncio
    async def test_clear_history(self, bus: InMemoryEventBus):
        await bus.publish(_make_customer())
        bus.clear_history()
        assert len(bus.get_history()) == 0

    @pytest.mark.asyncio
    async def test_messages_processed_count(self, bus: InMemoryEventBus):
        async def handler(event: DomainEvent) -> None:
            pass

        bus.subscribe(CustomerRegistered, handler)
        await bus.publish(_make_customer())
        await bus.publish(_make_customer())
        assert bus.messages_processed == 2
