"""Domain layer: events and the event-raising entity mixin.

This package defines the primitives every other layer depends on but
never modifies.  Events are immutable; entities only append to their
pending queue.
"""
