"""Custom exception hierarchy for the mechanic shop.

There is no commit-failure class: the store's own
``sqlalchemy.exc`` exceptions reach the caller unchanged.
"""


class MechanicShopError(Exception):
    """Base exception for all mechanic shop errors."""


# --- Configuration ---
class ConfigError(MechanicShopError):
    """Invalid or missing configuration."""


# --- Domain ---
class DomainError(MechanicShopError):
    """A business rule was violated."""


class DomainValidationError(DomainError):
    """Entity data failed validation."""


class InvalidStateTransitionError(DomainError):
    """Work order cannot move from its current state to the requested one."""

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot transition work order from {current} to {requested}")


class InvoiceAlreadyPaidError(DomainError):
    """Invoice has already been settled."""


# --- Persistence ---
class PersistenceError(MechanicShopError):
    """Persistence infrastructure error."""


class EngineNotInitialisedError(PersistenceError):
    """``init_engine()`` has not been called."""


class SaveCancelledError(PersistenceError):
    """Save was cancelled before the commit began."""


class OutboxError(PersistenceError):
    """Outbox message could not be decoded or delivered."""
