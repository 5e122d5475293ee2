"""Enumerations shared across the engine."""

from __future__ import annotations

from enum import Enum, auto


class IsolationLevel(Enum):
    """SQL standard transaction isolation levels."""

    READ_UNCOMMITTED = auto()  # Sees other transactions' uncommitted writes
    READ_COMMITTED = auto()  # Sees what was committed before each statement
    REPEATABLE_READ = auto()  # Rows read once keep their value; ranges may grow
    SERIALIZABLE = auto()  # Ranges are locked and commit order is validated

    @classmethod
    def parse(cls, name: str) -> "IsolationLevel":
        """Parse names like ``read-committed`` or ``REPEATABLE READ``."""
        normalized = name.strip().upper().replace("-", "_").replace(" ", "_")
        try:
            return cls[normalized]
        except KeyError:
            raise ValueError(f"unknown isolation level: {name!r}") from None


class TransactionStatus(Enum):
    """Lifecycle of a transaction. COMMITTED and ABORTED are terminal."""

    ACTIVE = auto()
    COMMITTED = auto()
    ABORTED = auto()


class LockMode(Enum):
    """Lock compatibility modes."""

    SHARED = auto()
    EXCLUSIVE = auto()


class LockResult(Enum):
    """Result of a non-blocking lock request."""

    GRANTED = auto()
    BLOCKED = auto()  # A conflicting lock is held; the caller may wait
    DENIED = auto()  # The requester is a deadlock victim or no longer active


class Operation(Enum):
    """Statement kinds an isolation policy assigns lock modes to."""

    READ = auto()
    SCAN = auto()
    WRITE = auto()
