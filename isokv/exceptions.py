"""Custom exceptions for isokv.

Names follow the PEP 249 hierarchy so callers used to ``sqlite3`` can catch
``OperationalError`` or ``IntegrityError`` the way they already do.
"""

from __future__ import annotations


class Error(Exception):
    """Base exception for all isokv errors."""

    pass


class Warning(Exception):  # noqa: A001
    """Important warnings raised by the engine."""

    pass


class InterfaceError(Error):
    """Raised for misuse of the client interface."""

    pass


class DatabaseError(Error):
    """Base exception for errors related to the stored data."""

    pass


class OperationalError(DatabaseError):
    """Raised for errors in the engine's operation, not the caller's data."""

    pass


class IntegrityError(DatabaseError):
    """Raised when a statement would violate key uniqueness."""

    pass


class ProgrammingError(DatabaseError):
    """Raised for statements issued in the wrong state."""

    pass


class InternalError(DatabaseError):
    """Raised when an engine invariant is broken. Not recoverable."""

    pass


class TransactionAbortedError(OperationalError):
    """
    Base exception for transactions aborted by the engine.

    By the time this is raised the transaction's versions are discarded and
    its locks released. The caller may retry the whole transaction.
    """

    def __init__(self, message: str, txn_id: int | None = None) -> None:
        super().__init__(message)
        self.txn_id = txn_id


class LockTimeoutError(TransactionAbortedError):
    """Raised when a lock was not released within the lock-wait window."""

    pass


class DeadlockAbortedError(TransactionAbortedError):
    """Raised in the transaction chosen as the victim of a wait-for cycle."""

    pass


class SerializationConflictError(TransactionAbortedError):
    """Raised when a transaction cannot be serialized with concurrent ones."""

    pass


class NotFoundError(DatabaseError):
    """Raised when a statement targets a key that is not visible."""

    def __init__(self, key: object) -> None:
        super().__init__(f"key not found: {key!r}")
        self.key = key


class DuplicateKeyError(IntegrityError):
    """Raised when inserting a key that is already visible."""

    def __init__(self, key: object) -> None:
        super().__init__(f"duplicate key: {key!r}")
        self.key = key


class SessionClosedError(InterfaceError):
    """Raised when attempting to use a closed session."""

    pass


class EngineClosedError(InterfaceError):
    """Raised when attempting to use a closed engine."""

    pass


class InvalidTransactionStateError(ProgrammingError):
    """Raised when a transaction command is not valid in the current state."""

    pass
