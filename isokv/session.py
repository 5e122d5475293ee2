"""Client sessions for isokv."""

from __future__ import annotations

import itertools
import logging
from typing import TYPE_CHECKING, Any, Callable, TypeVar

from .enums import IsolationLevel, Operation
from .exceptions import (
    DuplicateKeyError,
    InvalidTransactionStateError,
    NotFoundError,
    SerializationConflictError,
    SessionClosedError,
    TransactionAbortedError,
)
from .predicates import Key, Predicate
from .transactions import Transaction

if TYPE_CHECKING:
    from .engine import Engine

T = TypeVar("T")

logger = logging.getLogger(__name__)

_session_ids = itertools.count(1)


class Session:
    """
    A client connection to an Engine.

    Mirrors a JDBC connection: a transaction starts implicitly with the first
    statement, and in autocommit mode every statement is its own transaction.

    A session must be used by one thread at a time. Statements that need a
    lock held by another session block for up to the engine's lock-wait
    timeout.
    """

    def __init__(
        self,
        engine: "Engine",
        isolation_level: IsolationLevel = IsolationLevel.READ_COMMITTED,
        autocommit: bool = True,
        name: str | None = None,
    ) -> None:
        """
        Initialize the session.

        Args:
            engine: Engine the session runs against.
            isolation_level: Level of the transactions this session begins.
            autocommit: Commit after every statement.
            name: Label used in logs (default: ``session-N``).
        """
        self._engine = engine
        self._isolation_level = isolation_level
        self._autocommit = autocommit
        self._name = name or f"session-{next(_session_ids)}"
        self._txn: Transaction | None = None
        self._closed = False

    def _check_closed(self) -> None:
        """Raise an error if the session is closed."""
        if self._closed:
            raise SessionClosedError(f"{self._name} is closed")
        self._engine._check_closed()

    def _current(self) -> Transaction:
        """Return the open transaction, beginning one if needed."""
        txn = self._txn
        if txn is not None and not txn.is_active:
            # Aborted from outside this session, e.g. by Engine.close()
            self._txn = None
            raise TransactionAbortedError(
                f"transaction {txn.id} was aborted: {txn.abort_reason or 'unknown reason'}",
                txn_id=txn.id,
            )
        if txn is None:
            txn = self._txn = self._engine.transactions.begin(self._isolation_level)
        return txn

    def _statement(self, op: Callable[[Transaction], T]) -> T:
        """Run one statement in the current transaction."""
        self._check_closed()
        txn = self._current()
        try:
            result = op(txn)
        except TransactionAbortedError as e:
            logger.info("%s: transaction %d aborted: %s", self._name, txn.id, e)
            self._engine.transactions.abort(txn, reason=str(e))
            self._txn = None
            raise
        except Exception:
            # Statement failure such as a missing key; the transaction
            # survives unless autocommit
            if self._autocommit:
                self._finish_rollback()
            raise
        if self._autocommit:
            self._finish_commit()
        return result

    def _lock_row(self, txn: Transaction, key: Key, images: tuple[Any, ...]) -> None:
        """Take the write lock on ``key``, aborting a writer that lost a race."""
        engine = self._engine
        mode = txn.policy.lock_mode_for(Operation.WRITE)
        if mode is None:
            return
        waited = engine.locks.acquire(
            key, mode, txn, engine.config.lock_wait_timeout, images=images
        )
        if (
            waited
            and txn.policy.first_updater_check
            and engine.versions.changed_since(key, txn.start_ts, txn)
        ):
            raise SerializationConflictError(
                f"{key!r} was updated by a concurrent transaction",
                txn_id=txn.id,
            )

    def _unlock_row(self, txn: Transaction, key: Key) -> None:
        """Drop a write lock the policy does not hold until commit."""
        if not txn.policy.hold_write_locks:
            self._engine.locks.release(key, txn)

    def _before_image(self, txn: Transaction, key: Key) -> tuple[Any, ...]:
        engine = self._engine
        version = engine.versions.lookup(
            key, txn, txn.policy, engine.transactions.now(), record=False
        )
        return (version.value,) if version is not None else ()

    def read(self, key: Key) -> Any | None:
        """Return the value of ``key``, or None if the row does not exist."""

        def op(txn: Transaction) -> Any | None:
            engine = self._engine
            return engine.versions.read(key, txn, txn.policy, engine.transactions.now())

        return self._statement(op)

    def scan(self, predicate: Predicate) -> list[tuple[Key, Any]]:
        """Return ``(key, value)`` for every row matching ``predicate``."""

        def op(txn: Transaction) -> list[tuple[Key, Any]]:
            engine = self._engine
            mode = txn.policy.lock_mode_for(Operation.SCAN)
            if mode is not None:
                engine.locks.acquire(predicate, mode, txn, engine.config.lock_wait_timeout)
            return engine.versions.scan(predicate, txn, txn.policy, engine.transactions.now())

        return self._statement(op)

    def write(self, key: Key, value: Any) -> None:
        """Set ``key`` to ``value``, creating the row if needed."""

        def op(txn: Transaction) -> None:
            self._lock_row(txn, key, self._before_image(txn, key) + (value,))
            try:
                self._engine.versions.write(key, value, txn)
            finally:
                self._unlock_row(txn, key)

        self._statement(op)

    def insert(self, key: Key, value: Any) -> None:
        """
        Create the row ``key``.

        Raises:
            DuplicateKeyError: The row already exists.
        """

        def op(txn: Transaction) -> None:
            self._lock_row(txn, key, (value,))
            try:
                if self._before_image(txn, key):
                    raise DuplicateKeyError(key)
                self._engine.versions.write(key, value, txn)
            finally:
                self._unlock_row(txn, key)

        self._statement(op)

    def update(self, key: Key, func: Callable[[Any], Any]) -> Any:
        """
        Replace the value of ``key`` with ``func(current)`` in one statement.

        The current value is read after the row lock is granted, the way
        ``UPDATE t SET n = n - 1`` reads the row it locks.

        Returns:
            The new value.

        Raises:
            NotFoundError: The row does not exist.
        """

        def op(txn: Transaction) -> Any:
            engine = self._engine
            self._lock_row(txn, key, self._before_image(txn, key))
            try:
                current = engine.versions.lookup(
                    key, txn, txn.policy, engine.transactions.now()
                )
                if current is None:
                    raise NotFoundError(key)
                value = func(current.value)
                # Re-check range locks against the new image
                self._lock_row(txn, key, (current.value, value))
                engine.versions.write(key, value, txn)
                return value
            finally:
                self._unlock_row(txn, key)

        return self._statement(op)

    def delete(self, key: Key) -> None:
        """
        Delete the row ``key``.

        Raises:
            NotFoundError: The row does not exist.
        """

        def op(txn: Transaction) -> None:
            engine = self._engine
            self._lock_row(txn, key, self._before_image(txn, key))
            try:
                engine.versions.delete(key, txn, txn.policy, engine.transactions.now())
            finally:
                self._unlock_row(txn, key)

        self._statement(op)

    def commit(self) -> None:
        """
        Commit the current transaction. No-op if none is open.

        Raises:
            SerializationConflictError: Validation failed; the transaction
                has been rolled back.
        """
        self._check_closed()
        if self._txn is not None:
            self._finish_commit()

    def rollback(self) -> None:
        """Roll back the current transaction. No-op if none is open."""
        self._check_closed()
        self._finish_rollback()

    def _finish_commit(self) -> None:
        txn = self._txn
        if txn is None:
            return
        self._txn = None
        if not txn.is_active:
            raise TransactionAbortedError(
                f"transaction {txn.id} was aborted: {txn.abort_reason or 'unknown reason'}",
                txn_id=txn.id,
            )
        outcome = self._engine.transactions.commit(txn)
        if not outcome:
            raise SerializationConflictError(
                f"could not serialize transaction {txn.id}: {outcome.reason}",
                txn_id=txn.id,
            )

    def _finish_rollback(self) -> None:
        txn, self._txn = self._txn, None
        if txn is not None:
            self._engine.transactions.abort(txn, reason=f"rolled back by {self._name}")

    def close(self) -> None:
        """Roll back any open transaction and close the session."""
        if self._closed:
            return
        txn, self._txn = self._txn, None
        if txn is not None:
            self._engine.transactions.abort(txn, reason=f"{self._name} closed")
        self._closed = True
        self._engine._forget(self)

    @property
    def closed(self) -> bool:
        """Return True if the session is closed."""
        return self._closed

    @property
    def name(self) -> str:
        return self._name

    @property
    def in_transaction(self) -> bool:
        """Return True if a transaction is open."""
        return self._txn is not None and self._txn.is_active

    @property
    def transaction(self) -> Transaction | None:
        """Return the open transaction, if any."""
        return self._txn

    @property
    def isolation_level(self) -> IsolationLevel:
        return self._isolation_level

    @isolation_level.setter
    def isolation_level(self, level: IsolationLevel) -> None:
        """Set the level of the next transaction. Not allowed mid-transaction."""
        self._check_closed()
        if self.in_transaction:
            raise InvalidTransactionStateError(
                "cannot change the isolation level inside a transaction"
            )
        self._isolation_level = level

    @property
    def autocommit(self) -> bool:
        return self._autocommit

    @autocommit.setter
    def autocommit(self, enabled: bool) -> None:
        """Toggle autocommit. Turning it on commits the open transaction."""
        self._check_closed()
        if enabled and not self._autocommit:
            self._finish_commit()
        self._autocommit = enabled

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self._closed else f"txn={self._txn.id if self._txn else None}"
        return f"<Session {self._name} {self._isolation_level.name} {state}>"
