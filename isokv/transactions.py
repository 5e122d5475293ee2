"""Transaction support for isokv."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .enums import IsolationLevel, TransactionStatus
from .exceptions import InvalidTransactionStateError
from .isolation import IsolationPolicy, policy_for
from .predicates import Key, Predicate

if TYPE_CHECKING:
    from .engine import Engine
    from .locks import LockManager
    from .session import Session
    from .versions import Version, VersionStore

logger = logging.getLogger(__name__)


class LogicalClock:
    """Thread-safe monotonically increasing counter used for all timestamps."""

    def __init__(self) -> None:
        self._value = 0
        self._lock = threading.Lock()

    def tick(self) -> int:
        """Advance the clock and return the new instant."""
        with self._lock:
            self._value += 1
            return self._value

    @property
    def current(self) -> int:
        return self._value


@dataclass(eq=False)
class Transaction:
    """
    State of one transaction.

    Owned by the TransactionManager. Sessions, versions and locks only hold
    references to it.
    """

    id: int
    isolation_level: IsolationLevel
    start_ts: int
    policy: IsolationPolicy = field(repr=False)
    status: TransactionStatus = TransactionStatus.ACTIVE
    commit_ts: int | None = None
    read_set: set[Key] = field(default_factory=set, repr=False)
    read_predicates: list[Predicate] = field(default_factory=list, repr=False)
    # Key -> last row image written (the deleted image for deletes)
    write_set: dict[Key, Any] = field(default_factory=dict, repr=False)
    # Key -> version seen by the first read, None if the row was absent
    pins: dict[Key, "Version | None"] = field(default_factory=dict, repr=False)
    started_at: float = field(default_factory=time.time)
    abort_reason: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status is TransactionStatus.ACTIVE

    @property
    def is_committed(self) -> bool:
        return self.status is TransactionStatus.COMMITTED

    @property
    def is_aborted(self) -> bool:
        return self.status is TransactionStatus.ABORTED

    def committed_before(self, ts: int) -> bool:
        """Return True if this transaction committed strictly before ``ts``."""
        commit_ts = self.commit_ts
        return self.is_committed and commit_ts is not None and commit_ts < ts


@dataclass(frozen=True)
class CommitOutcome:
    """Result of TransactionManager.commit."""

    ok: bool
    reason: str | None = None
    commit_ts: int | None = None

    @classmethod
    def success(cls, commit_ts: int) -> "CommitOutcome":
        return cls(ok=True, commit_ts=commit_ts)

    @classmethod
    def conflict(cls, reason: str) -> "CommitOutcome":
        return cls(ok=False, reason=reason)

    def __bool__(self) -> bool:
        return self.ok


class TransactionManager:
    """
    Assigns ids and timestamps, tracks transaction status, and runs commits.

    Commits are serialized by a single commit mutex, so commit timestamps
    form a total order every later reader observes.
    """

    def __init__(
        self,
        clock: LogicalClock,
        versions: "VersionStore",
        locks: "LockManager",
    ) -> None:
        self._clock = clock
        self._versions = versions
        self._locks = locks
        self._mutex = threading.Lock()
        self._commit_mutex = threading.Lock()
        self._next_id = 1
        self._active: dict[int, Transaction] = {}
        # Committed writers, in commit order, still needed for validation
        self._committed: list[Transaction] = []

    def begin(self, isolation_level: IsolationLevel) -> Transaction:
        """Start a transaction bound to the policy of ``isolation_level``."""
        with self._mutex:
            txn = Transaction(
                id=self._next_id,
                isolation_level=isolation_level,
                start_ts=self._clock.tick(),
                policy=policy_for(isolation_level),
            )
            self._next_id += 1
            self._active[txn.id] = txn
        logger.debug(
            "Began transaction %d (%s) at ts %d",
            txn.id,
            isolation_level.name,
            txn.start_ts,
        )
        return txn

    def now(self) -> int:
        """Return a fresh logical instant for a statement."""
        return self._clock.tick()

    def commit(self, txn: Transaction) -> CommitOutcome:
        """
        Validate and commit ``txn``.

        On conflict the transaction is aborted (versions discarded, locks
        released) before the outcome is returned.
        """
        with self._commit_mutex:
            if not txn.is_active:
                raise InvalidTransactionStateError(
                    f"transaction {txn.id} is {txn.status.name.lower()}"
                )
            concurrent = self.committed_since(txn.start_ts)
            reason = txn.policy.check_conflict(txn, concurrent)
            if reason is not None:
                self._abort_locked(txn, reason)
            else:
                # commit_ts first: readers check status, then commit_ts
                txn.commit_ts = self._clock.tick()
                txn.status = TransactionStatus.COMMITTED
                with self._mutex:
                    self._active.pop(txn.id, None)
                    if txn.write_set:
                        self._committed.append(txn)
                    self._prune_locked()

        if reason is not None:
            self._cleanup(txn)
            logger.info("Transaction %d failed validation: %s", txn.id, reason)
            return CommitOutcome.conflict(reason)

        self._locks.release_all(txn)
        logger.debug("Committed transaction %d at ts %d", txn.id, txn.commit_ts)
        return CommitOutcome.success(txn.commit_ts)

    def abort(self, txn: Transaction, reason: str | None = None) -> bool:
        """
        Abort ``txn``: discard its versions and release its locks.

        Idempotent. Returns True if the transaction was active.
        """
        with self._commit_mutex:
            if not txn.is_active:
                return False
            self._abort_locked(txn, reason)
        self._cleanup(txn)
        logger.debug("Aborted transaction %d (%s)", txn.id, reason or "rollback")
        return True

    def _abort_locked(self, txn: Transaction, reason: str | None) -> None:
        txn.status = TransactionStatus.ABORTED
        txn.abort_reason = reason
        with self._mutex:
            self._active.pop(txn.id, None)
            self._prune_locked()

    def _cleanup(self, txn: Transaction) -> None:
        self._versions.discard(txn)
        self._locks.release_all(txn)

    def committed_since(self, ts: int) -> list[Transaction]:
        """Return the writers that committed after ``ts``, in commit order."""
        with self._mutex:
            return [t for t in self._committed if t.commit_ts > ts]

    def get(self, txn_id: int) -> Transaction | None:
        """Return the active transaction with ``txn_id``, if any."""
        with self._mutex:
            return self._active.get(txn_id)

    @property
    def active(self) -> list[Transaction]:
        """Return the active transactions, oldest first."""
        with self._mutex:
            return sorted(self._active.values(), key=lambda t: t.start_ts)

    def oldest_active_ts(self) -> int | None:
        """Return the start timestamp of the oldest active transaction."""
        with self._mutex:
            if not self._active:
                return None
            return min(t.start_ts for t in self._active.values())

    def prune(self) -> int:
        """Forget committed transactions no active transaction can conflict with."""
        with self._mutex:
            return self._prune_locked()

    def _prune_locked(self) -> int:
        if self._active:
            horizon = min(t.start_ts for t in self._active.values())
        else:
            horizon = self._clock.current
        before = len(self._committed)
        self._committed = [t for t in self._committed if t.commit_ts > horizon]
        return before - len(self._committed)


class TransactionScope:
    """
    Context manager running a block in one transaction.

    Usage:
        with engine.transaction(IsolationLevel.REPEATABLE_READ) as session:
            balance = session.read(("account", 1))["balance"]
            session.write(("account", 1), {"balance": balance - 250})
            # Commits on success, rolls back on exception
    """

    def __init__(
        self,
        engine: "Engine",
        isolation_level: IsolationLevel = IsolationLevel.READ_COMMITTED,
    ) -> None:
        self._engine = engine
        self._isolation_level = isolation_level
        self._session: Session | None = None

    def __enter__(self) -> "Session":
        self._session = self._engine.open(self._isolation_level, autocommit=False)
        return self._session

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> bool:
        session = self._session
        if session is None:
            return False
        try:
            if exc_type is None:
                session.commit()
            else:
                session.rollback()
        finally:
            session.close()
            self._session = None
        # Don't suppress exceptions
        return False

    @property
    def session(self) -> "Session | None":
        """Return the session of the running block."""
        return self._session
