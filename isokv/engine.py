"""
In-process transactional key-value engine.

The Engine owns the components every session shares: the version store, the
lock manager, the transaction manager, and the deadlock detector thread.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import weakref
from typing import TYPE_CHECKING, Any

from .config import EngineConfig
from .enums import IsolationLevel
from .exceptions import EngineClosedError
from .locks import DeadlockDetector, LockManager
from .session import Session
from .transactions import LogicalClock, TransactionManager, TransactionScope
from .versions import VersionStore

if TYPE_CHECKING:
    from .aio import AsyncSession, SessionWorker

logger = logging.getLogger(__name__)


class Engine:
    """
    A multi-version store with configurable isolation levels.

    Usage:
        with Engine(lock_wait_timeout=1.0) as engine:
            alice = engine.open(IsolationLevel.READ_COMMITTED, autocommit=False)
            bob = engine.open(IsolationLevel.READ_COMMITTED, autocommit=False)
            ...
    """

    def __init__(self, config: EngineConfig | None = None, **overrides: Any) -> None:
        """
        Initialize the engine.

        Args:
            config: Engine configuration (default: EngineConfig()).
            **overrides: Individual EngineConfig fields, e.g.
                ``lock_wait_timeout=0.5``.
        """
        config = config or EngineConfig()
        if overrides:
            config = dataclasses.replace(config, **overrides)
        self._config = config

        self._clock = LogicalClock()
        self._versions = VersionStore(self._clock)
        self._locks = LockManager(detect_inline=config.deadlock_check_interval == 0)
        self._transactions = TransactionManager(self._clock, self._versions, self._locks)

        self._sessions: weakref.WeakSet[Session] = weakref.WeakSet()
        # A running worker is kept alive by its own thread
        self._workers: weakref.WeakSet[SessionWorker] = weakref.WeakSet()
        self._sessions_lock = threading.Lock()
        self._closed = False

        self._detector: DeadlockDetector | None = None
        if config.deadlock_check_interval > 0:
            self._detector = DeadlockDetector(self._locks, config.deadlock_check_interval)
            self._detector.start()

    def _check_closed(self) -> None:
        """Raise an error if the engine is closed."""
        if self._closed:
            raise EngineClosedError("Engine is closed")

    def open(
        self,
        isolation_level: IsolationLevel = IsolationLevel.READ_COMMITTED,
        autocommit: bool = True,
        name: str | None = None,
    ) -> Session:
        """
        Open a new session.

        Args:
            isolation_level: Level of the transactions the session begins.
            autocommit: Commit after every statement (default: True).
            name: Label used in logs.
        """
        self._check_closed()
        session = Session(self, isolation_level, autocommit, name)
        with self._sessions_lock:
            self._sessions.add(session)
        logger.debug("Opened %s (%s)", session.name, isolation_level.name)
        return session

    def open_async(
        self,
        isolation_level: IsolationLevel = IsolationLevel.READ_COMMITTED,
        autocommit: bool = True,
        name: str | None = None,
    ) -> "AsyncSession":
        """Open a session driven from asyncio code. See AsyncSession."""
        from .aio import AsyncSession

        session = AsyncSession(self.open(isolation_level, autocommit, name))
        with self._sessions_lock:
            self._workers.add(session.worker)
        return session

    def transaction(
        self,
        isolation_level: IsolationLevel = IsolationLevel.READ_COMMITTED,
    ) -> TransactionScope:
        """Return a context manager running its block in one transaction."""
        self._check_closed()
        return TransactionScope(self, isolation_level)

    def _forget(self, session: Session) -> None:
        with self._sessions_lock:
            self._sessions.discard(session)

    def vacuum(self) -> int:
        """
        Drop row versions no active transaction can see.

        Returns:
            Number of versions removed.
        """
        self._check_closed()
        horizon = self._transactions.oldest_active_ts()
        if horizon is None:
            horizon = self._clock.current + 1
        removed = self._versions.vacuum(horizon)
        self._transactions.prune()
        return removed

    def close(self) -> None:
        """Stop the deadlock detector, close every open session and stop async workers."""
        if self._closed:
            return
        if self._detector is not None:
            self._detector.stop(wait=True)
        with self._sessions_lock:
            sessions = list(self._sessions)
            workers = list(self._workers)
        for session in sessions:
            session.close()
        for txn in self._transactions.active:
            self._transactions.abort(txn, reason="engine closed")
        for worker in workers:
            worker.close(wait=True)
        self._closed = True

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def versions(self) -> VersionStore:
        return self._versions

    @property
    def locks(self) -> LockManager:
        return self._locks

    @property
    def transactions(self) -> TransactionManager:
        return self._transactions

    @property
    def closed(self) -> bool:
        """Return True if the engine is closed."""
        return self._closed

    @property
    def sessions(self) -> list[Session]:
        """Return the open sessions."""
        with self._sessions_lock:
            return [s for s in self._sessions if not s.closed]

    def __enter__(self) -> "Engine":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()
