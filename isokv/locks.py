"""
Row and predicate locks.

Exclusive row locks are taken by every write. Shared predicate locks are
taken by Serializable range reads. The two interact through row images: a
writer declares the before/after values of the row it locks, and a predicate
lock conflicts with an exclusive row lock when any of those images falls in
its range.

Blocked requests wait on a condition variable with a deadline and register
an edge in the wait-for graph. ``detect_deadlocks`` breaks cycles by marking
the youngest transaction of each cycle as victim.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Union

from .enums import LockMode, LockResult
from .exceptions import DeadlockAbortedError, LockTimeoutError, TransactionAbortedError
from .predicates import Key, Predicate

if TYPE_CHECKING:
    from .transactions import Transaction

logger = logging.getLogger(__name__)

Resource = Union[Key, Predicate]


@dataclass
class RowLock:
    """Holders of one row lock and the row images exclusive holders declared."""

    holders: dict[int, LockMode] = field(default_factory=dict)
    images: dict[int, tuple[Any, ...]] = field(default_factory=dict)


@dataclass(frozen=True)
class PredicateLock:
    """A shared lock on a range."""

    predicate: Predicate
    txn_id: int


class LockManager:
    """
    Lock table shared by all sessions of an engine.

    All state lives under one condition variable; releases wake every waiter
    so each can re-check its own request.
    """

    def __init__(self, detect_inline: bool = False) -> None:
        """
        Initialize the lock manager.

        Args:
            detect_inline: Run deadlock detection each time a request
                blocks instead of relying on a periodic DeadlockDetector.
        """
        self._cond = threading.Condition()
        self._rows: dict[Key, RowLock] = {}
        self._predicates: list[PredicateLock] = []
        self._held: dict[int, set[Key]] = defaultdict(set)
        self._waiting: dict[int, "Transaction"] = {}
        self._wait_for: dict[int, set[int]] = {}
        self._victims: set[int] = set()
        self._detect_inline = detect_inline

    def try_acquire(
        self,
        resource: Resource,
        mode: LockMode,
        txn: "Transaction",
        images: tuple[Any, ...] = (),
    ) -> LockResult:
        """
        Request a lock without waiting.

        Args:
            resource: Row key, or Predicate for a range lock (SHARED only).
            mode: Requested mode.
            txn: Requesting transaction.
            images: Row values (before and after) an exclusive row lock
                covers. Checked against other transactions' predicate locks.
        """
        with self._cond:
            result, _ = self._try(resource, mode, txn, images)
            return result

    def acquire(
        self,
        resource: Resource,
        mode: LockMode,
        txn: "Transaction",
        timeout: float,
        images: tuple[Any, ...] = (),
    ) -> bool:
        """
        Acquire a lock, waiting up to ``timeout`` seconds.

        Returns:
            True if the request had to wait, False if granted immediately.

        Raises:
            LockTimeoutError: The lock was still held by another transaction
                when the timeout elapsed.
            DeadlockAbortedError: ``txn`` was chosen as a deadlock victim.
            TransactionAbortedError: ``txn`` was aborted while waiting.
        """
        deadline = time.monotonic() + timeout
        with self._cond:
            result, blockers = self._try(resource, mode, txn, images)
            if result is LockResult.GRANTED:
                return False

            self._waiting[txn.id] = txn
            try:
                while result is LockResult.BLOCKED:
                    self._wait_for[txn.id] = blockers
                    logger.debug(
                        "Transaction %d waits for %s on %s", txn.id, sorted(blockers), resource
                    )
                    if self._detect_inline:
                        self._detect_locked()
                        if txn.id in self._victims:
                            break
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        logger.warning(
                            "Lock wait timeout: transaction %d on %s after %.3fs",
                            txn.id,
                            resource,
                            timeout,
                        )
                        raise LockTimeoutError(
                            f"lock wait timeout on {resource} "
                            f"(held by transactions {sorted(blockers)})",
                            txn_id=txn.id,
                        )
                    self._cond.wait(remaining)
                    result, blockers = self._try(resource, mode, txn, images)
            finally:
                self._waiting.pop(txn.id, None)
                self._wait_for.pop(txn.id, None)

            if result is LockResult.GRANTED:
                return True
            if txn.id in self._victims:
                raise DeadlockAbortedError(
                    f"transaction {txn.id} aborted to break a deadlock on {resource}",
                    txn_id=txn.id,
                )
            raise TransactionAbortedError(
                f"transaction {txn.id} was aborted while waiting for {resource}",
                txn_id=txn.id,
            )

    def _try(
        self,
        resource: Resource,
        mode: LockMode,
        txn: "Transaction",
        images: tuple[Any, ...],
    ) -> tuple[LockResult, set[int]]:
        if txn.id in self._victims or not txn.is_active:
            return LockResult.DENIED, set()

        if isinstance(resource, Predicate):
            if mode is not LockMode.SHARED:
                raise ValueError("predicate locks are shared only")
            blockers = {
                holder
                for key, lock in self._rows.items()
                for holder, held_mode in lock.holders.items()
                if holder != txn.id
                and held_mode is LockMode.EXCLUSIVE
                and resource.matches_any(key, lock.images.get(holder, ()))
            }
            if blockers:
                return LockResult.BLOCKED, blockers
            entry = PredicateLock(resource, txn.id)
            if entry not in self._predicates:
                self._predicates.append(entry)
            return LockResult.GRANTED, set()

        lock = self._rows.get(resource)
        blockers = set()
        if lock is not None:
            blockers = {
                holder
                for holder, held_mode in lock.holders.items()
                if holder != txn.id
                and (mode is LockMode.EXCLUSIVE or held_mode is LockMode.EXCLUSIVE)
            }
        if mode is LockMode.EXCLUSIVE:
            blockers |= {
                entry.txn_id
                for entry in self._predicates
                if entry.txn_id != txn.id and entry.predicate.matches_any(resource, images)
            }
        if blockers:
            return LockResult.BLOCKED, blockers

        if lock is None:
            lock = self._rows[resource] = RowLock()
        if lock.holders.get(txn.id) is not LockMode.EXCLUSIVE:
            lock.holders[txn.id] = mode
        if mode is LockMode.EXCLUSIVE and images:
            lock.images[txn.id] = lock.images.get(txn.id, ()) + tuple(images)
        self._held[txn.id].add(resource)
        return LockResult.GRANTED, set()

    def release(self, resource: Resource, txn: "Transaction") -> bool:
        """Release one lock held by ``txn``. Returns True if one was held."""
        with self._cond:
            if isinstance(resource, Predicate):
                entry = PredicateLock(resource, txn.id)
                if entry not in self._predicates:
                    return False
                self._predicates.remove(entry)
            else:
                if not self._release_row(resource, txn.id):
                    return False
                self._held[txn.id].discard(resource)
                if not self._held[txn.id]:
                    del self._held[txn.id]
            self._cond.notify_all()
            return True

    def release_all(self, txn: "Transaction") -> int:
        """Release every lock held by ``txn`` and wake all waiters."""
        with self._cond:
            released = 0
            for key in self._held.pop(txn.id, set()):
                if self._release_row(key, txn.id):
                    released += 1
            before = len(self._predicates)
            self._predicates = [e for e in self._predicates if e.txn_id != txn.id]
            released += before - len(self._predicates)
            self._victims.discard(txn.id)
            self._cond.notify_all()
        if released:
            logger.debug("Released %d locks of transaction %d", released, txn.id)
        return released

    def _release_row(self, key: Key, txn_id: int) -> bool:
        lock = self._rows.get(key)
        if lock is None or txn_id not in lock.holders:
            return False
        del lock.holders[txn_id]
        lock.images.pop(txn_id, None)
        if not lock.holders:
            del self._rows[key]
        return True

    def detect_deadlocks(self) -> list[int]:
        """
        Break every cycle in the wait-for graph.

        The participant with the latest start timestamp in each cycle is
        marked as victim and its waiting request fails with
        DeadlockAbortedError.

        Returns:
            Ids of the transactions chosen as victims.
        """
        with self._cond:
            return self._detect_locked()

    def _detect_locked(self) -> list[int]:
        graph = {
            waiter: set(blockers)
            for waiter, blockers in self._wait_for.items()
            if waiter not in self._victims
        }
        victims: list[int] = []
        while True:
            cycle = find_cycle(graph)
            if not cycle:
                break
            victim = max(cycle, key=lambda tid: (self._waiting[tid].start_ts, tid))
            logger.warning(
                "Deadlock between transactions %s; aborting transaction %d",
                cycle,
                victim,
            )
            self._victims.add(victim)
            victims.append(victim)
            graph.pop(victim, None)
            for blockers in graph.values():
                blockers.discard(victim)
        if victims:
            self._cond.notify_all()
        return victims

    def holders(self, resource: Resource) -> dict[int, LockMode]:
        """Return the holders of ``resource`` and their modes."""
        with self._cond:
            if isinstance(resource, Predicate):
                return {
                    entry.txn_id: LockMode.SHARED
                    for entry in self._predicates
                    if entry.predicate == resource
                }
            lock = self._rows.get(resource)
            return dict(lock.holders) if lock is not None else {}

    def held_by(self, txn: "Transaction") -> set[Resource]:
        """Return every resource ``txn`` holds a lock on."""
        with self._cond:
            held: set[Resource] = set(self._held.get(txn.id, set()))
            held.update(e.predicate for e in self._predicates if e.txn_id == txn.id)
            return held

    def waiting(self) -> dict[int, set[int]]:
        """Return a copy of the wait-for graph."""
        with self._cond:
            return {waiter: set(blockers) for waiter, blockers in self._wait_for.items()}


def find_cycle(graph: dict[int, set[int]]) -> list[int]:
    """Return the nodes of one cycle in ``graph``, or an empty list."""
    visited: set[int] = set()
    for start in graph:
        if start in visited:
            continue
        path: list[int] = []
        on_path: set[int] = set()
        stack = [(start, iter(sorted(graph.get(start, ()))))]
        path.append(start)
        on_path.add(start)
        while stack:
            node, edges = stack[-1]
            nxt = next(edges, None)
            if nxt is None:
                stack.pop()
                path.pop()
                on_path.discard(node)
                visited.add(node)
                continue
            if nxt in on_path:
                return path[path.index(nxt):]
            if nxt in visited or nxt not in graph:
                continue
            stack.append((nxt, iter(sorted(graph[nxt]))))
            path.append(nxt)
            on_path.add(nxt)
    return []


class DeadlockDetector:
    """Background thread that periodically breaks wait-for cycles."""

    def __init__(self, locks: LockManager, interval: float) -> None:
        self._locks = locks
        self._interval = interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._loop,
            name="isokv-deadlock-detector",
            daemon=True,
        )
        self._thread.start()

    def _loop(self) -> None:
        # Blocks on the stop event between scans
        while not self._stop.wait(self._interval):
            self._locks.detect_deadlocks()

    def stop(self, wait: bool = True) -> None:
        self._stop.set()
        if wait and self._thread is not None:
            self._thread.join(timeout=5.0)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
