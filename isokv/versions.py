"""
Multi-version row storage.

Every write appends an immutable Version to the row's chain. Which version a
transaction sees is decided by the isolation policy bound to it; the store
only keeps the chains and records what each transaction read and wrote.
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Hashable, Iterator

from .exceptions import InternalError, NotFoundError, SerializationConflictError
from .predicates import Key, Predicate

if TYPE_CHECKING:
    from .isolation import IsolationPolicy
    from .transactions import LogicalClock, Transaction

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class Version:
    """
    One value of a row.

    The value and creator never change. The deletion marker is set when a
    transaction deletes the row and cleared again if that transaction aborts.
    """

    id: int
    value: Any
    creator: "Transaction" = field(repr=False)
    created_at: int
    deleted_by: "Transaction | None" = field(default=None, repr=False)
    deleted_at: int | None = None

    @property
    def created_by(self) -> int:
        return self.creator.id

    @property
    def deleter_id(self) -> int | None:
        return self.deleted_by.id if self.deleted_by is not None else None

    def sort_key(self) -> tuple[int, int]:
        """Order of committed versions: commit time, then creation time."""
        commit_ts = self.creator.commit_ts
        return (commit_ts if commit_ts is not None else 0, self.created_at)


@dataclass(eq=False)
class VersionChain:
    """All versions of one row, in creation order."""

    key: Key
    versions: list[Version] = field(default_factory=list)

    def __iter__(self) -> Iterator[Version]:
        return iter(self.versions)

    def __len__(self) -> int:
        return len(self.versions)


class VersionStore:
    """
    Version chains for every row, grouped by table.

    Thread-safe: all access to the chains happens under one re-entrant lock.
    """

    def __init__(self, clock: "LogicalClock") -> None:
        self._clock = clock
        self._lock = threading.RLock()
        self._tables: dict[str, dict[Hashable, VersionChain]] = {}
        self._version_ids = itertools.count(1)

    def _chain(self, key: Key, create: bool = False) -> VersionChain:
        table, pk = key
        rows = self._tables.get(table)
        if rows is None:
            if not create:
                return VersionChain(key)
            rows = self._tables.setdefault(table, {})
        chain = rows.get(pk)
        if chain is None:
            chain = VersionChain(key)
            if create:
                rows[pk] = chain
        return chain

    def chain(self, key: Key) -> list[Version]:
        """Return a copy of the version chain of ``key``."""
        with self._lock:
            return list(self._chain(key).versions)

    def lookup(
        self,
        key: Key,
        txn: "Transaction",
        policy: "IsolationPolicy",
        read_ts: int,
        record: bool = True,
    ) -> Version | None:
        """
        Return the version of ``key`` visible to ``txn``, or None.

        Args:
            key: Row to look up.
            txn: Reading transaction.
            policy: Isolation policy deciding visibility.
            read_ts: Logical instant of the statement.
            record: Add the key to the read set and pin it when the policy
                pins reads. Existence checks made on behalf of writes pass
                False.
        """
        with self._lock:
            visible = policy.visible_versions(self._chain(key), txn, read_ts)
            version = visible[-1] if visible else None
            if record:
                txn.read_set.add(key)
                if policy.pins_reads:
                    txn.pins.setdefault(key, version)
            return version

    def read(
        self,
        key: Key,
        txn: "Transaction",
        policy: "IsolationPolicy",
        read_ts: int,
    ) -> Any | None:
        """Return the value of ``key`` visible to ``txn``, or None if absent."""
        version = self.lookup(key, txn, policy, read_ts)
        return version.value if version is not None else None

    def scan(
        self,
        predicate: Predicate,
        txn: "Transaction",
        policy: "IsolationPolicy",
        read_ts: int,
    ) -> list[tuple[Key, Any]]:
        """Return ``(key, value)`` of every visible row matching ``predicate``."""
        rows: list[tuple[Key, Any]] = []
        with self._lock:
            for chain in self._tables.get(predicate.table, {}).values():
                visible = policy.visible_versions(chain, txn, read_ts)
                if not visible:
                    continue
                version = visible[-1]
                if not predicate.matches(chain.key, version.value):
                    continue
                rows.append((chain.key, version.value))
                txn.read_set.add(chain.key)
                if policy.pins_reads:
                    txn.pins.setdefault(chain.key, version)
            txn.read_predicates.append(predicate)
        return rows

    def write(self, key: Key, value: Any, txn: "Transaction") -> int:
        """Append a new version of ``key`` created by ``txn``. Returns its id."""
        _check_writer(txn)
        with self._lock:
            version = Version(
                id=next(self._version_ids),
                value=value,
                creator=txn,
                created_at=self._clock.tick(),
            )
            self._chain(key, create=True).versions.append(version)
            txn.write_set[key] = value
            return version.id

    def delete(
        self,
        key: Key,
        txn: "Transaction",
        policy: "IsolationPolicy",
        read_ts: int,
    ) -> Version:
        """
        Mark the version of ``key`` visible to ``txn`` as deleted.

        Raises:
            NotFoundError: No version is visible.
            SerializationConflictError: Another live transaction already
                deleted the same version.
        """
        _check_writer(txn)
        with self._lock:
            visible = policy.visible_versions(self._chain(key), txn, read_ts)
            if not visible:
                raise NotFoundError(key)
            version = visible[-1]
            deleter = version.deleted_by
            if deleter is not None and deleter is not txn and not deleter.is_aborted:
                raise SerializationConflictError(
                    f"{key!r} is being deleted by transaction {deleter.id}",
                    txn_id=txn.id,
                )
            version.deleted_by = txn
            version.deleted_at = self._clock.tick()
            txn.write_set[key] = version.value
            return version

    def discard(self, txn: "Transaction") -> int:
        """Drop the versions and deletion markers of an aborted transaction."""
        removed = 0
        with self._lock:
            for key in txn.write_set:
                chain = self._chain(key)
                kept = []
                for version in chain.versions:
                    if version.creator is txn:
                        removed += 1
                        continue
                    if version.deleted_by is txn:
                        version.deleted_by = None
                        version.deleted_at = None
                    kept.append(version)
                chain.versions = kept
                if not kept:
                    self._drop(key)
        if removed:
            logger.debug("Discarded %d versions of transaction %d", removed, txn.id)
        return removed

    def changed_since(self, key: Key, ts: int, txn: "Transaction") -> bool:
        """Return True if another transaction committed a change to ``key`` after ``ts``."""
        with self._lock:
            for version in self._chain(key):
                creator = version.creator
                if creator is not txn and creator.is_committed and creator.commit_ts > ts:
                    return True
                deleter = version.deleted_by
                if (
                    deleter is not None
                    and deleter is not txn
                    and deleter.is_committed
                    and deleter.commit_ts > ts
                ):
                    return True
            return False

    def latest_committed(self, key: Key) -> Version | None:
        """Return the newest committed version of ``key``, deleted or not."""
        with self._lock:
            committed = [v for v in self._chain(key) if v.creator.is_committed]
            return max(committed, key=Version.sort_key) if committed else None

    def vacuum(self, horizon: int) -> int:
        """
        Remove versions no transaction can see any more.

        A committed version is garbage once a newer committed version exists
        that was committed before ``horizon`` (the oldest active start
        timestamp), or once its deletion was committed before ``horizon``.
        """
        removed = 0
        with self._lock:
            for table, rows in list(self._tables.items()):
                for pk, chain in list(rows.items()):
                    before = len(chain.versions)
                    chain.versions = _live_versions(chain.versions, horizon)
                    removed += before - len(chain.versions)
                    if not chain.versions:
                        del rows[pk]
                if not rows:
                    del self._tables[table]
        if removed:
            logger.debug("Vacuum removed %d versions below ts %d", removed, horizon)
        return removed

    def _drop(self, key: Key) -> None:
        table, pk = key
        rows = self._tables.get(table)
        if rows is None:
            return
        rows.pop(pk, None)
        if not rows:
            del self._tables[table]

    def keys(self, table: str) -> list[Key]:
        """Return the keys of every row of ``table`` that has a version."""
        with self._lock:
            return [chain.key for chain in self._tables.get(table, {}).values()]

    def __len__(self) -> int:
        with self._lock:
            return sum(len(rows) for rows in self._tables.values())


def _check_writer(txn: "Transaction") -> None:
    if not txn.is_active:
        raise InternalError(f"write by transaction {txn.id}, which is {txn.status.name.lower()}")


def _live_versions(versions: list[Version], horizon: int) -> list[Version]:
    settled = [
        v
        for v in versions
        if v.creator.is_committed and v.creator.commit_ts < horizon
    ]
    if not settled:
        return versions
    newest = max(settled, key=Version.sort_key)
    dead = {id(v) for v in settled if v is not newest}
    deleter = newest.deleted_by
    if deleter is not None and deleter.is_committed and deleter.commit_ts < horizon:
        dead.add(id(newest))
    return [v for v in versions if id(v) not in dead]
