"""
Isolation policies.

One IsolationPolicy instance exists per isolation level. A transaction is
bound to its policy once, at begin, and every read, write and commit asks the
policy three questions:

- which versions of a row are visible (``visible_versions``)
- which lock a statement needs (``lock_mode_for``)
- whether the transaction may commit given what committed concurrently
  (``check_conflict``)

The levels differ only in the flags the instances are built with.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto
from typing import TYPE_CHECKING, Iterable

from .enums import IsolationLevel, LockMode, Operation, TransactionStatus

if TYPE_CHECKING:
    from .transactions import Transaction
    from .versions import Version, VersionChain


class Visibility(Enum):
    """
    How a policy picks the visible version of a row.

    PINNED is per row, not a whole-database snapshot: a row the transaction
    has not read yet is read as of the current statement, not as of the
    transaction's start. Re-reads are stable and ranges can gain new rows,
    but two different rows read at different times may come from different
    commits (read skew across rows).
    """

    DIRTY = auto()  # Newest version of any live transaction
    STATEMENT = auto()  # Newest version committed before the statement
    PINNED = auto()  # Like STATEMENT, but the first version read of a row sticks


@dataclass(frozen=True)
class IsolationPolicy:
    """
    Visibility and conflict rules of one isolation level.

    Attributes:
        level: The isolation level this policy implements.
        visibility: Version selection rule.
        hold_write_locks: Keep exclusive row locks until commit or abort.
            When False the lock is released as soon as the write is done.
        predicate_locks: Range reads take shared predicate locks.
        first_updater_check: A writer that had to wait for a row lock is
            aborted if the row was changed by a transaction that committed
            after it started.
        write_write_check: Commit fails if a concurrent committed
            transaction wrote a row this transaction also wrote.
        read_write_cycle_check: Commit fails if this transaction and a
            concurrent committed one each read something the other wrote.
    """

    level: IsolationLevel
    visibility: Visibility
    hold_write_locks: bool = True
    predicate_locks: bool = False
    first_updater_check: bool = False
    write_write_check: bool = False
    read_write_cycle_check: bool = False

    @property
    def pins_reads(self) -> bool:
        return self.visibility is Visibility.PINNED

    def lock_mode_for(self, operation: Operation) -> LockMode | None:
        """Return the lock a statement must hold, or None if it takes none."""
        if operation is Operation.WRITE:
            return LockMode.EXCLUSIVE
        if operation is Operation.SCAN and self.predicate_locks:
            return LockMode.SHARED
        return None

    def visible_versions(
        self,
        chain: "VersionChain",
        txn: "Transaction",
        read_ts: int,
    ) -> list["Version"]:
        """
        Return the versions of ``chain`` visible to ``txn``.

        The result holds at most one version: the row's current value from
        the point of view of ``txn`` at ``read_ts``. An empty list means the
        row is absent (never written, deleted, or not yet visible).
        """
        own = [v for v in chain if v.creator is txn]
        if own:
            newest = own[-1]
            return [] if newest.deleted_by is txn else [newest]

        if self.visibility is Visibility.PINNED and chain.key in txn.pins:
            pinned = txn.pins[chain.key]
            if pinned is None or pinned.deleted_by is txn:
                return []
            return [pinned]

        if self.visibility is Visibility.DIRTY:
            live = [v for v in chain if v.creator.status is not TransactionStatus.ABORTED]
            if not live:
                return []
            newest = live[-1]
            deleter = newest.deleted_by
            if deleter is not None and (deleter is txn or deleter.is_committed):
                return []
            return [newest]

        committed = [v for v in chain if v.creator.committed_before(read_ts)]
        if not committed:
            return []
        newest = max(committed, key=lambda v: v.sort_key())
        deleter = newest.deleted_by
        if deleter is not None and (deleter is txn or deleter.committed_before(read_ts)):
            return []
        return [newest]

    def check_conflict(
        self,
        txn: "Transaction",
        concurrent_committed: Iterable["Transaction"],
    ) -> str | None:
        """
        Validate ``txn`` against transactions that committed after it began.

        Returns:
            A description of the conflict, or None if ``txn`` may commit.
        """
        if not (self.write_write_check or self.read_write_cycle_check):
            return None

        for other in concurrent_committed:
            if other is txn:
                continue
            if self.write_write_check:
                overlap = txn.write_set.keys() & other.write_set.keys()
                if overlap:
                    return (
                        f"rows {sorted(overlap, key=repr)} were updated by "
                        f"transaction {other.id}, committed concurrently"
                    )
            if (
                self.read_write_cycle_check
                and _reads_writes_of(txn, other)
                and _reads_writes_of(other, txn)
            ):
                return (
                    f"read/write dependency cycle with transaction {other.id} "
                    f"(write skew)"
                )
        return None


def _reads_writes_of(reader: "Transaction", writer: "Transaction") -> bool:
    """Return True if ``reader`` read a row or range ``writer`` wrote."""
    if reader.read_set & writer.write_set.keys():
        return True
    for predicate in reader.read_predicates:
        for key, image in writer.write_set.items():
            if predicate.matches(key, image):
                return True
    return False


POLICIES: dict[IsolationLevel, IsolationPolicy] = {
    IsolationLevel.READ_UNCOMMITTED: IsolationPolicy(
        level=IsolationLevel.READ_UNCOMMITTED,
        visibility=Visibility.DIRTY,
        hold_write_locks=False,
    ),
    IsolationLevel.READ_COMMITTED: IsolationPolicy(
        level=IsolationLevel.READ_COMMITTED,
        visibility=Visibility.STATEMENT,
    ),
    IsolationLevel.REPEATABLE_READ: IsolationPolicy(
        level=IsolationLevel.REPEATABLE_READ,
        visibility=Visibility.PINNED,
        first_updater_check=True,
        write_write_check=True,
    ),
    IsolationLevel.SERIALIZABLE: IsolationPolicy(
        level=IsolationLevel.SERIALIZABLE,
        visibility=Visibility.PINNED,
        predicate_locks=True,
        first_updater_check=True,
        write_write_check=True,
        read_write_cycle_check=True,
    ),
}


def policy_for(level: IsolationLevel) -> IsolationPolicy:
    """Return the policy implementing ``level``."""
    return POLICIES[level]
