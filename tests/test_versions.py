"""Tests for the multi-version row store."""

import pytest

from isokv.enums import IsolationLevel
from isokv.exceptions import InternalError, NotFoundError, SerializationConflictError
from isokv.locks import LockManager
from isokv.predicates import Predicate
from isokv.transactions import LogicalClock, TransactionManager
from isokv.versions import VersionStore

ROW = ("account", 1)


@pytest.fixture
def clock():
    return LogicalClock()


@pytest.fixture
def store(clock):
    return VersionStore(clock)


@pytest.fixture
def tm(clock, store):
    return TransactionManager(clock, store, LockManager())


def read(store, tm, txn, key=ROW):
    return store.read(key, txn, txn.policy, tm.now())


def committed(store, tm, key, value):
    """Write ``value`` to ``key`` in its own committed transaction."""
    txn = tm.begin(IsolationLevel.READ_COMMITTED)
    store.write(key, value, txn)
    assert tm.commit(txn)
    return txn


class TestWriteAndRead:
    """Tests for basic version visibility."""

    def test_missing_row_reads_none(self, store, tm):
        txn = tm.begin(IsolationLevel.READ_COMMITTED)
        assert read(store, tm, txn) is None

    def test_own_write_is_visible(self, store, tm):
        txn = tm.begin(IsolationLevel.READ_COMMITTED)
        store.write(ROW, 100, txn)
        assert read(store, tm, txn) == 100
        assert txn.write_set == {ROW: 100}

    def test_uncommitted_write_hidden_from_read_committed(self, store, tm):
        writer = tm.begin(IsolationLevel.READ_COMMITTED)
        reader = tm.begin(IsolationLevel.READ_COMMITTED)
        store.write(ROW, 100, writer)
        assert read(store, tm, reader) is None

    def test_uncommitted_write_visible_to_read_uncommitted(self, store, tm):
        writer = tm.begin(IsolationLevel.READ_COMMITTED)
        reader = tm.begin(IsolationLevel.READ_UNCOMMITTED)
        store.write(ROW, 100, writer)
        assert read(store, tm, reader) == 100

    def test_commit_publishes_write(self, store, tm):
        writer = tm.begin(IsolationLevel.READ_COMMITTED)
        reader = tm.begin(IsolationLevel.READ_COMMITTED)
        store.write(ROW, 100, writer)
        tm.commit(writer)
        assert read(store, tm, reader) == 100

    def test_newest_committed_version_wins(self, store, tm):
        committed(store, tm, ROW, 1)
        committed(store, tm, ROW, 2)
        reader = tm.begin(IsolationLevel.READ_COMMITTED)
        assert read(store, tm, reader) == 2
        assert len(store.chain(ROW)) == 2

    def test_read_records_key(self, store, tm):
        txn = tm.begin(IsolationLevel.READ_COMMITTED)
        read(store, tm, txn)
        assert ROW in txn.read_set

    def test_lookup_without_record(self, store, tm):
        committed(store, tm, ROW, 1)
        txn = tm.begin(IsolationLevel.REPEATABLE_READ)
        version = store.lookup(ROW, txn, txn.policy, tm.now(), record=False)
        assert version.value == 1
        assert txn.read_set == set()
        assert txn.pins == {}

    def test_chain_is_a_copy(self, store, tm):
        committed(store, tm, ROW, 1)
        chain = store.chain(ROW)
        chain.clear()
        assert len(store.chain(ROW)) == 1


class TestPinnedReads:
    """Tests for per-row pinning under Repeatable Read."""

    def test_pinned_value_survives_concurrent_commit(self, store, tm):
        committed(store, tm, ROW, 1)
        reader = tm.begin(IsolationLevel.REPEATABLE_READ)
        assert read(store, tm, reader) == 1

        committed(store, tm, ROW, 2)
        assert read(store, tm, reader) == 1

    def test_absent_row_stays_absent(self, store, tm):
        reader = tm.begin(IsolationLevel.REPEATABLE_READ)
        assert read(store, tm, reader) is None
        assert reader.pins == {ROW: None}

        committed(store, tm, ROW, 1)
        assert read(store, tm, reader) is None

    def test_own_write_overrides_pin(self, store, tm):
        committed(store, tm, ROW, 1)
        txn = tm.begin(IsolationLevel.REPEATABLE_READ)
        assert read(store, tm, txn) == 1
        store.write(ROW, 5, txn)
        assert read(store, tm, txn) == 5

    @pytest.mark.parametrize(
        "level", [IsolationLevel.REPEATABLE_READ, IsolationLevel.SERIALIZABLE]
    )
    def test_own_delete_overrides_pin(self, store, tm, level):
        committed(store, tm, ROW, 1)
        txn = tm.begin(level)
        assert read(store, tm, txn) == 1
        store.delete(ROW, txn, txn.policy, tm.now())

        assert read(store, tm, txn) is None
        assert store.scan(Predicate.on("account"), txn, txn.policy, tm.now()) == []
        with pytest.raises(NotFoundError):
            store.delete(ROW, txn, txn.policy, tm.now())


class TestScan:
    """Tests for range reads."""

    def test_scan_filters_by_predicate(self, store, tm):
        committed(store, tm, ("emp", 1), {"dept": "a"})
        committed(store, tm, ("emp", 2), {"dept": "b"})
        committed(store, tm, ("other", 1), {"dept": "a"})

        txn = tm.begin(IsolationLevel.READ_COMMITTED)
        predicate = Predicate.on("emp", dept="a")
        rows = store.scan(predicate, txn, txn.policy, tm.now())

        assert rows == [(("emp", 1), {"dept": "a"})]
        assert txn.read_predicates == [predicate]
        assert ("emp", 1) in txn.read_set
        assert ("emp", 2) not in txn.read_set

    def test_scan_of_unknown_table(self, store, tm):
        txn = tm.begin(IsolationLevel.READ_COMMITTED)
        assert store.scan(Predicate.on("nothing"), txn, txn.policy, tm.now()) == []

    def test_scan_pins_returned_rows(self, store, tm):
        committed(store, tm, ("emp", 1), {"dept": "a", "salary": 1})
        txn = tm.begin(IsolationLevel.REPEATABLE_READ)
        store.scan(Predicate.on("emp", dept="a"), txn, txn.policy, tm.now())

        committed(store, tm, ("emp", 1), {"dept": "a", "salary": 2})
        assert read(store, tm, txn, ("emp", 1)) == {"dept": "a", "salary": 1}


class TestDelete:
    """Tests for deletion markers."""

    def test_delete_hides_row_from_deleter(self, store, tm):
        committed(store, tm, ROW, 1)
        txn = tm.begin(IsolationLevel.READ_COMMITTED)
        store.delete(ROW, txn, txn.policy, tm.now())
        assert read(store, tm, txn) is None
        assert txn.write_set == {ROW: 1}

    def test_uncommitted_delete_invisible_to_others(self, store, tm):
        committed(store, tm, ROW, 1)
        deleter = tm.begin(IsolationLevel.READ_COMMITTED)
        reader = tm.begin(IsolationLevel.READ_COMMITTED)
        store.delete(ROW, deleter, deleter.policy, tm.now())

        assert read(store, tm, reader) == 1
        tm.commit(deleter)
        assert read(store, tm, reader) is None

    def test_delete_missing_row(self, store, tm):
        txn = tm.begin(IsolationLevel.READ_COMMITTED)
        with pytest.raises(NotFoundError) as exc_info:
            store.delete(ROW, txn, txn.policy, tm.now())
        assert exc_info.value.key == ROW

    def test_concurrent_delete_conflicts(self, store, tm):
        committed(store, tm, ROW, 1)
        first = tm.begin(IsolationLevel.READ_UNCOMMITTED)
        second = tm.begin(IsolationLevel.READ_UNCOMMITTED)
        store.delete(ROW, first, first.policy, tm.now())

        with pytest.raises(SerializationConflictError):
            store.delete(ROW, second, second.policy, tm.now())

    def test_abort_clears_marker(self, store, tm):
        committed(store, tm, ROW, 1)
        deleter = tm.begin(IsolationLevel.READ_COMMITTED)
        store.delete(ROW, deleter, deleter.policy, tm.now())
        tm.abort(deleter)

        reader = tm.begin(IsolationLevel.READ_COMMITTED)
        assert read(store, tm, reader) == 1
        assert store.chain(ROW)[0].deleted_by is None


class TestDiscard:
    """Tests for dropping an aborted transaction's versions."""

    def test_abort_removes_versions(self, store, tm):
        committed(store, tm, ROW, 1)
        txn = tm.begin(IsolationLevel.READ_COMMITTED)
        store.write(ROW, 2, txn)
        store.write(("account", 2), 3, txn)
        assert len(store) == 2

        tm.abort(txn)

        assert [v.value for v in store.chain(ROW)] == [1]
        assert store.chain(("account", 2)) == []
        assert len(store) == 1
        assert store.keys("account") == [ROW]


class TestHistory:
    """Tests for change detection and vacuum."""

    def test_changed_since(self, store, tm):
        committed(store, tm, ROW, 1)
        txn = tm.begin(IsolationLevel.REPEATABLE_READ)
        assert not store.changed_since(ROW, txn.start_ts, txn)

        committed(store, tm, ROW, 2)
        assert store.changed_since(ROW, txn.start_ts, txn)

    def test_own_change_does_not_count(self, store, tm):
        txn = tm.begin(IsolationLevel.REPEATABLE_READ)
        store.write(ROW, 1, txn)
        tm.commit(txn)
        assert not store.changed_since(ROW, txn.start_ts, txn)

    def test_latest_committed(self, store, tm):
        assert store.latest_committed(ROW) is None
        committed(store, tm, ROW, 1)
        pending = tm.begin(IsolationLevel.READ_COMMITTED)
        store.write(ROW, 2, pending)
        assert store.latest_committed(ROW).value == 1

    def test_vacuum_keeps_newest(self, store, tm):
        for value in range(3):
            committed(store, tm, ROW, value)
        removed = store.vacuum(tm.now())
        assert removed == 2
        assert [v.value for v in store.chain(ROW)] == [2]

    def test_vacuum_drops_deleted_rows(self, store, tm):
        committed(store, tm, ROW, 1)
        txn = tm.begin(IsolationLevel.READ_COMMITTED)
        store.delete(ROW, txn, txn.policy, tm.now())
        tm.commit(txn)

        assert store.vacuum(tm.now()) == 1
        assert len(store) == 0

    def test_vacuum_keeps_versions_above_horizon(self, store, tm):
        committed(store, tm, ROW, 1)
        horizon = tm.now()
        committed(store, tm, ROW, 2)
        assert store.vacuum(horizon) == 0
        assert len(store.chain(ROW)) == 2

    def test_terminated_transaction_cannot_write(self, store, tm):
        txn = committed(store, tm, ROW, 1)
        with pytest.raises(InternalError):
            store.write(ROW, 2, txn)
        with pytest.raises(InternalError):
            store.delete(ROW, txn, txn.policy, tm.now())
