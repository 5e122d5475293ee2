"""Tests for the Session client surface."""

import pytest

from isokv import (
    DuplicateKeyError,
    Engine,
    EngineClosedError,
    InvalidTransactionStateError,
    IsolationLevel,
    LockTimeoutError,
    NotFoundError,
    Predicate,
    SessionClosedError,
    TransactionAbortedError,
)

ACCOUNT = ("account", 1)


@pytest.fixture
def engine():
    """Engine with a short lock wait so blocked statements fail fast."""
    engine = Engine(lock_wait_timeout=0.2)
    yield engine
    engine.close()


@pytest.fixture
def funded(engine):
    """Engine holding one account with a balance of 500."""
    with engine.open() as session:
        session.insert(ACCOUNT, {"balance": 500})
    return engine


def balance(engine):
    with engine.open() as session:
        return session.read(ACCOUNT)["balance"]


class TestSessionLifecycle:
    """Tests for opening, closing and transaction boundaries."""

    def test_defaults(self, engine):
        session = engine.open()
        assert session.isolation_level is IsolationLevel.READ_COMMITTED
        assert session.autocommit
        assert not session.in_transaction
        assert session.transaction is None
        assert not session.closed

    def test_names(self, engine):
        assert engine.open(name="teller").name == "teller"
        assert engine.open().name.startswith("session-")
        assert "teller" in repr(engine.open(name="teller"))

    def test_lazy_begin(self, funded):
        session = funded.open(autocommit=False)
        assert not session.in_transaction
        session.read(ACCOUNT)
        assert session.in_transaction
        assert session.transaction.isolation_level is IsolationLevel.READ_COMMITTED

    def test_autocommit_ends_each_statement(self, funded):
        session = funded.open()
        session.write(ACCOUNT, {"balance": 1})
        assert not session.in_transaction
        assert balance(funded) == 1

    def test_manual_commit(self, funded):
        session = funded.open(autocommit=False)
        session.write(ACCOUNT, {"balance": 1})
        assert balance(funded) == 500
        session.commit()
        assert not session.in_transaction
        assert balance(funded) == 1

    def test_rollback(self, funded):
        session = funded.open(autocommit=False)
        session.write(ACCOUNT, {"balance": 1})
        session.rollback()
        assert balance(funded) == 500

    def test_commit_without_transaction_is_noop(self, engine):
        session = engine.open(autocommit=False)
        session.commit()
        session.rollback()
        assert not session.in_transaction

    def test_close_rolls_back(self, funded):
        session = funded.open(autocommit=False)
        session.write(ACCOUNT, {"balance": 1})
        session.close()
        session.close()
        assert session.closed
        assert balance(funded) == 500

    def test_context_manager_closes(self, engine):
        with engine.open() as session:
            pass
        assert session.closed

    def test_closed_session_rejects_statements(self, engine):
        session = engine.open()
        session.close()
        with pytest.raises(SessionClosedError):
            session.read(ACCOUNT)
        with pytest.raises(SessionClosedError):
            session.commit()

    def test_closed_engine_rejects_statements(self):
        engine = Engine()
        session = engine.open()
        engine.close()
        assert session.closed
        with pytest.raises(EngineClosedError):
            engine.open()


class TestSessionSettings:
    """Tests for isolation level and autocommit switches."""

    def test_isolation_level_between_transactions(self, funded):
        session = funded.open(autocommit=False)
        session.isolation_level = IsolationLevel.SERIALIZABLE
        session.read(ACCOUNT)
        assert session.transaction.isolation_level is IsolationLevel.SERIALIZABLE

    def test_isolation_level_mid_transaction(self, funded):
        session = funded.open(autocommit=False)
        session.read(ACCOUNT)
        with pytest.raises(InvalidTransactionStateError):
            session.isolation_level = IsolationLevel.SERIALIZABLE
        session.commit()
        session.isolation_level = IsolationLevel.SERIALIZABLE
        assert session.isolation_level is IsolationLevel.SERIALIZABLE

    def test_enabling_autocommit_commits(self, funded):
        session = funded.open(autocommit=False)
        session.write(ACCOUNT, {"balance": 1})
        session.autocommit = True
        assert not session.in_transaction
        assert balance(funded) == 1


class TestStatements:
    """Tests for read, scan, insert, update and delete."""

    def test_read_missing(self, engine):
        assert engine.open().read(ACCOUNT) is None

    def test_write_upserts(self, engine):
        session = engine.open()
        session.write(ACCOUNT, {"balance": 1})
        session.write(ACCOUNT, {"balance": 2})
        assert session.read(ACCOUNT) == {"balance": 2}

    def test_insert_duplicate(self, funded):
        session = funded.open()
        with pytest.raises(DuplicateKeyError) as exc_info:
            session.insert(ACCOUNT, {"balance": 0})
        assert exc_info.value.key == ACCOUNT
        assert balance(funded) == 500

    def test_statement_error_keeps_transaction(self, funded):
        session = funded.open(autocommit=False)
        session.write(("account", 2), {"balance": 10})
        with pytest.raises(DuplicateKeyError):
            session.insert(("account", 2), {"balance": 20})

        assert session.in_transaction
        session.commit()
        with funded.open() as check:
            assert check.read(("account", 2)) == {"balance": 10}

    def test_statement_error_in_autocommit(self, engine):
        session = engine.open()
        with pytest.raises(NotFoundError):
            session.update(ACCOUNT, lambda row: row)
        assert not session.in_transaction

    def test_failing_update_function_releases_row(self, funded):
        session = funded.open()
        with pytest.raises(KeyError):
            session.update(ACCOUNT, lambda row: row["missing"])
        assert not session.in_transaction
        assert funded.locks.holders(ACCOUNT) == {}

    def test_update(self, funded):
        session = funded.open()
        new = session.update(ACCOUNT, lambda row: {"balance": row["balance"] - 250})
        assert new == {"balance": 250}
        assert balance(funded) == 250

    def test_delete(self, funded):
        session = funded.open()
        session.delete(ACCOUNT)
        assert session.read(ACCOUNT) is None
        with pytest.raises(NotFoundError):
            session.delete(ACCOUNT)

    def test_insert_after_delete(self, funded):
        session = funded.open(autocommit=False)
        session.delete(ACCOUNT)
        session.insert(ACCOUNT, {"balance": 0})
        session.commit()
        assert balance(funded) == 0

    def test_scan(self, engine):
        session = engine.open()
        session.insert(("emp", 1), {"dept": "a"})
        session.insert(("emp", 2), {"dept": "b"})
        session.insert(("emp", 3), {"dept": "a"})

        rows = session.scan(Predicate.on("emp", dept="a"))
        assert sorted(key for key, _ in rows) == [("emp", 1), ("emp", 3)]

    def test_scan_with_condition(self, engine):
        session = engine.open()
        for pk, quantity in enumerate([0, 3, 5]):
            session.insert(("items", pk), {"quantity": quantity})

        rows = session.scan(Predicate.on("items", lambda row: row["quantity"] > 2))
        assert len(rows) == 2


@pytest.mark.parametrize("level", list(IsolationLevel))
class TestOwnDelete:
    """Tests for a transaction reading back a row it deleted."""

    def test_deleted_row_reads_none(self, funded, level):
        session = funded.open(level, autocommit=False)
        assert session.read(ACCOUNT) == {"balance": 500}
        session.delete(ACCOUNT)
        assert session.read(ACCOUNT) is None

    def test_second_delete_raises(self, funded, level):
        session = funded.open(level, autocommit=False)
        session.read(ACCOUNT)
        session.delete(ACCOUNT)
        with pytest.raises(NotFoundError):
            session.delete(ACCOUNT)
        assert session.in_transaction

    def test_scan_leaves_out_deleted_row(self, funded, level):
        session = funded.open(level, autocommit=False)
        session.insert(("account", 2), {"balance": 7})
        assert len(session.scan(Predicate.on("account"))) == 2

        session.delete(ACCOUNT)
        assert session.scan(Predicate.on("account")) == [(("account", 2), {"balance": 7})]

    def test_reinsert_after_delete(self, funded, level):
        session = funded.open(level, autocommit=False)
        session.read(ACCOUNT)
        session.delete(ACCOUNT)
        session.insert(ACCOUNT, {"balance": 0})
        assert session.read(ACCOUNT) == {"balance": 0}

        session.commit()
        assert balance(funded) == 0


class TestAborts:
    """Tests for engine-initiated aborts reaching the session."""

    def test_lock_timeout_aborts_transaction(self, funded):
        holder = funded.open(autocommit=False)
        holder.write(ACCOUNT, {"balance": 0})

        blocked = funded.open(autocommit=False)
        blocked.write(("account", 2), {"balance": 99})
        with pytest.raises(LockTimeoutError):
            blocked.write(ACCOUNT, {"balance": 1})

        assert not blocked.in_transaction
        holder.commit()
        with funded.open() as check:
            assert check.read(("account", 2)) is None
            assert check.read(ACCOUNT) == {"balance": 0}

    def test_session_usable_after_abort(self, funded):
        holder = funded.open(autocommit=False)
        holder.write(ACCOUNT, {"balance": 0})
        blocked = funded.open(autocommit=False)
        with pytest.raises(LockTimeoutError):
            blocked.write(ACCOUNT, {"balance": 1})
        holder.rollback()

        blocked.write(ACCOUNT, {"balance": 1})
        blocked.commit()
        assert balance(funded) == 1

    def test_external_abort_reported(self, funded):
        session = funded.open(autocommit=False)
        session.read(ACCOUNT)
        funded.transactions.abort(session.transaction, reason="operator")

        with pytest.raises(TransactionAbortedError, match="operator"):
            session.read(ACCOUNT)
        assert session.read(ACCOUNT) == {"balance": 500}

    def test_commit_of_externally_aborted_transaction(self, funded):
        session = funded.open(autocommit=False)
        session.write(ACCOUNT, {"balance": 1})
        funded.transactions.abort(session.transaction)

        with pytest.raises(TransactionAbortedError):
            session.commit()
        assert balance(funded) == 500


class TestTransactionScope:
    """Tests for Engine.transaction()."""

    def test_commits_on_success(self, funded):
        with funded.transaction(IsolationLevel.REPEATABLE_READ) as session:
            assert session.isolation_level is IsolationLevel.REPEATABLE_READ
            session.update(ACCOUNT, lambda row: {"balance": row["balance"] + 1})
        assert session.closed
        assert balance(funded) == 501

    def test_rolls_back_on_error(self, funded):
        with pytest.raises(RuntimeError):
            with funded.transaction() as session:
                session.write(ACCOUNT, {"balance": 0})
                raise RuntimeError("boom")
        assert session.closed
        assert balance(funded) == 500
