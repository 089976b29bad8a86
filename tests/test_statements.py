"""Tests for the statement registry and prepared statements."""

from __future__ import annotations

import sqlite3
import threading

import pytest

from hybridstore.errors import (
    ContentionTimeout,
    ExecutionError,
    InitializationError,
    StoreClosedError,
)
from hybridstore.pool import ConnectionPool
from hybridstore.statements import (
    PreparedStatement,
    Statement,
    StatementCache,
    prepare_all,
    statement_registry,
)


@pytest.fixture
def cache(pool: ConnectionPool) -> StatementCache:
    c = prepare_all(pool, statement_registry())
    yield c  # type: ignore[misc]
    c.close()


class TestRegistry:
    """The registry covers every statement exactly once."""

    def test_covers_every_statement(self) -> None:
        assert set(statement_registry()) == set(Statement)

    def test_alias_is_substituted(self) -> None:
        sql = statement_registry("scratch")[Statement.RECORD_ACTIVITY]
        assert "scratch.activity" in sql

    def test_missing_statement_fails_startup(self, pool: ConnectionPool) -> None:
        registry = statement_registry()
        del registry[Statement.REPORT_ACTIVITY]
        with pytest.raises(InitializationError, match="REPORT_ACTIVITY"):
            prepare_all(pool, registry)

    def test_unknown_key_fails_startup(self, pool: ConnectionPool) -> None:
        registry: dict = dict(statement_registry())
        registry["delete_everything"] = "DELETE FROM entity"
        with pytest.raises(InitializationError):
            prepare_all(pool, registry)

    def test_bad_sql_fails_startup(self, pool: ConnectionPool) -> None:
        registry = statement_registry()
        registry[Statement.GET_ENTITY] = "SELECT no_such_column FROM main.entity"
        with pytest.raises(InitializationError) as excinfo:
            prepare_all(pool, registry)
        assert excinfo.value.statement == "get_entity"

    def test_compilation_has_no_side_effects(self, cache: StatementCache, pool: ConnectionPool) -> None:
        with pool.connection() as conn:
            assert conn.execute("SELECT COUNT(*) FROM entity").fetchone()[0] == 0
            assert conn.execute("SELECT COUNT(*) FROM mem.activity").fetchone()[0] == 0


class TestBinding:
    """Named parameters are checked before anything runs."""

    def test_parameters_extracted(self, cache: StatementCache) -> None:
        assert cache[Statement.UPDATE_ENTITY].parameters == {"id", "name"}
        assert cache[Statement.RECORD_ACTIVITY].parameters == {"entity_id"}
        assert cache[Statement.REPORT_ACTIVITY].parameters == frozenset()

    def test_missing_parameter(self, cache: StatementCache) -> None:
        with pytest.raises(ValueError, match="name"):
            cache[Statement.UPDATE_ENTITY].execute({"id": 1})

    def test_unexpected_parameter(self, cache: StatementCache) -> None:
        with pytest.raises(ValueError, match="extra"):
            cache[Statement.RECORD_ACTIVITY].insert({"entity_id": 1, "extra": 2})


class TestInvocation:
    """Execution, queries and error translation."""

    def test_update_of_missing_row_is_zero_not_error(self, cache: StatementCache) -> None:
        assert cache[Statement.UPDATE_ENTITY].execute({"id": 1, "name": "Andy"}) == 0

    def test_insert_or_ignore_twice(self, cache: StatementCache) -> None:
        insert = cache[Statement.INSERT_ENTITY]
        assert insert.execute({"id": 1, "name": "Andy"}) == 1
        assert insert.execute({"id": 1, "name": "Other"}) == 0

    def test_insert_returns_rowid(self, cache: StatementCache) -> None:
        record = cache[Statement.RECORD_ACTIVITY]
        first = record.insert({"entity_id": 5})
        second = record.insert({"entity_id": 5})
        assert second == first + 1

    def test_query_is_lazy(self, cache: StatementCache, pool: ConnectionPool) -> None:
        """No connection is held until the first row is requested."""
        insert = cache[Statement.INSERT_ENTITY]
        for entity_id in (1, 2, 3):
            insert.execute({"id": entity_id, "name": f"e{entity_id}"})

        rows = cache[Statement.LIST_ENTITIES].query(batch_size=1)
        assert pool.stats().in_use == 0
        first = next(rows)
        assert first["id"] == 1
        assert pool.stats().in_use == 1
        assert [row["id"] for row in rows] == [2, 3]
        assert pool.stats().in_use == 0

    def test_closing_query_releases_connection(
        self, cache: StatementCache, pool: ConnectionPool,
    ) -> None:
        cache[Statement.INSERT_ENTITY].execute({"id": 1, "name": "Andy"})
        cache[Statement.INSERT_ENTITY].execute({"id": 2, "name": "Jim"})
        rows = cache[Statement.LIST_ENTITIES].query(batch_size=1)
        next(rows)
        rows.close()  # type: ignore[attr-defined]
        assert pool.stats().in_use == 0

    def test_constraint_violation_is_execution_error(
        self, cache: StatementCache, pool: ConnectionPool,
    ) -> None:
        """A failed call leaves the pool and cache usable."""
        bad = PreparedStatement(
            Statement.INSERT_ENTITY,
            "INSERT INTO main.entity (id, name) VALUES (:id, :name)",
            pool,
        )
        bad.execute({"id": 1, "name": "Andy"})
        with pytest.raises(ExecutionError) as excinfo:
            bad.execute({"id": 1, "name": "Andy"})
        assert not isinstance(excinfo.value, ContentionTimeout)
        assert excinfo.value.statement == "insert_entity"
        assert pool.stats().in_use == 0
        assert cache[Statement.UPDATE_ENTITY].execute({"id": 1, "name": "Andy2"}) == 1

    def test_closed_statement_refuses_calls(self, cache: StatementCache) -> None:
        cache.close()
        assert cache.closed is True
        assert all(statement.closed for statement in cache.values())
        with pytest.raises(StoreClosedError):
            cache[Statement.RECORD_ACTIVITY].insert({"entity_id": 1})


class TestContention:
    """Locked tables are retried up to the busy timeout."""

    def _hold_activity_lock(self, pool: ConnectionPool):
        """Open a write transaction on the ephemeral table and keep it open."""
        conn = pool.checkout()
        conn.execute("INSERT INTO mem.activity (entity_id) VALUES (0)")
        return conn

    def test_retries_until_lock_released(self, cache: StatementCache, pool: ConnectionPool) -> None:
        holder = self._hold_activity_lock(pool)

        def release() -> None:
            holder.commit()
            pool.checkin(holder)

        timer = threading.Timer(0.1, release)
        timer.start()
        try:
            row_id = cache[Statement.RECORD_ACTIVITY].insert({"entity_id": 1})
        finally:
            timer.join()
        assert row_id > 0
        assert len(cache[Statement.LIST_ACTIVITY].fetchall({"entity_id": 1})) == 1

    def test_times_out_while_lock_held(self, cache: StatementCache, pool: ConnectionPool) -> None:
        holder = self._hold_activity_lock(pool)
        record = cache[Statement.RECORD_ACTIVITY]
        record._busy_timeout = 0.1
        try:
            with pytest.raises(ContentionTimeout) as excinfo:
                record.insert({"entity_id": 1})
            assert excinfo.value.statement == "record_activity"
        finally:
            holder.rollback()
            pool.checkin(holder)
        assert record.insert({"entity_id": 1}) > 0

    def test_locked_commit_is_retried(
        self, cache: StatementCache, pool: ConnectionPool, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """A commit that hits a table lock is rolled back and run again."""
        real_checkout, real_checkin = pool.checkout, pool.checkin
        pending = [sqlite3.OperationalError("database table is locked: activity")]

        class LockedOnCommit:
            def __init__(self, conn: sqlite3.Connection) -> None:
                self.conn = conn

            def __getattr__(self, name: str):
                return getattr(self.conn, name)

            def commit(self) -> None:
                if pending:
                    raise pending.pop()
                self.conn.commit()

        monkeypatch.setattr(pool, "checkout", lambda: LockedOnCommit(real_checkout()))
        monkeypatch.setattr(pool, "checkin", lambda conn, **kw: real_checkin(conn.conn, **kw))

        assert cache[Statement.RECORD_ACTIVITY].insert({"entity_id": 1}) > 0
        assert pending == []

        monkeypatch.undo()
        assert len(cache[Statement.LIST_ACTIVITY].fetchall({"entity_id": 1})) == 1
        assert pool.stats().in_use == 0
