"""Named, parameterized statements compiled once and shared by all callers.

Every operation the store performs is a member of :class:`Statement`.  The
registry maps each member to SQL text with *named* placeholders, and
:func:`prepare_all` refuses to start unless every member has an entry that
compiles.  A missing statement is therefore a startup error, never a lookup
failure in the middle of a run.

A :class:`PreparedStatement` is not bound to a connection.  Each invocation
checks out its own pooled connection, so one handle can be used from any
number of threads at once.  SQLite keeps the compiled form in each
connection's statement cache, so the cost of compilation is paid once per
connection rather than once per call.

Lock handling:
    The persistent file is covered by SQLite's busy timeout.  Tables in the
    shared in-memory dataset use shared-cache table locks, which fail
    immediately instead of waiting, so invocations that hit either kind of
    lock are rolled back and retried with backoff until the same busy
    timeout has elapsed.
"""

from __future__ import annotations

import enum
import logging
import re
import sqlite3
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from typing import Any, TypeVar

from hybridstore.errors import (
    ContentionTimeout,
    ExecutionError,
    InitializationError,
    StoreClosedError,
)
from hybridstore.pool import ConnectionPool

_T = TypeVar("_T")

log = logging.getLogger(__name__)

_PARAM_RE = re.compile(r"(?<![:\w]):([A-Za-z_]\w*)")

_MIN_BACKOFF = 0.001
_MAX_BACKOFF = 0.05


class Statement(enum.Enum):
    """Every statement the store knows how to run."""

    UPDATE_ENTITY = "update_entity"
    INSERT_ENTITY = "insert_entity"
    GET_ENTITY = "get_entity"
    LIST_ENTITIES = "list_entities"
    RECORD_ACTIVITY = "record_activity"
    LIST_ACTIVITY = "list_activity"
    COUNT_ACTIVITY = "count_activity"
    REPORT_ACTIVITY = "report_activity"


def statement_registry(alias: str = "mem") -> dict[Statement, str]:
    """Return the SQL for every :class:`Statement`.

    *alias* is the schema name the shared in-memory dataset is attached as.
    """
    return {
        Statement.UPDATE_ENTITY: """
            UPDATE main.entity SET
                name = :name,
                update_count = update_count + 1
            WHERE id = :id
        """,
        Statement.INSERT_ENTITY: """
            INSERT OR IGNORE INTO main.entity (id, name)
            VALUES (:id, :name)
        """,
        Statement.GET_ENTITY: """
            SELECT id, name, update_count
            FROM main.entity
            WHERE id = :id
        """,
        Statement.LIST_ENTITIES: """
            SELECT id, name, update_count
            FROM main.entity
            ORDER BY id
        """,
        Statement.RECORD_ACTIVITY: f"""
            INSERT INTO {alias}.activity (entity_id)
            VALUES (:entity_id)
        """,
        Statement.LIST_ACTIVITY: f"""
            SELECT id, entity_id, timestamp
            FROM {alias}.activity
            WHERE entity_id = :entity_id
            ORDER BY id
        """,
        Statement.COUNT_ACTIVITY: f"""
            SELECT COUNT(*) AS event_count
            FROM {alias}.activity
        """,
        # LEFT OUTER so events for unknown entities still show up, unnamed.
        Statement.REPORT_ACTIVITY: f"""
            SELECT
                e.name           AS entity_name,
                a.entity_id      AS entity_id,
                MAX(a.timestamp) AS latest_timestamp,
                COUNT(*)         AS event_count
            FROM {alias}.activity AS a
            LEFT OUTER JOIN main.entity AS e
                ON a.entity_id = e.id
            GROUP BY a.entity_id
            ORDER BY latest_timestamp ASC, a.entity_id ASC
        """,
    }


def _is_contention(exc: sqlite3.Error) -> bool:
    """True for "database is locked", "database table is locked" and kin."""
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    message = str(exc).lower()
    return "locked" in message or "busy" in message


class PreparedStatement:
    """A compiled, reusable statement.

    Parameters
    ----------
    kind:
        Which statement this is.
    sql:
        Statement text using ``:name`` placeholders.
    pool:
        Pool each invocation checks a connection out of.
    """

    def __init__(self, kind: Statement, sql: str, pool: ConnectionPool) -> None:
        self.kind = kind
        self.sql = sql
        self.parameters: frozenset[str] = frozenset(_PARAM_RE.findall(sql))
        self._pool = pool
        self._busy_timeout = pool.factory.busy_timeout_ms / 1000
        self._closed = False

    @property
    def name(self) -> str:
        return self.kind.value

    @property
    def closed(self) -> bool:
        return self._closed

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<PreparedStatement {self.name} ({state})>"

    # ------------------------------------------------------------------
    # Compilation / binding
    # ------------------------------------------------------------------

    def compile(self, conn: sqlite3.Connection) -> None:
        """Compile the statement on *conn* without running it.

        ``EXPLAIN`` goes through the full prepare step (syntax, table and
        column resolution) but never touches any rows.
        """
        conn.execute(f"EXPLAIN {self.sql}", dict.fromkeys(self.parameters)).fetchall()

    def bind(self, params: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """Check *params* against the statement's placeholders.

        Raises
        ------
        ValueError
            A placeholder has no value or a value has no placeholder.
        """
        bound = dict(params or {})
        missing = self.parameters - bound.keys()
        unexpected = bound.keys() - self.parameters
        if missing or unexpected:
            raise ValueError(
                f"{self.name}: missing parameters {sorted(missing)}, "
                f"unexpected parameters {sorted(unexpected)}"
            )
        return bound

    # ------------------------------------------------------------------
    # Invocation
    # ------------------------------------------------------------------

    def execute(self, params: Mapping[str, Any] | None = None) -> int:
        """Run a write statement and commit it.

        Returns
        -------
        int
            Number of rows changed.  Zero is a valid outcome.
        """
        return self._run_write(self.bind(params), lambda cursor: cursor.rowcount)

    def insert(self, params: Mapping[str, Any] | None = None) -> int:
        """Run an INSERT and commit it.

        Returns
        -------
        int
            The ``lastrowid`` of the inserted row.
        """
        return self._run_write(self.bind(params), lambda cursor: cursor.lastrowid or 0)

    def fetchall(self, params: Mapping[str, Any] | None = None) -> list[sqlite3.Row]:
        """Run a query and return every row."""
        return list(self.query(params))

    def query(
        self,
        params: Mapping[str, Any] | None = None,
        *,
        batch_size: int = 256,
    ) -> Iterator[sqlite3.Row]:
        """Return a lazy, one-shot iterator over the query's rows.

        Nothing runs until the first row is requested.  The iterator holds a
        pooled connection from then until it is exhausted or closed.
        """
        return self._iterate(self.bind(params), batch_size)

    def _iterate(self, bound: dict[str, Any], batch_size: int) -> Iterator[sqlite3.Row]:
        conn, cursor = self._open_cursor(bound)
        try:
            while True:
                try:
                    rows = cursor.fetchmany(batch_size)
                except sqlite3.Error as exc:
                    raise ExecutionError(str(exc), statement=self.name) from exc
                if not rows:
                    return
                yield from rows
        finally:
            cursor.close()
            self._pool.checkin(conn)

    def _run_write(self, bound: dict[str, Any], result: Callable[[sqlite3.Cursor], _T]) -> _T:
        def write(conn: sqlite3.Connection) -> _T:
            value = result(conn.execute(self.sql, bound))
            conn.commit()
            return value

        conn, value = self._attempt(write)
        self._pool.checkin(conn)
        return value

    def _open_cursor(self, bound: dict[str, Any]) -> tuple[sqlite3.Connection, sqlite3.Cursor]:
        return self._attempt(lambda conn: conn.execute(self.sql, bound))

    def _attempt(
        self,
        work: Callable[[sqlite3.Connection], _T],
    ) -> tuple[sqlite3.Connection, _T]:
        """Run *work* on a pooled connection, retrying while locked.

        A failed attempt, commit included, is rolled back before the retry.
        On success the connection stays checked out and is returned with the
        result of *work*; the caller must check it back in.
        """
        if self._closed:
            raise StoreClosedError("Statement is closed", statement=self.name)

        deadline = time.monotonic() + self._busy_timeout
        delay = _MIN_BACKOFF
        retries = 0
        while True:
            try:
                conn = self._pool.checkout()
            except InitializationError as exc:
                raise ExecutionError(exc.message, statement=self.name) from exc

            try:
                return conn, work(conn)
            except sqlite3.Error as exc:
                discard = not self._rollback(conn)
                self._pool.checkin(conn, discard=discard)
                if not _is_contention(exc) or time.monotonic() >= deadline:
                    if retries:
                        log.debug("%s: giving up after %d retries", self.name, retries)
                    raise self._translate(exc) from exc

            retries += 1
            log.debug("%s: locked, retry %d in %.3fs", self.name, retries, delay)
            time.sleep(max(0.0, min(delay, deadline - time.monotonic())))
            delay = min(delay * 2, _MAX_BACKOFF)

    def _translate(self, exc: sqlite3.Error) -> ExecutionError:
        if _is_contention(exc):
            return ContentionTimeout(
                f"Lock not released within {self._busy_timeout:.1f}s: {exc}",
                statement=self.name,
            )
        return ExecutionError(str(exc), statement=self.name)

    def _rollback(self, conn: sqlite3.Connection) -> bool:
        try:
            conn.rollback()
            return True
        except sqlite3.Error as exc:
            log.warning("%s: rollback failed, discarding connection: %s", self.name, exc)
            return False

    def close(self) -> None:
        """Refuse further invocations.

        The compiled forms live in each pooled connection's statement cache
        and are finalized when the pool closes those connections.
        """
        self._closed = True


class StatementCache(Mapping[Statement, PreparedStatement]):
    """Read-only mapping from :class:`Statement` to its prepared handle."""

    def __init__(self, statements: dict[Statement, PreparedStatement]) -> None:
        self._statements = statements
        self._lock = threading.Lock()
        self._closed = False

    def __getitem__(self, kind: Statement) -> PreparedStatement:
        return self._statements[kind]

    def __iter__(self) -> Iterator[Statement]:
        return iter(self._statements)

    def __len__(self) -> int:
        return len(self._statements)

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Release every statement, last registered first."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        for statement in reversed(list(self._statements.values())):
            statement.close()
        log.debug("Released %d prepared statements", len(self._statements))


def prepare_all(
    pool: ConnectionPool,
    registry: Mapping[Statement, str],
) -> StatementCache:
    """Compile every registered statement once against *pool*.

    Raises
    ------
    InitializationError
        The registry does not cover :class:`Statement` exactly, or a
        statement fails to compile.
    """
    missing = [kind.name for kind in Statement if kind not in registry]
    unknown = [repr(key) for key in registry if not isinstance(key, Statement)]
    if missing or unknown:
        raise InitializationError(
            f"Statement registry mismatch: missing {missing}, unknown {unknown}"
        )

    statements = {kind: PreparedStatement(kind, registry[kind], pool) for kind in Statement}
    with pool.connection() as conn:
        for statement in statements.values():
            try:
                statement.compile(conn)
            except sqlite3.Error as exc:
                raise InitializationError(
                    f"Compilation failed: {exc}", statement=statement.name,
                ) from exc
            log.debug("Compiled %s", statement.name)
    return StatementCache(statements)
