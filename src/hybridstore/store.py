"""Public data access API for the hybrid store.

Combines a persistent SQLite file (entities) with a shared in-memory
dataset (activity events) behind one bounded connection pool.  All public
methods are async-friendly, wrapping synchronous sqlite3 calls via
:func:`anyio.to_thread.run_sync`, so many tasks can write concurrently
without blocking the event loop.

Lifecycle:
    - :meth:`HybridStore.initialize` creates the dataset, pool, schema and
      prepared statements, in that order, and fails as a whole.
    - :meth:`HybridStore.close` releases the prepared statements, then the
      pool (which drops the dataset).  Activity recorded by this store is
      gone afterwards; entities stay on disk.

Usage::

    from hybridstore import open_store

    store = await open_store("entities.db")
    await store.upsert_entity(1, "Andy")
    await store.record_activity(1)
    async with store.report_activity() as report:
        async for row in report:
            print(row.entity_name, row.event_count)
    await store.close()
"""

from __future__ import annotations

import itertools
import logging
import sqlite3
import threading
from collections import deque
from collections.abc import Iterator
from pathlib import Path

import anyio

from hybridstore.config import HybridStoreConfig, get_config
from hybridstore.connection import ConnectionFactory, SharedMemoryDataset
from hybridstore.errors import InitializationError, StorageError, StoreClosedError
from hybridstore.models import ActivityEvent, Entity, PoolStats, ReportRow, parse_timestamp
from hybridstore.pool import ConnectionPool
from hybridstore.schema import init_schema
from hybridstore.statements import (
    PreparedStatement,
    Statement,
    StatementCache,
    prepare_all,
    statement_registry,
)

log = logging.getLogger(__name__)


class ActivityReport:
    """Lazy, one-shot async iterator over :class:`ReportRow`.

    The report query runs when the first row is requested and reflects the
    state visible at that moment.  Rows are fetched in batches; the pooled
    connection is released as soon as the last batch is read, or on
    :meth:`aclose`.  A report cannot be iterated twice; call
    :meth:`HybridStore.report_activity` again for fresh results.
    """

    def __init__(self, statement: PreparedStatement, batch_size: int = 256) -> None:
        self._statement = statement
        self._batch_size = max(1, batch_size)
        self._rows: Iterator[sqlite3.Row] | None = None
        self._buffer: deque[ReportRow] = deque()
        self._started = False
        self._exhausted = False

    def __aiter__(self) -> ActivityReport:
        if self._started:
            raise RuntimeError(
                "ActivityReport can only be iterated once; "
                "call report_activity() again for fresh results"
            )
        self._started = True
        return self

    async def __anext__(self) -> ReportRow:
        if not self._buffer:
            if self._exhausted:
                raise StopAsyncIteration
            batch = await anyio.to_thread.run_sync(self._next_batch)
            if len(batch) < self._batch_size:
                self._exhausted = True
            if not batch:
                raise StopAsyncIteration
            self._buffer.extend(batch)
        return self._buffer.popleft()

    def _next_batch(self) -> list[ReportRow]:
        if self._rows is None:
            self._rows = self._statement.query(batch_size=self._batch_size)
        batch = [
            ReportRow.from_row(row)
            for row in itertools.islice(self._rows, self._batch_size)
        ]
        if len(batch) < self._batch_size:
            self._release()
        return batch

    def _release(self) -> None:
        rows, self._rows = self._rows, None
        if rows is not None:
            rows.close()  # type: ignore[attr-defined]

    async def collect(self) -> list[ReportRow]:
        """Drain the report into a list."""
        return [row async for row in self]

    async def aclose(self) -> None:
        """Stop iterating and give the connection back to the pool."""
        self._exhausted = True
        self._buffer.clear()
        await anyio.to_thread.run_sync(self._release)

    async def __aenter__(self) -> ActivityReport:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()


class HybridStore:
    """Pooled access to persistent entities and ephemeral activity.

    Parameters
    ----------
    db_path:
        Filesystem path of the persistent database.  Defaults to the
        configured ``db_path``.
    config:
        Configuration to use instead of :func:`get_config`.
    """

    def __init__(
        self,
        db_path: str | Path | None = None,
        *,
        config: HybridStoreConfig | None = None,
    ) -> None:
        cfg = config or get_config()
        self._config = cfg
        self._db_path: Path = Path(db_path).expanduser() if db_path else cfg.db_path
        self._dataset: SharedMemoryDataset | None = None
        self._pool: ConnectionPool | None = None
        self._statements: StatementCache | None = None
        self._state_lock = threading.Lock()
        self._closed = False

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def db_path(self) -> Path:
        """Filesystem path of the persistent database."""
        return self._db_path

    @property
    def dataset_name(self) -> str | None:
        """Name of the shared in-memory dataset, once open."""
        return self._dataset.name if self._dataset else None

    @property
    def is_open(self) -> bool:
        return self._statements is not None and not self._closed

    @property
    def stats(self) -> PoolStats:
        """Current pool bookkeeping."""
        if self._pool is None:
            raise StoreClosedError("Store is not open")
        return self._pool.stats()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Open the pool, create the schema and prepare every statement.

        Calling it on a store that is already open does nothing.

        Raises
        ------
        InitializationError
            Any step failed; everything opened so far has been released.
        StoreClosedError
            The store was closed; create a new :class:`HybridStore` instead.
        """
        await anyio.to_thread.run_sync(self._initialize_sync)

    def _initialize_sync(self) -> None:
        with self._state_lock:
            if self._closed:
                raise StoreClosedError("Store was closed; open a new one")
            if self._statements is not None:
                return

            cfg = self._config
            dataset = SharedMemoryDataset(alias=cfg.memory_alias)
            factory = ConnectionFactory(
                self._db_path,
                dataset,
                busy_timeout_ms=cfg.busy_timeout_ms,
                cached_statements=cfg.cached_statements,
            )
            pool = ConnectionPool(
                factory,
                max_open=cfg.pool.max_open,
                max_idle=cfg.pool.max_idle,
                checkout_timeout=cfg.pool.checkout_timeout,
            )
            try:
                init_schema(pool, alias=dataset.alias)
                statements = prepare_all(pool, statement_registry(dataset.alias))
            except InitializationError:
                pool.close()
                raise
            except StorageError as exc:
                pool.close()
                raise InitializationError(f"Store startup failed: {exc}") from exc

            self._dataset = dataset
            self._pool = pool
            self._statements = statements

        log.info(
            "Hybrid store opened at %s (dataset=%s, max_open=%d, max_idle=%d)",
            self._db_path,
            dataset.name,
            cfg.pool.max_open,
            cfg.pool.max_idle,
        )

    async def close(self) -> None:
        """Release every prepared statement, then close the pool.

        Closing an already closed store only logs.
        """
        await anyio.to_thread.run_sync(self._close_sync)

    def _close_sync(self) -> None:
        with self._state_lock:
            if self._closed:
                log.debug("Hybrid store at %s already closed", self._db_path)
                return
            self._closed = True
            statements, self._statements = self._statements, None
            pool = self._pool

        if statements is not None:
            statements.close()
        if pool is not None:
            pool.close()
        log.info("Hybrid store at %s closed", self._db_path)

    async def __aenter__(self) -> HybridStore:
        await self.initialize()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    def _require(self, kind: Statement) -> PreparedStatement:
        statements = self._statements
        if statements is None or self._closed:
            raise StoreClosedError("Store is not open")
        return statements[kind]

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    async def upsert_entity(self, entity_id: int, name: str) -> None:
        """Create entity *entity_id* or rename it and bump its update count.

        Runs an UPDATE followed by an INSERT OR IGNORE.  Exactly one of them
        changes a row; neither changing one is not an error.
        """
        await anyio.to_thread.run_sync(self._upsert_entity_sync, entity_id, name)

    def _upsert_entity_sync(self, entity_id: int, name: str) -> None:
        params = {"id": entity_id, "name": name}
        updated = self._require(Statement.UPDATE_ENTITY).execute(params)
        inserted = self._require(Statement.INSERT_ENTITY).execute(params)
        log.debug(
            "Upserted entity %d (updated=%d, inserted=%d)", entity_id, updated, inserted,
        )

    async def get_entity(self, entity_id: int) -> Entity | None:
        """Return the entity with *entity_id*, or ``None``."""
        rows = await anyio.to_thread.run_sync(
            lambda: self._require(Statement.GET_ENTITY).fetchall({"id": entity_id}),
        )
        return Entity.from_row(rows[0]) if rows else None

    async def list_entities(self) -> list[Entity]:
        """Return every entity ordered by id."""
        rows = await anyio.to_thread.run_sync(
            lambda: self._require(Statement.LIST_ENTITIES).fetchall(),
        )
        return [Entity.from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Activity
    # ------------------------------------------------------------------

    async def record_activity(self, entity_id: int) -> int:
        """Record one activity event for *entity_id* and return its id.

        *entity_id* is not checked against existing entities.
        """
        return await anyio.to_thread.run_sync(
            lambda: self._require(Statement.RECORD_ACTIVITY).insert({"entity_id": entity_id}),
        )

    async def list_activity(self, entity_id: int) -> list[ActivityEvent]:
        """Return the events recorded for *entity_id*, oldest first."""
        rows = await anyio.to_thread.run_sync(
            lambda: self._require(Statement.LIST_ACTIVITY).fetchall({"entity_id": entity_id}),
        )
        return [
            ActivityEvent(
                id=row["id"],
                entity_id=row["entity_id"],
                timestamp=parse_timestamp(row["timestamp"]),
            )
            for row in rows
        ]

    async def count_activity(self) -> int:
        """Return the number of events recorded since the store opened."""
        rows = await anyio.to_thread.run_sync(
            lambda: self._require(Statement.COUNT_ACTIVITY).fetchall(),
        )
        return int(rows[0]["event_count"])

    def report_activity(self) -> ActivityReport:
        """Aggregate activity per entity id, oldest latest-event first.

        Events whose entity was never upserted are reported with
        ``entity_name=None``.  The query runs lazily, when the returned
        report is first iterated.
        """
        return ActivityReport(
            self._require(Statement.REPORT_ACTIVITY),
            batch_size=self._config.report_batch_size,
        )


async def open_store(
    db_path: str | Path | None = None,
    *,
    config: HybridStoreConfig | None = None,
) -> HybridStore:
    """Create and initialize a :class:`HybridStore`."""
    store = HybridStore(db_path, config=config)
    await store.initialize()
    return store
