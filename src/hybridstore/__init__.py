"""hybridstore -- pooled SQLite access to persistent and in-memory tables.

Quick start::

    from hybridstore import open_store

    async def main():
        store = await open_store("entities.db")

        await store.upsert_entity(1, "Andy")
        await store.record_activity(1)
        rows = await store.report_activity().collect()

        await store.close()

For lower-level access, import from submodules::

    from hybridstore.connection import ConnectionFactory, SharedMemoryDataset
    from hybridstore.pool import ConnectionPool
    from hybridstore.statements import Statement, prepare_all, statement_registry
"""

from __future__ import annotations

__version__ = "0.1.0"

# Public API exports
from hybridstore.errors import (
    ContentionTimeout,
    ExecutionError,
    InitializationError,
    StorageError,
    StoreClosedError,
)
from hybridstore.models import ActivityEvent, Entity, PoolStats, ReportRow
from hybridstore.store import ActivityReport, HybridStore, open_store

__all__ = [
    "__version__",
    "HybridStore",
    "ActivityReport",
    "open_store",
    "Entity",
    "ActivityEvent",
    "ReportRow",
    "PoolStats",
    "StorageError",
    "InitializationError",
    "ExecutionError",
    "ContentionTimeout",
    "StoreClosedError",
]
