"""Shared fixtures and helpers for the hybridstore test suite."""

from __future__ import annotations

from pathlib import Path

import pytest

from hybridstore.config import HybridStoreConfig, PoolConfig
from hybridstore.connection import ConnectionFactory, SharedMemoryDataset
from hybridstore.pool import ConnectionPool
from hybridstore.schema import init_schema
from hybridstore.store import HybridStore


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def config(tmp_path: Path) -> HybridStoreConfig:
    """Config pointing at a temp database with short, test-friendly bounds."""
    return HybridStoreConfig(
        db_path=tmp_path / "hybrid.db",
        busy_timeout_ms=5_000,
        report_batch_size=2,
        pool=PoolConfig(max_open=8, max_idle=4, checkout_timeout=5.0),
    )


@pytest.fixture
async def store(config: HybridStoreConfig) -> HybridStore:
    """Provide an initialized HybridStore backed by a temp database.

    Uses a fresh SQLite file in ``tmp_path`` so tests never touch the
    configured database under ``~/.hybridstore``.
    """
    s = HybridStore(config=config)
    await s.initialize()
    yield s  # type: ignore[misc]
    await s.close()


@pytest.fixture
def factory(tmp_path: Path) -> ConnectionFactory:
    """A connection factory with its own shared dataset."""
    return ConnectionFactory(
        tmp_path / "pool.db",
        SharedMemoryDataset(),
        busy_timeout_ms=2_000,
    )


@pytest.fixture
def pool(factory: ConnectionFactory) -> ConnectionPool:
    """A pool with the schema already created."""
    p = ConnectionPool(factory, max_open=4, max_idle=2, checkout_timeout=2.0)
    init_schema(p, alias=factory.dataset.alias)
    yield p  # type: ignore[misc]
    p.close()


# ---------------------------------------------------------------------------
# Shared test helpers
# ---------------------------------------------------------------------------


def table_names(conn, schema: str = "main") -> set[str]:
    """Return the table names defined in *schema* on *conn*."""
    rows = conn.execute(
        f"SELECT name FROM {schema}.sqlite_master WHERE type = 'table'"
    ).fetchall()
    return {row[0] for row in rows}
