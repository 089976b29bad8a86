"""Schema setup for the persistent and ephemeral tables.

The persistent ``entity`` table is created only if absent.  The ephemeral
``activity`` table is created unconditionally: its dataset is brand new
every time a store opens, so an existing table means the dataset was reused
and is reported as an error.
"""

from __future__ import annotations

import logging
import sqlite3

from hybridstore.errors import InitializationError
from hybridstore.pool import ConnectionPool

log = logging.getLogger(__name__)

_PERSISTENT_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS main.entity (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    update_count INTEGER NOT NULL DEFAULT 0
);
"""

# Millisecond timestamps keep ordering meaningful under bursts of inserts.
_EPHEMERAL_SCHEMA_SQL = """\
CREATE TABLE {alias}.activity (
    id INTEGER PRIMARY KEY,
    entity_id INTEGER NOT NULL,
    timestamp TEXT NOT NULL DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now'))
);

CREATE INDEX {alias}.idx_activity_entity ON activity(entity_id);
"""


def init_schema(pool: ConnectionPool, alias: str = "mem") -> None:
    """Create both tables on a single pooled connection.

    Runs to completion (committed) before returning, so no other connection
    can see a half-built schema.

    Raises
    ------
    InitializationError
        Either table could not be created.
    """
    with pool.connection() as conn:
        try:
            conn.executescript(_PERSISTENT_SCHEMA_SQL)
            conn.executescript(_EPHEMERAL_SCHEMA_SQL.format(alias=alias))
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise InitializationError(f"Schema creation failed: {exc}") from exc
    log.debug("Schema ready (persistent entity, ephemeral %s.activity)", alias)
