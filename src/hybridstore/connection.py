"""Connection factory and the shared in-memory dataset.

Every connection handed out by the pool is a connection to the persistent
database file with one extra database attached: a named in-memory database
opened in shared-cache mode.  Because every connection attaches the *same*
name, they all see one logical set of ephemeral tables instead of private
copies.

Dataset lifecycle:
    - The dataset is created by the first :meth:`SharedMemoryDataset.attach`,
      which also opens an anchor connection to it.  SQLite frees a shared
      in-memory database when its last connection closes; the anchor keeps it
      alive while the pool has no idle connections.
    - :meth:`SharedMemoryDataset.close` drops the anchor.  The data is gone
      once the last pooled connection closes too.
    - Default names are unique per instance, so a store reopened in the same
      process always starts with an empty dataset.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from pathlib import Path

from hybridstore.errors import InitializationError

log = logging.getLogger(__name__)


class SharedMemoryDataset:
    """A named in-memory database shared by every connection of one pool.

    Parameters
    ----------
    name:
        Dataset identifier.  Connections attaching the same name within one
        process share the data.  Defaults to a fresh unique name.
    alias:
        Schema name the dataset is attached under (``mem.activity``).
    """

    def __init__(self, name: str | None = None, alias: str = "mem") -> None:
        if not alias.isidentifier():
            raise ValueError(f"Invalid schema alias: {alias!r}")
        self._name = name or f"hybridstore-{uuid.uuid4().hex}"
        self._alias = alias
        self._anchor: sqlite3.Connection | None = None
        self._lock = threading.Lock()
        self._closed = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def alias(self) -> str:
        return self._alias

    @property
    def uri(self) -> str:
        """SQLite URI that resolves to the one shared in-memory database."""
        return f"file:{self._name}?mode=memory&cache=shared"

    @property
    def is_open(self) -> bool:
        return self._anchor is not None

    def attach(self, conn: sqlite3.Connection) -> None:
        """Attach the dataset to *conn* under :attr:`alias`.

        *conn* must have been opened with ``uri=True``, otherwise SQLite
        treats the URI as a plain file name.
        """
        self._ensure_anchor()
        conn.execute(f"ATTACH DATABASE ? AS {self._alias}", (self.uri,))

    def _ensure_anchor(self) -> None:
        with self._lock:
            if self._closed:
                raise InitializationError(f"Dataset {self._name} is closed")
            if self._anchor is None:
                self._anchor = sqlite3.connect(
                    self.uri, uri=True, check_same_thread=False,
                )
                log.debug("Shared dataset %s created", self._name)

    def close(self) -> None:
        """Drop the anchor connection.  Later attaches are refused."""
        with self._lock:
            self._closed = True
            anchor, self._anchor = self._anchor, None
        if anchor is not None:
            anchor.close()
            log.debug("Shared dataset %s released", self._name)


class ConnectionFactory:
    """Opens configured connections that carry the shared dataset.

    Parameters
    ----------
    db_path:
        Filesystem path of the persistent database.  Parent directories are
        created on the first connection.
    dataset:
        The shared in-memory dataset every new connection attaches.
    busy_timeout_ms:
        How long SQLite retries internally on a locked database file.
    cached_statements:
        Size of each connection's compiled-statement cache.
    """

    def __init__(
        self,
        db_path: Path,
        dataset: SharedMemoryDataset,
        *,
        busy_timeout_ms: int = 60_000,
        cached_statements: int = 128,
    ) -> None:
        self._db_path = Path(db_path)
        self._dataset = dataset
        self._busy_timeout_ms = busy_timeout_ms
        self._cached_statements = cached_statements

    @property
    def db_path(self) -> Path:
        return self._db_path

    @property
    def dataset(self) -> SharedMemoryDataset:
        return self._dataset

    @property
    def busy_timeout_ms(self) -> int:
        return self._busy_timeout_ms

    def new_connection(self) -> sqlite3.Connection:
        """Open, configure and attach a new :class:`sqlite3.Connection`.

        Every connection is configured with:

        - WAL journal mode for concurrent reads on the persistent file.
        - Foreign key enforcement.
        - The busy timeout, so writers wait on each other instead of failing.
        - Uncommitted reads, so open cursors on the shared dataset take no
          table read locks and never hold writers off.
        - Row factory set to :class:`sqlite3.Row` for dict-like access.
        - The shared in-memory dataset attached.

        Raises
        ------
        InitializationError
            The file could not be opened or the dataset could not be attached.
        """
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(
                self._db_path.resolve().as_uri(),
                uri=True,
                timeout=self._busy_timeout_ms / 1000,
                check_same_thread=False,
                cached_statements=self._cached_statements,
            )
        except (OSError, sqlite3.Error) as exc:
            raise InitializationError(
                f"Cannot open database {self._db_path}: {exc}"
            ) from exc

        try:
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA foreign_keys=ON")
            conn.execute(f"PRAGMA busy_timeout={int(self._busy_timeout_ms)}")
            conn.execute("PRAGMA read_uncommitted=1")
            self._dataset.attach(conn)
        except sqlite3.Error as exc:
            conn.close()
            raise InitializationError(
                f"Cannot attach shared dataset {self._dataset.name}: {exc}"
            ) from exc
        except InitializationError:
            conn.close()
            raise

        log.debug(
            "Opened connection to %s with dataset %s attached as %s",
            self._db_path, self._dataset.name, self._dataset.alias,
        )
        return conn
