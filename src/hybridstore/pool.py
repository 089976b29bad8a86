"""Bounded pool of attached SQLite connections.

The pool is the only place connections are created or destroyed.  It caps
the number of open connections, keeps at most ``max_idle`` of them around
between calls, and makes callers wait (up to ``checkout_timeout``) when every
connection is busy.

Thread safety:
    All bookkeeping is guarded by one :class:`threading.Condition`.  SQL is
    never run under that lock; write ordering is left to SQLite's own
    locking plus the busy timeout configured by the connection factory.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from collections import deque
from collections.abc import Iterator
from contextlib import contextmanager

from hybridstore.connection import ConnectionFactory
from hybridstore.errors import ContentionTimeout, StoreClosedError
from hybridstore.models import PoolStats

log = logging.getLogger(__name__)


class ConnectionPool:
    """Thread-safe bounded connection pool.

    Parameters
    ----------
    factory:
        Creates new connections, each with the shared dataset attached.
    max_open:
        Maximum number of connections open at once.
    max_idle:
        Maximum number of idle connections kept for reuse.  Extra returned
        connections are closed.
    checkout_timeout:
        Seconds :meth:`checkout` waits for a connection before raising
        :class:`ContentionTimeout`.
    """

    def __init__(
        self,
        factory: ConnectionFactory,
        *,
        max_open: int = 10,
        max_idle: int = 10,
        checkout_timeout: float = 30.0,
    ) -> None:
        if max_open < 1:
            raise ValueError("max_open must be at least 1")
        if max_idle < 0:
            raise ValueError("max_idle must not be negative")
        self._factory = factory
        self._max_open = max_open
        self._max_idle = min(max_idle, max_open)
        self._checkout_timeout = checkout_timeout
        self._idle: deque[sqlite3.Connection] = deque()
        self._open = 0
        self._cond = threading.Condition()
        self._closed = False

    @property
    def factory(self) -> ConnectionFactory:
        return self._factory

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Checkout / checkin
    # ------------------------------------------------------------------

    def checkout(self) -> sqlite3.Connection:
        """Return a connection for exclusive use by the caller.

        Reuses the most recently returned idle connection, opens a new one
        while under ``max_open``, and otherwise waits for a checkin.

        Raises
        ------
        StoreClosedError
            The pool was closed before or while waiting.
        ContentionTimeout
            No connection became available within ``checkout_timeout``.
        """
        deadline = time.monotonic() + self._checkout_timeout
        with self._cond:
            while True:
                if self._closed:
                    raise StoreClosedError("Connection pool is closed")
                if self._idle:
                    return self._idle.pop()
                if self._open < self._max_open:
                    self._open += 1
                    break
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise ContentionTimeout(
                        f"No pooled connection free after {self._checkout_timeout:.1f}s "
                        f"({self._open} open)"
                    )
                self._cond.wait(remaining)

        # Open outside the lock; the slot is already reserved.
        try:
            return self._factory.new_connection()
        except BaseException:
            with self._cond:
                self._open -= 1
                self._cond.notify()
            raise

    def checkin(self, conn: sqlite3.Connection, *, discard: bool = False) -> None:
        """Give *conn* back to the pool.

        The connection is closed instead of kept when *discard* is set, the
        pool is closed, or ``max_idle`` connections are already idle.
        """
        with self._cond:
            keep = not (discard or self._closed) and len(self._idle) < self._max_idle
            if keep:
                self._idle.append(conn)
            else:
                self._open -= 1
            self._cond.notify()

        if not keep:
            self._close_connection(conn)

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Check out a connection for the duration of a ``with`` block."""
        conn = self.checkout()
        try:
            yield conn
        finally:
            self.checkin(conn)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def stats(self) -> PoolStats:
        with self._cond:
            idle = len(self._idle)
            return PoolStats(
                open=self._open,
                idle=idle,
                in_use=self._open - idle,
                max_open=self._max_open,
                max_idle=self._max_idle,
            )

    def close(self) -> None:
        """Close idle connections, wake waiters and release the dataset.

        Connections still checked out are closed when they are checked in.
        """
        with self._cond:
            self._closed = True
            idle = list(self._idle)
            self._idle.clear()
            self._open -= len(idle)
            in_use = self._open
            self._cond.notify_all()

        for conn in idle:
            self._close_connection(conn)
        self._factory.dataset.close()
        log.debug(
            "Pool closed (%d idle connections released, %d still checked out)",
            len(idle), in_use,
        )

    @staticmethod
    def _close_connection(conn: sqlite3.Connection) -> None:
        try:
            conn.close()
        except sqlite3.Error as exc:
            log.warning("Failed to close connection: %s", exc)
