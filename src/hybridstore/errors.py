"""Error types raised by the hybrid store.

- StorageError: base for everything below
- InitializationError: the store could not be brought up
- ExecutionError: one statement invocation failed; the store stays usable
- ContentionTimeout: a lock or pool wait ran past its bound
- StoreClosedError: the store, pool or statement was already closed

Per-call failures are always raised to the caller, never turned into a
process exit.  Zero rows affected by a write is not an error.
"""

from __future__ import annotations


class StorageError(Exception):
    """Base exception for all hybrid store errors.

    Attributes:
        message: Error message
        statement: Name of the statement involved, when there is one
    """

    def __init__(self, message: str, statement: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.statement = statement

    def __str__(self) -> str:
        if self.statement:
            return f"{self.statement}: {self.message}"
        return self.message


class InitializationError(StorageError):
    """Opening the store failed.

    Raised when:
    - The shared in-memory dataset cannot be attached
    - Schema creation fails
    - A registered statement is missing or does not compile
    """


class ExecutionError(StorageError):
    """A statement invocation failed against the backend.

    The pool and statement cache are left intact; the caller decides
    whether to retry.
    """


class ContentionTimeout(ExecutionError):
    """A lock or a pooled connection did not become free in time."""


class StoreClosedError(ExecutionError):
    """The store, its pool or one of its statements has been closed."""
