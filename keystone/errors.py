"""
keystone.errors — Typed Failures for the Coordination Layer
============================================================

Every failure the lock, transaction, and cache layers can surface maps to
one of the classes below, so callers can branch on *kind* rather than on
message text:

* :class:`LockContentionError` — someone else holds the lock (expected).
* :class:`StorageError` — the database itself failed (unreachable, bad SQL).
* :class:`ValidationError` — bad arguments, rejected before any I/O.
* :class:`CacheStampedeTimeout` — waited too long for another caller's
  recomputation.
* :class:`InsufficientFundsError` — economy transfer without cover.

Degraded dependencies are **not** exceptions; they show up as a
``degraded`` status in health-check output.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy.exc import DBAPIError, OperationalError

# SQLSTATE codes worth a retry: serialization_failure, deadlock_detected
RETRYABLE_SQLSTATES = frozenset({"40001", "40P01"})

# Substrings of driver messages that indicate a transient failure
_RETRYABLE_MESSAGES = (
    "database is locked",
    "database busy",
    "sqlite_busy",
    "deadlock",
    "could not serialize",
    "connection reset",
    "connection refused",
    "server closed the connection",
    "timeout",
)


class KeystoneError(Exception):
    """Base class for all Keystone errors.

    ``context`` holds structured details (lock key, SQL, original message)
    that end up in log records and API payloads.
    """

    code = "KEYSTONE_ERROR"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, **self.context}


class LockContentionError(KeystoneError):
    """The lock is held by another owner and has not expired."""

    code = "LOCK_CONTENTION"

    def __init__(self, key: str) -> None:
        super().__init__(f"Failed to acquire lock for key: {key}", key=key)
        self.key = key


class StorageError(KeystoneError):
    """A database operation failed.

    Wraps the driver / SQLAlchemy exception and keeps the operation name so
    the log line says *what* Keystone was doing when the store broke.
    """

    code = "STORAGE_ERROR"

    def __init__(
        self,
        operation: str,
        original: BaseException | None = None,
        **context: Any,
    ) -> None:
        original_error = str(original) if original is not None else None
        super().__init__(
            f"{operation} failed",
            operation=operation,
            original_error=original_error,
            **context,
        )
        self.operation = operation
        self.original = original


class ValidationError(KeystoneError, ValueError):
    """Arguments rejected before touching the store."""

    code = "VALIDATION_ERROR"


class CacheStampedeTimeout(KeystoneError):
    """Gave up waiting for a concurrent recomputation of a cache key."""

    code = "CACHE_STAMPEDE_TIMEOUT"


class InsufficientFundsError(KeystoneError):
    """The sender's balance does not cover the requested amount."""

    code = "INSUFFICIENT_FUNDS"


def is_retryable_error(exc: BaseException) -> bool:
    """Return True if *exc* looks like a transient database failure.

    Checks, in order: the driver's disconnect flag, the PostgreSQL SQLSTATE
    (serialization failure / deadlock), and finally well-known message
    fragments (SQLite "database is locked", connection resets, timeouts).
    """
    if isinstance(exc, StorageError) and exc.original is not None:
        return is_retryable_error(exc.original)

    if isinstance(exc, (ConnectionError, TimeoutError)):
        return True

    if isinstance(exc, DBAPIError):
        if exc.connection_invalidated:
            return True
        sqlstate = getattr(exc.orig, "pgcode", None) or getattr(exc.orig, "sqlstate", None)
        if sqlstate in RETRYABLE_SQLSTATES:
            return True
        if isinstance(exc, OperationalError) or sqlstate is None:
            message = str(exc).lower()
            return any(fragment in message for fragment in _RETRYABLE_MESSAGES)

    return False
