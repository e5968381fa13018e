import time
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from typing import Generic, TypeVar

from loguru import logger

T = TypeVar("T")


def utcnow() -> datetime:
    """Timezone-aware UTC timestamp used for every stored datetime."""
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Normalizes a stored timestamp to aware UTC.

    Older SQLAlchemy releases drop the offset when reading SQLite DateTime
    columns, newer ones keep it, so values are normalized before comparison.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class PermissionCache(Generic[T]):
    """Time-bounded cache for a caller's resolved permission set.

    The cache belongs to whoever constructs it (typically one API client per
    logged-in user) and is never shared between identities. Entries expire
    after ``ttl_seconds``; administrative screens call ``invalidate()`` after
    mutating the current user's roles or grants.
    """

    def __init__(self, ttl_seconds: float = 300.0, clock: Callable[[], float] = time.monotonic) -> None:
        """
        Args:
            ttl_seconds: Maximum age of a cached entry (default: 5 minutes).
            clock: Monotonic time source, injectable for tests.
        """
        self.ttl = ttl_seconds
        self.clock = clock
        self._value: frozenset[T] | None = None
        self._stored_at: float | None = None

    def get(self) -> frozenset[T] | None:
        """Returns the cached set, or None when empty or stale."""
        if self._value is None or self._stored_at is None:
            return None
        if self.clock() - self._stored_at >= self.ttl:
            logger.debug("Permission cache entry expired.")
            self.invalidate()
            return None
        return self._value

    def set(self, permissions: Iterable[T]) -> frozenset[T]:
        self._value = frozenset(permissions)
        self._stored_at = self.clock()
        return self._value

    def invalidate(self) -> None:
        self._value = None
        self._stored_at = None
