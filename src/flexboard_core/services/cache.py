"""Per-session in-memory cache of remote collections."""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from flexboard_core.domain.entities import CacheKey, CachedCollection
from flexboard_core.errors import CacheInvariantViolation

_logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
CollectionUpdater = Callable[[CachedCollection], CachedCollection]


def utc_now() -> datetime:
    """Return the current UTC time."""
    return datetime.now(tz=UTC)


@dataclass
class EntityCache:
    """Keyed store of cached collections for the signed-in user.

    Reads never raise; a missing entry just means the caller must fetch.
    Expired entries are kept and reported as stale so the facade can
    serve them while it refreshes.
    """

    clock: Clock = utc_now
    strict: bool = True
    _entries: dict[CacheKey, CachedCollection] = field(
        default_factory=dict, init=False, repr=False
    )
    _lock: threading.RLock = field(
        default_factory=threading.RLock, init=False, repr=False
    )

    def now(self) -> datetime:
        return self.clock()

    def get(self, key: CacheKey) -> CachedCollection | None:
        """Return the cached collection for a key, stale or not."""
        return self._entries.get(key)

    def set(self, key: CacheKey, collection: CachedCollection) -> None:
        """Replace a key's collection wholesale."""
        with self._lock:
            self._entries[key] = collection

    def patch(self, key: CacheKey, updater: CollectionUpdater) -> None:
        """Apply a pure transformation to a cached collection."""
        if not self.patch_if_present(key, updater):
            message = f"patch on missing cache key {key!r}"
            if self.strict:
                raise CacheInvariantViolation(message)
            _logger.error("Cache invariant violated: %s", message)

    def patch_if_present(self, key: CacheKey, updater: CollectionUpdater) -> bool:
        """Patch a key if it is cached and report whether it was."""
        with self._lock:
            current = self._entries.get(key)
            if current is None:
                return False
            self._entries[key] = updater(current)
            return True

    def is_stale(self, collection: CachedCollection) -> bool:
        return collection.is_stale(self.now())

    def keys_for(self, user_id: str, entity_type: str) -> list[CacheKey]:
        """Return every cached key for a user and entity type."""
        with self._lock:
            return [
                key
                for key in self._entries
                if key.user_id == user_id and key.entity_type == entity_type
            ]

    def invalidate(self, key: CacheKey) -> None:
        """Drop a single key."""
        with self._lock:
            self._entries.pop(key, None)

    def invalidate_all(self, user_id: str) -> None:
        """Drop every key owned by a user."""
        with self._lock:
            for key in [key for key in self._entries if key.user_id == user_id]:
                del self._entries[key]
