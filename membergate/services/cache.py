"""Explicit key -> (value, expiry) cache with a synchronous invalidation contract.

Every component that mutates an account record must invalidate its entry
before returning, otherwise a stale entry could serve an old session binding
or expiry date for up to one TTL. Writers that run inside a caller-owned
transaction use ``invalidate_on_commit`` so that a reader who re-caches the
pre-commit row between flush and commit does not keep it.
"""

import logging
import threading
import time
from collections.abc import Callable
from typing import Any

from sqlalchemy import event
from sqlalchemy.orm import Session, SessionTransaction

from membergate.config import settings

logger = logging.getLogger(__name__)

PENDING_INVALIDATIONS = "membergate.pending_invalidations"


class TTLCache:
    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self._ttl = ttl_seconds
        self._clock = clock
        self._items: dict[Any, tuple[Any, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: Any) -> Any | None:
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return None
            value, expiry = item
            if self._clock() > expiry:
                del self._items[key]
                return None
            return value

    def set(self, key: Any, value: Any, ttl_seconds: float | None = None) -> None:
        ttl = self._ttl if ttl_seconds is None else ttl_seconds
        with self._lock:
            self._items[key] = (value, self._clock() + ttl)

    def invalidate(self, key: Any) -> None:
        with self._lock:
            self._items.pop(key, None)
        logger.debug("Cache entry invalidated: %s", key)

    def invalidate_on_commit(self, session: Session, key: Any) -> None:
        """Invalidate now and again once the session's outer transaction ends."""
        self.invalidate(key)
        session.info.setdefault(PENDING_INVALIDATIONS, []).append((self, key))

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def cleanup(self) -> int:
        """Drop expired entries. Returns the number removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, (_, expiry) in self._items.items() if expiry < now]
            for key in expired:
                del self._items[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


account_cache = TTLCache(settings.account_cache_ttl_seconds)


@event.listens_for(Session, "after_transaction_end")
def _invalidate_after_transaction(session: Session, transaction: SessionTransaction) -> None:
    # Savepoints end inside the outer transaction; only the outer end is visible to readers.
    if transaction.parent is not None:
        return
    for cache, key in session.info.pop(PENDING_INVALIDATIONS, []):
        cache.invalidate(key)
