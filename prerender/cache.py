"""
Snapshot cache: freshness-aware access to rendered snapshots keyed by normalized URL.
"""

import sqlite3
import threading
import time
from typing import Callable, List, Optional

from prerender.core import setup_logger
from prerender.models import SnapshotEntry
from prerender.processor import UrlNormalizer
from prerender.storage.base import SnapshotStore

logger = setup_logger("prerender.cache")

# Store failures that degrade to "absent" on read and "dropped" on write
STORE_ERRORS = (sqlite3.Error, OSError, UnicodeError)

# Writes to the same key always share a stripe; unrelated keys rarely do
LOCK_STRIPES = 64


class SnapshotCache:
    """
    FLOW: Normalizes the URL into a key -> Reads the stored entry -> Serves it only while
    now < expires_at. Writes replace the whole entry under the lock stripe for its key.

    Expiry is logical: stale entries stay in the store and remain visible through lookup().
    """

    def __init__(self, store: SnapshotStore, ttl_seconds: float,
                 normalizer: Optional[Callable[[str], str]] = None,
                 clock: Callable[[], float] = time.time):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.normalizer = normalizer or UrlNormalizer()
        self.clock = clock
        self._key_locks: List[threading.Lock] = [threading.Lock() for _ in range(LOCK_STRIPES)]

    def key_for(self, url: str) -> str:
        return self.normalizer(url)

    def _lock_for(self, key: str) -> threading.Lock:
        return self._key_locks[hash(key) % LOCK_STRIPES]

    def lookup(self, url: str) -> Optional[SnapshotEntry]:
        """Raw entry for url, fresh or stale. None when absent or unreadable."""
        try:
            return self.store.read(self.key_for(url))
        except ValueError as e:
            logger.warning(f"cache lookup: invalid url {url!r}: {e}")
        except STORE_ERRORS as e:
            logger.warning(f"cache lookup: store read failed for {url}: {e}")
        return None

    def get(self, url: str, now: Optional[float] = None) -> Optional[str]:
        """Cached html for url if the entry is still fresh, else None."""
        entry = self.lookup(url)
        if entry is None:
            return None
        now = self.clock() if now is None else now
        if not entry.is_fresh(now):
            logger.debug(f"cache get: stale entry for {entry.url} (expired {now - entry.expires_at:.0f}s ago)")
            return None
        return entry.html

    def put(self, url: str, html: str, now: Optional[float] = None) -> Optional[SnapshotEntry]:
        """
        Replace the entry for url with a new one expiring at now + ttl.
        Returns the stored entry, or None when the write was dropped.
        """
        try:
            key = self.key_for(url)
        except ValueError as e:
            logger.warning(f"cache put: invalid url {url!r}: {e}")
            return None

        now = self.clock() if now is None else now
        entry = SnapshotEntry(url=key, html=html, rendered_at=now, expires_at=now + self.ttl_seconds)
        with self._lock_for(key):
            try:
                self.store.write(entry)
            except STORE_ERRORS as e:
                logger.error(f"cache put: dropped write for {key}: {e}")
                return None
        logger.info(f"cache put: stored {key} ({len(html)} chars, fresh for {self.ttl_seconds:.0f}s)")
        return entry

    def entries(self) -> List[SnapshotEntry]:
        return self.store.entries()

    def __len__(self) -> int:
        return self.store.count()
