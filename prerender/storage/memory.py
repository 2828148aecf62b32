import threading
from typing import Dict, List, Optional

from prerender.models import SnapshotEntry
from prerender.storage.base import SnapshotStore


class MemorySnapshotStore(SnapshotStore):
    """
    In-process store for tests and throwaway runs. Entries are immutable,
    so swapping the dict value under the lock is an atomic replace.
    """

    def __init__(self):
        self._entries: Dict[str, SnapshotEntry] = {}
        self._lock = threading.Lock()

    def read(self, url: str) -> Optional[SnapshotEntry]:
        with self._lock:
            return self._entries.get(url)

    def write(self, entry: SnapshotEntry) -> None:
        with self._lock:
            self._entries[entry.url] = entry

    def entries(self) -> List[SnapshotEntry]:
        with self._lock:
            return list(self._entries.values())
