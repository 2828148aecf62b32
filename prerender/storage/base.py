from abc import ABC, abstractmethod
from typing import List, Optional

from prerender.models import SnapshotEntry


class SnapshotStore(ABC):
    """
    Abstract storage interface for rendered snapshots.
    Freshness is decided by SnapshotCache; stores only persist whole entries.
    """

    @abstractmethod
    def read(self, url: str) -> Optional[SnapshotEntry]:
        """Return the entry stored under the normalized url, expired or not."""
        pass

    @abstractmethod
    def write(self, entry: SnapshotEntry) -> None:
        """Atomically insert or replace the entry for entry.url."""
        pass

    @abstractmethod
    def entries(self) -> List[SnapshotEntry]:
        """All stored entries, in no particular order."""
        pass

    def count(self) -> int:
        return len(self.entries())
