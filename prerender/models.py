from dataclasses import dataclass
from enum import Enum
from typing import Optional


class TaskState(Enum):
    IDLE = "IDLE"
    QUEUED = "QUEUED"
    RENDERING = "RENDERING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class EnqueueResult(Enum):
    ENQUEUED = "enqueued"
    DUPLICATE = "duplicate"
    TOO_DEEP = "too_deep"
    POLICY_SKIPPED = "policy_skipped"
    QUEUE_FULL = "queue_full"
    STOPPED = "stopped"


@dataclass(frozen=True)
class CrawlRequest:
    """
    Unit of work for the scheduler.
    Invariants: url is already normalized; consumed exactly once by a worker.
    """
    url: str
    depth: int = 0
    attempt: int = 0
    discovered_from: Optional[str] = None

    def __post_init__(self):
        if self.depth < 0:
            raise ValueError(f"depth must be non-negative, got {self.depth}")


@dataclass(frozen=True)
class SnapshotEntry:
    """
    Rendered document plus its freshness window.
    Invariant: expires_at == rendered_at + ttl at the time of the put.
    """
    url: str
    html: str
    rendered_at: float
    expires_at: float

    def is_fresh(self, now: float) -> bool:
        return now < self.expires_at
