from prerender.storage.base import SnapshotStore
from prerender.storage.db import SQLiteSnapshotStore
from prerender.storage.memory import MemorySnapshotStore
