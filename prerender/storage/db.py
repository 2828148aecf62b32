"""
SQLite persistence for rendered snapshots.
One row per normalized URL; html is stored as bytes in the configured output encoding.
"""

import sqlite3
from pathlib import Path
from typing import List, Optional

from prerender.models import SnapshotEntry
from prerender.storage.base import SnapshotStore

DB_FILENAME = "snapshots.db"


class SQLiteSnapshotStore(SnapshotStore):
    """
    FLOW: Opens a short-lived connection per operation -> Upserts or selects a single row ->
    Commits and closes. Each write is one statement, so readers see either the old or the new row.
    """

    def __init__(self, cache_dir, encoding: str = "UTF-8"):
        self.cache_dir = Path(cache_dir)
        self.db_path = self.cache_dir / DB_FILENAME
        self.encoding = encoding
        self.initialize_db()

    def get_connection(self):
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.execute("PRAGMA journal_mode = WAL;")
        return conn

    def initialize_db(self):
        """Create the cache directory and the snapshots table if needed. Existing rows are kept."""
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        conn = self.get_connection()
        try:
            conn.execute("""
            CREATE TABLE IF NOT EXISTS snapshots (
                url TEXT PRIMARY KEY,
                html BLOB NOT NULL,
                encoding TEXT NOT NULL,
                rendered_at REAL NOT NULL,
                expires_at REAL NOT NULL
            );
            """)
            conn.commit()
        finally:
            conn.close()

    def read(self, url: str) -> Optional[SnapshotEntry]:
        conn = self.get_connection()
        try:
            row = conn.execute(
                "SELECT url, html, encoding, rendered_at, expires_at FROM snapshots WHERE url = ?",
                (url,),
            ).fetchone()
        finally:
            conn.close()
        return self._row_to_entry(row) if row else None

    def write(self, entry: SnapshotEntry) -> None:
        body = entry.html.encode(self.encoding, errors="xmlcharrefreplace")
        conn = self.get_connection()
        try:
            conn.execute("""
                INSERT INTO snapshots (url, html, encoding, rendered_at, expires_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(url) DO UPDATE SET
                    html=excluded.html,
                    encoding=excluded.encoding,
                    rendered_at=excluded.rendered_at,
                    expires_at=excluded.expires_at;
            """, (entry.url, sqlite3.Binary(body), self.encoding, entry.rendered_at, entry.expires_at))
            conn.commit()
        finally:
            conn.close()

    def entries(self) -> List[SnapshotEntry]:
        conn = self.get_connection()
        try:
            rows = conn.execute(
                "SELECT url, html, encoding, rendered_at, expires_at FROM snapshots"
            ).fetchall()
        finally:
            conn.close()
        return [self._row_to_entry(row) for row in rows]

    def count(self) -> int:
        conn = self.get_connection()
        try:
            return conn.execute("SELECT COUNT(*) FROM snapshots").fetchone()[0]
        finally:
            conn.close()

    @staticmethod
    def _row_to_entry(row) -> SnapshotEntry:
        url, body, encoding, rendered_at, expires_at = row
        return SnapshotEntry(
            url=url,
            html=bytes(body).decode(encoding),
            rendered_at=rendered_at,
            expires_at=expires_at,
        )
