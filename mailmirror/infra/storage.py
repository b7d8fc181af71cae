import os
import sqlite3
import threading
import time

from mailmirror.paths import CACHE_DB_FILE


class SqliteStore:
    """SQLite-backed byte store keyed by string, with thread-local connections."""

    SCHEMA_VERSION = 1

    def __init__(self, db_path=None):
        self.db_path = db_path or CACHE_DB_FILE
        self._local = threading.local()
        db_dir = os.path.dirname(self.db_path)
        if db_dir:  # Skip for :memory: or relative paths without directory
            os.makedirs(db_dir, exist_ok=True)
        self._init_schema()

    @property
    def conn(self):
        """Thread-local database connection."""
        if not hasattr(self._local, "conn") or self._local.conn is None:
            self._local.conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._local.conn.row_factory = sqlite3.Row
            self._local.conn.execute("PRAGMA journal_mode=WAL")
        return self._local.conn

    def _init_schema(self):
        conn = self.conn
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY
            );

            CREATE TABLE IF NOT EXISTS kv_entries (
                key TEXT PRIMARY KEY,
                value BLOB NOT NULL,
                updated_at INTEGER NOT NULL
            );
        """
        )
        current_version = self._current_schema_version(conn)
        if current_version < self.SCHEMA_VERSION:
            self._set_schema_version(conn, self.SCHEMA_VERSION)
        conn.commit()

    @staticmethod
    def _current_schema_version(conn):
        cur = conn.execute("SELECT version FROM schema_version ORDER BY version DESC LIMIT 1")
        row = cur.fetchone()
        return int(row["version"]) if row else 0

    @staticmethod
    def _set_schema_version(conn, version):
        conn.execute("DELETE FROM schema_version")
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (int(version),))

    def get(self, key):
        row = self.conn.execute("SELECT value FROM kv_entries WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        return bytes(row["value"])

    def set(self, key, value):
        if not isinstance(value, (bytes, bytearray)):
            raise TypeError("SqliteStore values must be bytes.")
        conn = self.conn
        conn.execute(
            """INSERT INTO kv_entries (key, value, updated_at) VALUES (?, ?, ?)
               ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at""",
            (key, sqlite3.Binary(bytes(value)), int(time.time())),
        )
        conn.commit()

    def remove(self, key):
        conn = self.conn
        conn.execute("DELETE FROM kv_entries WHERE key = ?", (key,))
        conn.commit()

    def close(self):
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None


class MemoryStore:
    """In-process byte store with the same get/set/remove surface."""

    def __init__(self):
        self._data = {}
        self._lock = threading.Lock()

    def get(self, key):
        with self._lock:
            return self._data.get(key)

    def set(self, key, value):
        with self._lock:
            self._data[key] = bytes(value)

    def remove(self, key):
        with self._lock:
            self._data.pop(key, None)


__all__ = ["MemoryStore", "SqliteStore"]
