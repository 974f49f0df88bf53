"""SQLite-backed key-value storage shared by the app, widgets and dashboard."""

import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

KV_SCHEMA = """
-- Small values and whole-replica blobs, grouped by storage namespace
CREATE TABLE IF NOT EXISTS kv_store (
    namespace TEXT NOT NULL,
    key TEXT NOT NULL,
    value BLOB NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (namespace, key)
);
"""


class KeyValueStore:
    """Durable key-value store scoped to one namespace.

    Every process opening the same database file with the same namespace
    sees the same values, which is how the widget and dashboard read the
    replica written by the app.
    """

    def __init__(self, db_path: str | Path, namespace: str):
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
            namespace: Storage group shared between cooperating processes.
        """
        self.db_path = Path(db_path).expanduser() if db_path != ":memory:" else db_path
        self.namespace = namespace
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.executescript(KV_SCHEMA)
        self._conn.commit()

        logger.info(f"KeyValueStore connected to {self.db_path} ({self.namespace})")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        return self._conn

    def get_bytes(self, key: str) -> bytes | None:
        conn = self._ensure_connected()
        row = conn.execute(
            "SELECT value FROM kv_store WHERE namespace = ? AND key = ?",
            (self.namespace, key),
        ).fetchone()
        if row is None:
            return None
        value = row[0]
        # Values written as TEXT by other tools come back as str
        return value.encode("utf-8") if isinstance(value, str) else bytes(value)

    def set_bytes(self, key: str, value: bytes) -> None:
        """Write a value, replacing any previous one in a single transaction."""
        conn = self._ensure_connected()
        with conn:
            conn.execute(
                """
                INSERT INTO kv_store (namespace, key, value, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(namespace, key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (self.namespace, key, sqlite3.Binary(value), datetime.now().isoformat()),
            )

    def delete(self, key: str) -> bool:
        conn = self._ensure_connected()
        with conn:
            cursor = conn.execute(
                "DELETE FROM kv_store WHERE namespace = ? AND key = ?",
                (self.namespace, key),
            )
        return cursor.rowcount > 0

    def get_str(self, key: str) -> str | None:
        raw = self.get_bytes(key)
        if raw is None:
            return None
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError:
            logger.warning(f"Value for {key!r} is not valid UTF-8, ignoring")
            return None

    def set_str(self, key: str, value: str) -> None:
        self.set_bytes(key, value.encode("utf-8"))

    def get_datetime(self, key: str) -> datetime | None:
        raw = self.get_str(key)
        if raw is None:
            return None
        try:
            return datetime.fromisoformat(raw)
        except ValueError:
            logger.warning(f"Value for {key!r} is not a timestamp: {raw!r}")
            return None

    def set_datetime(self, key: str, value: datetime) -> None:
        self.set_str(key, value.isoformat())

    def get_bool(self, key: str, default: bool = False) -> bool:
        raw = self.get_str(key)
        if raw is None:
            return default
        return raw.strip().lower() in ("true", "1", "yes")

    def set_bool(self, key: str, value: bool) -> None:
        self.set_str(key, "true" if value else "false")

    def keys(self) -> list[str]:
        conn = self._ensure_connected()
        cursor = conn.execute(
            "SELECT key FROM kv_store WHERE namespace = ? ORDER BY key",
            (self.namespace,),
        )
        return [row[0] for row in cursor]

    def get_stats(self) -> dict[str, Any]:
        """Get storage statistics.

        Returns:
            Dictionary with key count and database size.
        """
        stats: dict[str, Any] = {
            "namespace": self.namespace,
            "db_path": str(self.db_path),
            "keys": len(self.keys()),
        }
        if isinstance(self.db_path, Path) and self.db_path.exists():
            stats["db_size_kb"] = round(self.db_path.stat().st_size / 1024, 1)
        return stats
