"""Durable key-value snapshot storage for client-held state.

SQLiteSnapshotStore keeps one JSON document per key in a single table, so a
draft survives process restarts. MemorySnapshotStore offers the same
interface without touching disk.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from .errors import SnapshotError

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS snapshots (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


class SnapshotStore(Protocol):
    """Interface the Draft Store and orphan ledger persist through."""

    def get(self, key: str) -> Any | None: ...

    def put(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...


class SQLiteSnapshotStore:
    """Snapshot store backed by SQLite.

    Values must be JSON-serializable; anything else raises SnapshotError
    rather than being silently dropped.
    """

    def __init__(self, db_path: Path | str):
        """Initialize the snapshot store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path))
        self.conn.row_factory = sqlite3.Row
        self.conn.executescript(SCHEMA)
        self.conn.commit()

    def close(self) -> None:
        """Close the database connection."""
        self.conn.close()

    def get(self, key: str) -> Any | None:
        row = self.conn.execute(
            "SELECT value FROM snapshots WHERE key = ?",
            (key,)
        ).fetchone()
        if row is None:
            return None
        try:
            return json.loads(row["value"])
        except json.JSONDecodeError as e:
            raise SnapshotError(f"Snapshot {key!r} is corrupted: {e}") from e

    def put(self, key: str, value: Any) -> None:
        try:
            encoded = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise SnapshotError(f"Snapshot {key!r} is not JSON-serializable: {e}") from e

        self.conn.execute(
            """
            INSERT OR REPLACE INTO snapshots (key, value, updated_at)
            VALUES (?, ?, ?)
            """,
            (key, encoded, datetime.now(UTC).isoformat())
        )
        self.conn.commit()
        logger.debug(f"Snapshot {key!r} written ({len(encoded)} bytes)")

    def delete(self, key: str) -> None:
        self.conn.execute("DELETE FROM snapshots WHERE key = ?", (key,))
        self.conn.commit()

    def keys(self) -> list[str]:
        rows = self.conn.execute("SELECT key FROM snapshots ORDER BY key").fetchall()
        return [row["key"] for row in rows]


class MemorySnapshotStore:
    """In-process snapshot store; values round-trip through JSON like on disk."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self.writes = 0

    def get(self, key: str) -> Any | None:
        encoded = self._data.get(key)
        return json.loads(encoded) if encoded is not None else None

    def put(self, key: str, value: Any) -> None:
        try:
            self._data[key] = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise SnapshotError(f"Snapshot {key!r} is not JSON-serializable: {e}") from e
        self.writes += 1

    def delete(self, key: str) -> None:
        self._data.pop(key, None)
        self.writes += 1

    def keys(self) -> list[str]:
        return sorted(self._data)
