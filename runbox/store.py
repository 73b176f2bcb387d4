"""
Key/value persistence for the library manager.
"""

from __future__ import annotations

import sqlite3
import time
from pathlib import Path
from typing import Protocol, cast


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS kv_state (
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL,
  updated_at REAL NOT NULL
);
"""


class KeyValueStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


def initialize_database(db_path: str) -> None:
    """Create the SQLite database and schema if needed."""
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    connection = sqlite3.connect(str(path))
    try:
        _ = connection.executescript(SCHEMA_SQL)
        connection.commit()
    finally:
        connection.close()


def connect(db_path: str) -> sqlite3.Connection:
    connection = sqlite3.connect(db_path)
    connection.row_factory = sqlite3.Row
    return connection


class StateStore:
    """SQLite-backed key/value store. Errors propagate as sqlite3.Error."""

    db_path: str

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = str(Path(db_path).expanduser())
        initialize_database(self.db_path)

    def get(self, key: str) -> str | None:
        with connect(self.db_path) as connection:
            row = cast(
                sqlite3.Row | None,
                connection.execute("SELECT value FROM kv_state WHERE key = ?", (key,)).fetchone(),
            )
        if row is None:
            return None
        return cast(str, row["value"])

    def set(self, key: str, value: str) -> None:
        with connect(self.db_path) as connection:
            _ = connection.execute(
                "INSERT OR REPLACE INTO kv_state (key, value, updated_at) VALUES (?, ?, ?)",
                (key, value, time.time()),
            )
            connection.commit()

    def delete(self, key: str) -> None:
        with connect(self.db_path) as connection:
            _ = connection.execute("DELETE FROM kv_state WHERE key = ?", (key,))
            connection.commit()


class MemoryStateStore:
    """In-process store with the same surface as StateStore."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self.values: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self.values.get(key)

    def set(self, key: str, value: str) -> None:
        self.values[key] = value

    def delete(self, key: str) -> None:
        _ = self.values.pop(key, None)
