from __future__ import annotations

import itertools
import json
import logging
import sqlite3
from pathlib import Path
from typing import Any

from .stores import Payload, PayloadCallback

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS kv_entries (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS change_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    payload TEXT NOT NULL,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);
"""

CHANGE_EVENT_RETENTION = 500


def connect(db_path: str | Path) -> sqlite3.Connection:
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: str | Path) -> None:
    conn = connect(db_path)
    try:
        with conn:
            conn.executescript(SCHEMA)
            migrate_kv_schema(conn)
    finally:
        conn.close()


def migrate_kv_schema(conn: sqlite3.Connection) -> None:
    columns = {row["name"] for row in conn.execute("PRAGMA table_info(kv_entries)").fetchall()}
    if "updated_at" not in columns:
        conn.execute("ALTER TABLE kv_entries ADD COLUMN updated_at TEXT")
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_change_events_created
        ON change_events(created_at)
        """
    )


class SqliteKeyValueStore:
    """KeyValueStore backed by one sqlite table; each write is its own transaction."""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        init_db(self.db_path)

    def get(self, key: str) -> str | None:
        conn = connect(self.db_path)
        try:
            row = conn.execute("SELECT value FROM kv_entries WHERE key = ?", (key,)).fetchone()
        finally:
            conn.close()
        return None if row is None else str(row["value"])

    def set(self, key: str, value: str) -> bool:
        conn = connect(self.db_path)
        try:
            with conn:
                conn.execute(
                    """
                    INSERT INTO kv_entries(key, value, updated_at) VALUES (?, ?, CURRENT_TIMESTAMP)
                    ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = CURRENT_TIMESTAMP
                    """,
                    (key, value),
                )
        except sqlite3.Error as exc:
            logger.warning("kv_write_failed", extra={"key": key, "error": str(exc)})
            return False
        finally:
            conn.close()
        return True

    def remove(self, key: str) -> bool:
        conn = connect(self.db_path)
        try:
            with conn:
                conn.execute("DELETE FROM kv_entries WHERE key = ?", (key,))
        except sqlite3.Error as exc:
            logger.warning("kv_remove_failed", extra={"key": key, "error": str(exc)})
            return False
        finally:
            conn.close()
        return True

    def keys(self, prefix: str = "") -> list[str]:
        conn = connect(self.db_path)
        try:
            rows = conn.execute(
                "SELECT key FROM kv_entries WHERE key LIKE ? ORDER BY key",
                (f"{prefix}%",),
            ).fetchall()
        finally:
            conn.close()
        return [str(row["key"]) for row in rows]


class SqliteChangeNotifier:
    """ChangeNotifier shared between processes through the change_events table.

    ``publish`` appends a row; subscribers only see rows written after this
    notifier was created, delivered when ``poll`` runs.
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        init_db(self.db_path)
        self._subscribers: dict[int, PayloadCallback] = {}
        self._tokens = itertools.count(1)
        self.last_seen_id = self._latest_event_id()

    def publish(self, payload: Payload) -> None:
        conn = connect(self.db_path)
        try:
            with conn:
                conn.execute("INSERT INTO change_events(payload) VALUES (?)", (json_dumps(payload),))
                conn.execute(
                    "DELETE FROM change_events WHERE id <= (SELECT MAX(id) FROM change_events) - ?",
                    (CHANGE_EVENT_RETENTION,),
                )
        except sqlite3.Error as exc:
            logger.warning("change_event_publish_failed", extra={"error": str(exc)})
        finally:
            conn.close()

    def subscribe(self, callback: PayloadCallback) -> int:
        token = next(self._tokens)
        self._subscribers[token] = callback
        return token

    def unsubscribe(self, token: int) -> None:
        self._subscribers.pop(token, None)

    def poll(self) -> int:
        conn = connect(self.db_path)
        try:
            rows = conn.execute(
                "SELECT id, payload FROM change_events WHERE id > ? ORDER BY id",
                (self.last_seen_id,),
            ).fetchall()
        finally:
            conn.close()

        delivered = 0
        for row in rows:
            self.last_seen_id = int(row["id"])
            try:
                payload = json.loads(row["payload"])
            except json.JSONDecodeError:
                logger.warning("change_event_unreadable", extra={"event_id": row["id"]})
                continue
            for token, callback in list(self._subscribers.items()):
                try:
                    callback(payload)
                except Exception:
                    logger.exception("change_subscriber_failed", extra={"token": token, "event_id": row["id"]})
            delivered += 1
        return delivered

    def _latest_event_id(self) -> int:
        conn = connect(self.db_path)
        try:
            row = conn.execute("SELECT COALESCE(MAX(id), 0) AS latest FROM change_events").fetchone()
        finally:
            conn.close()
        return int(row["latest"])


def json_dumps(payload: dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), sort_keys=True)
