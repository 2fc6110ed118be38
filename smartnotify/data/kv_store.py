"""
Key-value store for JSON snapshots.

Each engine component keeps its state under "<namespace>_<user_id>" and
reads it back whole at initialization.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime
from typing import Any, Optional

logger = logging.getLogger(__name__)


class KeyValueStore:
    """JSON values keyed by string, backed by the kv_store table."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def get_json(self, key: str) -> Optional[Any]:
        row = self.conn.execute(
            "SELECT value FROM kv_store WHERE key = ?", (key,)
        ).fetchone()
        if row is None:
            return None
        try:
            return json.loads(row["value"])
        except json.JSONDecodeError:
            logger.warning("Discarding unreadable value stored under %s", key)
            return None

    def set_json(self, key: str, value: Any) -> None:
        self.conn.execute(
            "INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value, "
            "updated_at = excluded.updated_at",
            (key, json.dumps(value), datetime.now().isoformat()),
        )
        self.conn.commit()

    def delete(self, key: str) -> bool:
        cur = self.conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
        self.conn.commit()
        return cur.rowcount > 0

    def keys(self, prefix: str = "") -> list:
        rows = self.conn.execute(
            "SELECT key FROM kv_store WHERE key LIKE ? ORDER BY key",
            (f"{prefix}%",),
        ).fetchall()
        return [r["key"] for r in rows]


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   A tiny JSON-over-SQLite key-value API used for every per-user snapshot.
#
# Key points:
#   - UPSERT (ON CONFLICT DO UPDATE) makes set_json a single statement.
#   - A corrupt blob reads as "nothing stored" so callers fall back to
#     defaults instead of crashing at startup.
#
# Interviewer-friendly talking points:
#   1. Callers own their JSON shape via to_dict()/from_dict(); the store
#      never needs to know what a queue entry looks like.
#   2. sqlite3.Error is not caught here. Callers decide whether a failed
#      write is fatal or best effort.
