from __future__ import annotations

import logging
import os
import sqlite3
from datetime import datetime, timezone
from typing import Any

from .settings import settings

_logger = logging.getLogger("gsr")

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
}


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (an empty volume mount is a common
    case), the DB file is placed inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "gsr.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False, timeout=10)
    conn.row_factory = sqlite3.Row
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              kind TEXT,
              group_name TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_events_group ON events(group_name);
            """
        )


def log_event(level: str, message: str, group_name: str | None = None, kind: str | None = None) -> None:
    """Record an operator event.

    Events are kept in SQLite so they can be queried over the API, and are
    mirrored to the ``gsr`` logger for container stdout.
    """
    level = level.upper()
    prefix = f"[{kind}/{group_name}] " if group_name else ""
    _logger.log(_LEVELS.get(level, logging.INFO), "%s%s", prefix, message)
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, kind, group_name, message) VALUES (?, ?, ?, ?, ?)",
            (utc_now(), level, kind, group_name, message),
        )


def latest_events(limit: int = 100, group_name: str | None = None) -> list[dict[str, Any]]:
    with connect() as conn:
        if group_name:
            rows = conn.execute(
                "SELECT * FROM events WHERE group_name=? ORDER BY id DESC LIMIT ?",
                (group_name, limit),
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]


def prune_events(keep: int) -> int:
    """Drop all but the newest ``keep`` events. Returns the number removed."""
    with connect() as conn:
        cur = conn.execute(
            "DELETE FROM events WHERE id NOT IN (SELECT id FROM events ORDER BY id DESC LIMIT ?)",
            (max(0, int(keep)),),
        )
        return cur.rowcount
