"""Event journal.

Controller and instance lifecycle events are appended to a small SQLite
table so they can be listed from the admin API, and mirrored to the
``bisket.events`` logger.
"""
from __future__ import annotations

import logging
import os
import sqlite3
from datetime import datetime, timezone
from typing import Any

from .settings import settings

logger = logging.getLogger("bisket.events")

DB_PATH = settings.db_path

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is an existing directory (a bind-mounted volume,
    typically) the DB file is placed inside it.
    """
    p = os.path.abspath(DB_PATH)
    if os.path.isdir(p):
        p = os.path.join(p, "bisket.db")
    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)
    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def init_db() -> None:
    """Create the events table if it does not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              app TEXT,
              version TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            """
        )


def log_event(level: str, message: str, app: str | None = None, version: str | None = None) -> None:
    level = level.upper()
    if app and version:
        prefix = f"[{app}/{version}] "
    elif app:
        prefix = f"[{app}] "
    else:
        prefix = ""
    logger.log(_LEVELS.get(level, logging.INFO), "%s%s", prefix, message, extra={"app": app, "version": version})
    try:
        with connect() as conn:
            conn.execute(
                "INSERT INTO events (ts, level, app, version, message) VALUES (?, ?, ?, ?, ?)",
                (utc_now(), level, app, version, message),
            )
    except sqlite3.Error as e:
        logger.warning("Failed to journal event: %s", e)


def latest_events(limit: int = 100) -> list[dict[str, Any]]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (max(1, int(limit)),)).fetchall()
        return [dict(r) for r in rows]
