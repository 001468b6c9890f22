from __future__ import annotations

import logging
import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable

from .settings import settings

logger = logging.getLogger("nac")

# Tests (and one-off commands) point the journal somewhere else by setting this.
DB_PATH: str | None = None

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (Docker creates one when a bind-mounted
    file does not exist yet), the journal lives inside it.
    """
    p = os.path.abspath(DB_PATH or settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "nac.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False)
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
              container TEXT,
              message TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS passes (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              trigger TEXT NOT NULL,
              outcome TEXT NOT NULL, -- promoted|unchanged|invalid|failed
              route_count INTEGER NOT NULL,
              reloaded INTEGER NOT NULL DEFAULT 0,
              blamed TEXT,
              detail TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_passes_ts ON passes(ts);
            """
        )


def log_event(level: str, message: str, container: str | None = None) -> None:
    """Journal an event and mirror it to the `nac` logger."""
    level = level.upper()
    text = f"[{container}] {message}" if container else message
    logger.log(_LEVELS.get(level, logging.INFO), text)
    try:
        with connect() as conn:
            conn.execute(
                "INSERT INTO events (ts, level, container, message) VALUES (?, ?, ?, ?)",
                (utc_now(), level, container, message),
            )
    except sqlite3.Error as e:
        logger.warning(f"Could not journal event: {e}")


@dataclass(frozen=True)
class PassRow:
    id: int
    ts: str
    trigger: str
    outcome: str
    route_count: int
    reloaded: int
    blamed: str | None
    detail: str | None


def _rows_to_dataclass(rows: Iterable[sqlite3.Row], cls: Any) -> list[Any]:
    out: list[Any] = []
    for r in rows:
        out.append(cls(**dict(r)))
    return out


def record_pass(
    trigger: str,
    outcome: str,
    route_count: int,
    reloaded: bool = False,
    blamed: str | None = None,
    detail: str | None = None,
) -> None:
    try:
        with connect() as conn:
            conn.execute(
                """
                INSERT INTO passes (ts, trigger, outcome, route_count, reloaded, blamed, detail)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (utc_now(), trigger, outcome, route_count, int(reloaded), blamed, detail),
            )
    except sqlite3.Error as e:
        logger.warning(f"Could not journal rebuild pass: {e}")


def latest_passes(limit: int = 20) -> list[PassRow]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM passes ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return _rows_to_dataclass(rows, PassRow)


def latest_events(limit: int = 100) -> list[dict[str, Any]]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]
