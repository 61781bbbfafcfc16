from __future__ import annotations

import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from .settings import settings


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is an existing directory (a bind mount created by
    docker before the file existed, typically), the database file goes inside it.
    """
    p = os.path.abspath(os.path.expanduser(settings.db_path))

    if os.path.isdir(p):
        p = os.path.join(p, "wtr.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    _init_schema(conn)
    return conn


def _init_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS fingerprints (
          project TEXT PRIMARY KEY,
          workspace TEXT NOT NULL,
          digest TEXT NOT NULL,
          updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS events (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          ts TEXT NOT NULL,
          level TEXT NOT NULL,
          project TEXT,
          service TEXT,
          message TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
        CREATE INDEX IF NOT EXISTS idx_events_project ON events(project);
        """
    )


def log_event(level: str, message: str, project: str | None = None, service: str | None = None) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, project, service, message) VALUES (?, ?, ?, ?, ?)",
            (utc_now(), level.upper(), project, service, message),
        )


@dataclass(frozen=True)
class FingerprintRow:
    project: str
    workspace: str
    digest: str
    updated_at: str


def get_fingerprint(project: str) -> FingerprintRow | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM fingerprints WHERE project=?", (project,)).fetchone()
        return FingerprintRow(**dict(row)) if row else None


def set_fingerprint(project: str, workspace: str, digest: str) -> FingerprintRow:
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO fingerprints (project, workspace, digest, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(project) DO UPDATE SET
              workspace=excluded.workspace,
              digest=excluded.digest,
              updated_at=excluded.updated_at
            """,
            (project, workspace, digest, utc_now()),
        )
        row = conn.execute("SELECT * FROM fingerprints WHERE project=?", (project,)).fetchone()
        return FingerprintRow(**dict(row))


def clear_fingerprint(project: str) -> None:
    with connect() as conn:
        conn.execute("DELETE FROM fingerprints WHERE project=?", (project,))


def latest_events(limit: int = 100, project: str | None = None) -> list[dict[str, Any]]:
    with connect() as conn:
        if project:
            rows = conn.execute(
                "SELECT * FROM events WHERE project=? ORDER BY id DESC LIMIT ?", (project, limit)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]
