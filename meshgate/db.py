from __future__ import annotations

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Iterator

from .settings import settings


logger = logging.getLogger("meshgate")

_path_override: str | None = None


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def use_path(path: str | os.PathLike[str] | None) -> None:
    """Point the store at another file (tests, `--db`); None restores settings."""
    global _path_override
    _path_override = os.fspath(path) if path is not None else None


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (a bind mount Docker created for a
    missing file, for example), the DB file is placed inside it.
    """
    p = os.path.abspath(_path_override or settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "meshgate.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False, timeout=10)
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def session() -> Iterator[sqlite3.Connection]:
    conn = connect()
    try:
        with conn:
            yield conn
    finally:
        conn.close()


def init_db() -> None:
    """Create tables if they do not exist."""
    with session() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS services (
              name TEXT PRIMARY KEY,
              position INTEGER NOT NULL,
              spec_json TEXT NOT NULL,
              registered_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS instances (
              name TEXT PRIMARY KEY,
              state TEXT NOT NULL, -- pending|starting|healthy|unhealthy|stopping|stopped|failed
              health TEXT NOT NULL, -- unknown|starting|healthy|unhealthy
              address TEXT,
              detail TEXT,
              restart_count INTEGER NOT NULL DEFAULT 0,
              updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS volumes (
              name TEXT PRIMARY KEY,
              created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              service_name TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            """
        )


_LEVELS = {"DEBUG": logging.DEBUG, "INFO": logging.INFO, "WARN": logging.WARNING, "ERROR": logging.ERROR}


def log_event(level: str, message: str, service_name: str | None = None) -> None:
    level = level.upper()
    logger.log(_LEVELS.get(level, logging.INFO), "%s%s", f"[{service_name}] " if service_name else "", message)
    with session() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, service_name, message) VALUES (?, ?, ?, ?)",
            (utc_now(), level, service_name, message),
        )


@dataclass(frozen=True)
class InstanceRow:
    name: str
    state: str
    health: str
    address: str | None
    detail: str | None
    restart_count: int
    updated_at: str


def _rows_to_dataclass(rows: Iterable[sqlite3.Row], cls: Any) -> list[Any]:
    return [cls(**dict(r)) for r in rows]


def save_spec(name: str, position: int, spec: dict[str, Any]) -> None:
    with session() as conn:
        conn.execute(
            """
            INSERT INTO services (name, position, spec_json, registered_at) VALUES (?, ?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET position=excluded.position, spec_json=excluded.spec_json
            """,
            (name, position, json.dumps(spec, sort_keys=True), utc_now()),
        )


def forget_specs(keep: Iterable[str] = ()) -> None:
    """Drop registered specs, except the named ones."""
    keep = list(keep)
    with session() as conn:
        if keep:
            marks = ", ".join("?" * len(keep))
            conn.execute(f"DELETE FROM services WHERE name NOT IN ({marks})", keep)
        else:
            conn.execute("DELETE FROM services")


def load_specs() -> list[dict[str, Any]]:
    with session() as conn:
        rows = conn.execute("SELECT spec_json FROM services ORDER BY position").fetchall()
        return [json.loads(r["spec_json"]) for r in rows]


def save_instance(name: str, state: str, health: str, address: str | None, detail: str | None) -> None:
    with session() as conn:
        conn.execute(
            """
            INSERT INTO instances (name, state, health, address, detail, updated_at) VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET
              state=excluded.state,
              health=excluded.health,
              address=excluded.address,
              detail=excluded.detail,
              updated_at=excluded.updated_at
            """,
            (name, state, health, address, detail, utc_now()),
        )


def bump_restart_count(name: str) -> None:
    with session() as conn:
        conn.execute("UPDATE instances SET restart_count=restart_count+1 WHERE name=?", (name,))


def get_instance(name: str) -> InstanceRow | None:
    with session() as conn:
        row = conn.execute("SELECT * FROM instances WHERE name=?", (name,)).fetchone()
        return InstanceRow(**dict(row)) if row else None


def list_instances() -> list[InstanceRow]:
    with session() as conn:
        rows = conn.execute("SELECT * FROM instances ORDER BY name").fetchall()
        return _rows_to_dataclass(rows, InstanceRow)


def record_volume(name: str) -> None:
    with session() as conn:
        conn.execute("INSERT OR IGNORE INTO volumes (name, created_at) VALUES (?, ?)", (name, utc_now()))


def forget_volume(name: str) -> None:
    with session() as conn:
        conn.execute("DELETE FROM volumes WHERE name=?", (name,))


def list_volumes() -> list[str]:
    with session() as conn:
        return [r["name"] for r in conn.execute("SELECT name FROM volumes ORDER BY name").fetchall()]


def latest_events(limit: int = 100, service_name: str | None = None) -> list[dict[str, Any]]:
    with session() as conn:
        if service_name:
            rows = conn.execute(
                "SELECT * FROM events WHERE service_name=? ORDER BY id DESC LIMIT ?", (service_name, limit)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]
