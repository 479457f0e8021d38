from __future__ import annotations

import contextlib
import datetime as dt
import sqlite3
from pathlib import Path
from typing import Iterator

DEFAULT_MIGRATIONS_DIR = Path(__file__).with_name("schema_migrations")


def connect_db(path: str | Path) -> sqlite3.Connection:
    db_path = Path(path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    # Autocommit mode; multi-statement writes go through immediate_transaction().
    conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
    conn.row_factory = sqlite3.Row
    for pragma in (
        "PRAGMA journal_mode=WAL;",
        "PRAGMA synchronous=NORMAL;",
        "PRAGMA busy_timeout=5000;",
        "PRAGMA foreign_keys=ON;",
    ):
        conn.execute(pragma)
    return conn


@contextlib.contextmanager
def immediate_transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Take the write lock up front so read-check-write sequences cannot interleave across processes."""

    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    else:
        conn.execute("COMMIT")


def run_migrations(conn: sqlite3.Connection, migrations_dir: Path | None = None) -> list[str]:
    migrations_dir = migrations_dir or DEFAULT_MIGRATIONS_DIR
    _ensure_tracking_table(conn)
    applied = _applied(conn)
    newly_applied: list[str] = []
    for sql_file in sorted(migrations_dir.glob("*.sql")):
        name = sql_file.name
        if name in applied:
            continue
        script = sql_file.read_text(encoding="utf-8")
        conn.executescript(script)
        conn.execute(
            "INSERT INTO schema_migrations(name, applied_at) VALUES (?, ?)",
            (name, dt.datetime.now(dt.timezone.utc).isoformat()),
        )
        newly_applied.append(name)
    return newly_applied


def _ensure_tracking_table(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations(
            name TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        );
        """
    )


def _applied(conn: sqlite3.Connection) -> set[str]:
    cur = conn.execute("SELECT name FROM schema_migrations")
    return {row[0] for row in cur.fetchall()}


__all__ = ["connect_db", "immediate_transaction", "run_migrations", "DEFAULT_MIGRATIONS_DIR"]
