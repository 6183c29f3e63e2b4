"""SQLite-backed persistent store for thread sessions and workspaces."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

from tether.constants import PENDING_TOKEN

logger = logging.getLogger(__name__)

MEMORY_PATH = ":memory:"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso_utc(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: str) -> datetime:
    return datetime.fromisoformat(value)


@dataclass
class ThreadSession:
    """Persistent per-thread state."""

    thread_key: str
    token: str
    directory: str | None
    created_at: datetime
    updated_at: datetime

    @property
    def is_pending(self) -> bool:
        return self.token == PENDING_TOKEN


@dataclass
class WorkspaceRecord:
    """An isolated git worktree bound to a thread."""

    thread_key: str
    repo_root: str
    path: str
    branch: str
    created_at: datetime
    last_active_at: datetime
    cleaned_up: bool


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS sessions (
        thread_key TEXT PRIMARY KEY,
        token TEXT NOT NULL,
        directory TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS scope_defaults (
        scope_key TEXT PRIMARY KEY,
        directory TEXT NOT NULL,
        set_by TEXT,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workspaces (
        thread_key TEXT PRIMARY KEY,
        repo_root TEXT NOT NULL,
        path TEXT NOT NULL,
        branch TEXT NOT NULL,
        created_at TEXT NOT NULL,
        last_active_at TEXT NOT NULL,
        cleaned_up INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS conventions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        instruction TEXT NOT NULL,
        added_by TEXT NOT NULL,
        workspace_id TEXT NOT NULL DEFAULT 'default',
        created_at TEXT NOT NULL,
        active INTEGER NOT NULL DEFAULT 1
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_workspaces_active ON workspaces(cleaned_up, last_active_at)",
)


class SessionStore:
    """Sessions, scope defaults, workspaces, and team conventions.

    One connection is held for the store's lifetime so that
    ``":memory:"`` databases survive between calls.
    """

    def __init__(self, db_path: Path | str = MEMORY_PATH) -> None:
        self._db_path = str(db_path)
        if self._db_path != MEMORY_PATH:
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = self._connect()
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        if self._db_path != MEMORY_PATH:
            conn.execute("PRAGMA journal_mode = WAL")
        return conn

    def _ensure_schema(self) -> None:
        with self._conn as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------ #
    # Sessions
    # ------------------------------------------------------------------ #

    def get_session(self, thread_key: str) -> ThreadSession | None:
        row = self._conn.execute(
            "SELECT * FROM sessions WHERE thread_key = ?", (thread_key,)
        ).fetchone()
        return _session_from_row(row) if row is not None else None

    def ensure_session(self, thread_key: str) -> ThreadSession:
        """Return the thread's row, creating it with a pending token."""
        now = _iso_utc(_utc_now())
        with self._conn as conn:
            conn.execute(
                """
                INSERT INTO sessions(thread_key, token, directory, created_at, updated_at)
                VALUES (?, ?, NULL, ?, ?)
                ON CONFLICT(thread_key) DO NOTHING
                """,
                (thread_key, PENDING_TOKEN, now, now),
            )
        session = self.get_session(thread_key)
        assert session is not None
        return session

    def set_token(self, thread_key: str, token: str) -> None:
        now = _iso_utc(_utc_now())
        with self._conn as conn:
            conn.execute(
                """
                INSERT INTO sessions(thread_key, token, directory, created_at, updated_at)
                VALUES (?, ?, NULL, ?, ?)
                ON CONFLICT(thread_key) DO UPDATE SET
                    token = excluded.token,
                    updated_at = excluded.updated_at
                """,
                (thread_key, token, now, now),
            )

    def set_directory(self, thread_key: str, directory: str | None) -> None:
        now = _iso_utc(_utc_now())
        with self._conn as conn:
            conn.execute(
                """
                INSERT INTO sessions(thread_key, token, directory, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(thread_key) DO UPDATE SET
                    directory = excluded.directory,
                    updated_at = excluded.updated_at
                """,
                (thread_key, PENDING_TOKEN, directory, now, now),
            )

    def list_sessions(self) -> list[ThreadSession]:
        rows = self._conn.execute(
            "SELECT * FROM sessions ORDER BY updated_at DESC"
        ).fetchall()
        return [_session_from_row(row) for row in rows]

    # ------------------------------------------------------------------ #
    # Scope defaults
    # ------------------------------------------------------------------ #

    def get_scope_default(self, scope_key: str) -> str | None:
        row = self._conn.execute(
            "SELECT directory FROM scope_defaults WHERE scope_key = ?", (scope_key,)
        ).fetchone()
        return str(row["directory"]) if row is not None else None

    def set_scope_default(
        self, scope_key: str, directory: str, set_by: str | None = None
    ) -> None:
        with self._conn as conn:
            conn.execute(
                """
                INSERT INTO scope_defaults(scope_key, directory, set_by, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(scope_key) DO UPDATE SET
                    directory = excluded.directory,
                    set_by = excluded.set_by,
                    updated_at = excluded.updated_at
                """,
                (scope_key, directory, set_by, _iso_utc(_utc_now())),
            )

    # ------------------------------------------------------------------ #
    # Workspaces
    # ------------------------------------------------------------------ #

    def get_workspace(self, thread_key: str) -> WorkspaceRecord | None:
        row = self._conn.execute(
            "SELECT * FROM workspaces WHERE thread_key = ?", (thread_key,)
        ).fetchone()
        return _workspace_from_row(row) if row is not None else None

    def upsert_workspace(
        self,
        thread_key: str,
        repo_root: str,
        path: str,
        branch: str,
        now: datetime | None = None,
    ) -> WorkspaceRecord:
        ts = _iso_utc(now or _utc_now())
        with self._conn as conn:
            conn.execute(
                """
                INSERT INTO workspaces(
                    thread_key, repo_root, path, branch,
                    created_at, last_active_at, cleaned_up
                )
                VALUES (?, ?, ?, ?, ?, ?, 0)
                ON CONFLICT(thread_key) DO UPDATE SET
                    repo_root = excluded.repo_root,
                    path = excluded.path,
                    branch = excluded.branch,
                    created_at = excluded.created_at,
                    last_active_at = excluded.last_active_at,
                    cleaned_up = 0
                """,
                (thread_key, repo_root, path, branch, ts, ts),
            )
        record = self.get_workspace(thread_key)
        assert record is not None
        return record

    def touch_workspace(self, thread_key: str, now: datetime | None = None) -> None:
        with self._conn as conn:
            conn.execute(
                "UPDATE workspaces SET last_active_at = ? WHERE thread_key = ?",
                (_iso_utc(now or _utc_now()), thread_key),
            )

    def mark_workspace_cleaned(self, thread_key: str) -> None:
        with self._conn as conn:
            conn.execute(
                "UPDATE workspaces SET cleaned_up = 1 WHERE thread_key = ?",
                (thread_key,),
            )
        logger.debug("%s: workspace marked cleaned", thread_key)

    def stale_workspaces(
        self, idle_minutes: int, now: datetime | None = None
    ) -> list[WorkspaceRecord]:
        """Non-cleaned workspaces idle for longer than *idle_minutes*."""
        cutoff = _iso_utc((now or _utc_now()) - timedelta(minutes=idle_minutes))
        rows = self._conn.execute(
            """
            SELECT * FROM workspaces
            WHERE cleaned_up = 0 AND last_active_at < ?
            ORDER BY last_active_at ASC
            """,
            (cutoff,),
        ).fetchall()
        return [_workspace_from_row(row) for row in rows]

    def list_workspaces(self, include_cleaned: bool = False) -> list[WorkspaceRecord]:
        query = "SELECT * FROM workspaces"
        if not include_cleaned:
            query += " WHERE cleaned_up = 0"
        rows = self._conn.execute(query + " ORDER BY last_active_at DESC").fetchall()
        return [_workspace_from_row(row) for row in rows]

    # ------------------------------------------------------------------ #
    # Team conventions
    # ------------------------------------------------------------------ #

    def conventions(self, workspace_id: str = "default") -> list[str]:
        rows = self._conn.execute(
            """
            SELECT instruction FROM conventions
            WHERE workspace_id = ? AND active = 1
            ORDER BY id ASC
            """,
            (workspace_id,),
        ).fetchall()
        return [str(row["instruction"]) for row in rows]

    def add_convention(
        self, instruction: str, added_by: str, workspace_id: str = "default"
    ) -> int:
        with self._conn as conn:
            cursor = conn.execute(
                """
                INSERT INTO conventions(instruction, added_by, workspace_id, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (instruction, added_by, workspace_id, _iso_utc(_utc_now())),
            )
        return int(cursor.lastrowid or 0)

    def remove_convention(self, convention_id: int) -> bool:
        with self._conn as conn:
            cursor = conn.execute(
                "UPDATE conventions SET active = 0 WHERE id = ? AND active = 1",
                (convention_id,),
            )
        return cursor.rowcount > 0


def _session_from_row(row: sqlite3.Row) -> ThreadSession:
    return ThreadSession(
        thread_key=str(row["thread_key"]),
        token=str(row["token"]),
        directory=row["directory"],
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
    )


def _workspace_from_row(row: sqlite3.Row) -> WorkspaceRecord:
    return WorkspaceRecord(
        thread_key=str(row["thread_key"]),
        repo_root=str(row["repo_root"]),
        path=str(row["path"]),
        branch=str(row["branch"]),
        created_at=_parse_ts(row["created_at"]),
        last_active_at=_parse_ts(row["last_active_at"]),
        cleaned_up=bool(row["cleaned_up"]),
    )
