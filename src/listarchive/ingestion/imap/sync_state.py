"""IMAP sync state and its persistence.

One :class:`ImapSyncState` row exists per mailbox label. It holds the UID
cursor plus the diagnostics of the last cycle (counters, timings, error
details and the current backoff) so operators can see what the runner is
doing without reading logs. Only the sync runner writes it.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional, Union

from pydantic import BaseModel, Field

from listarchive.errors import ArchiveStorageError


# ---------------------------------------------------------------------------
# Sync state model
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ImapSyncState(BaseModel):
    """Persistent sync state for one mailbox label."""

    # Identity
    label: str = Field(..., description="Mailbox label")

    # Cursor
    last_uid: int = Field(default=0, ge=0, description="Highest UID processed")
    last_checked_at: Optional[datetime] = Field(
        default=None, description="End of the last successful pass"
    )

    # Last cycle
    last_cycle_started_at: Optional[datetime] = None
    last_cycle_duration_ms: Optional[int] = Field(default=None, ge=0)
    last_fetched_count: int = Field(default=0, ge=0)
    last_ingested_count: int = Field(default=0, ge=0)
    last_duplicate_count: int = Field(default=0, ge=0)
    last_failed_count: int = Field(default=0, ge=0)
    last_attachment_count: int = Field(default=0, ge=0)
    last_patch_files_count: int = Field(default=0, ge=0)
    last_backlog_count: int = Field(default=0, ge=0)

    # Errors
    consecutive_error_count: int = Field(default=0, ge=0)
    last_error: Optional[str] = None
    last_error_class: Optional[str] = None
    backoff_seconds: int = Field(default=0, ge=0)

    # Bookkeeping
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_healthy(self) -> bool:
        return self.consecutive_error_count == 0


# ---------------------------------------------------------------------------
# Sync state persistence
# ---------------------------------------------------------------------------


SCHEMA = """
CREATE TABLE IF NOT EXISTS imap_sync_state (
    label TEXT PRIMARY KEY,
    last_uid INTEGER DEFAULT 0,
    last_checked_at TEXT,
    last_cycle_started_at TEXT,
    last_cycle_duration_ms INTEGER,
    last_fetched_count INTEGER DEFAULT 0,
    last_ingested_count INTEGER DEFAULT 0,
    last_duplicate_count INTEGER DEFAULT 0,
    last_failed_count INTEGER DEFAULT 0,
    last_attachment_count INTEGER DEFAULT 0,
    last_patch_files_count INTEGER DEFAULT 0,
    last_backlog_count INTEGER DEFAULT 0,
    consecutive_error_count INTEGER DEFAULT 0,
    last_error TEXT,
    last_error_class TEXT,
    backoff_seconds INTEGER DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""

COLUMNS = (
    "label",
    "last_uid",
    "last_checked_at",
    "last_cycle_started_at",
    "last_cycle_duration_ms",
    "last_fetched_count",
    "last_ingested_count",
    "last_duplicate_count",
    "last_failed_count",
    "last_attachment_count",
    "last_patch_files_count",
    "last_backlog_count",
    "consecutive_error_count",
    "last_error",
    "last_error_class",
    "backoff_seconds",
    "created_at",
    "updated_at",
)
_TIME_COLUMNS = frozenset({"last_checked_at", "last_cycle_started_at", "created_at", "updated_at"})


class ImapSyncStateStore:
    """SQLite-backed store for :class:`ImapSyncState`."""

    def __init__(self, path: Union[Path, str]) -> None:
        """Initialize state store.

        Args:
            path: Path to SQLite database file, or ``":memory:"``
        """
        self._path = str(path)
        if self._path != ":memory:":
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self._path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(SCHEMA)

    def close(self) -> None:
        """Close database connection."""
        self._conn.commit()
        self._conn.close()

    def for_label(self, label: str) -> ImapSyncState:
        """Fetch the state for ``label``, creating it with cursor 0 if absent."""
        state = self.fetch(label)
        if state is None:
            state = ImapSyncState(label=label)
            self.upsert(state)
        return state

    def upsert(self, state: ImapSyncState) -> ImapSyncState:
        """Insert or update sync state, stamping ``updated_at``.

        Args:
            state: Sync state to persist

        Returns:
            The persisted state
        """
        state.updated_at = utcnow()
        values = []
        for column in COLUMNS:
            value = getattr(state, column)
            if column in _TIME_COLUMNS and value is not None:
                value = value.isoformat()
            values.append(value)

        placeholders = ", ".join("?" for _ in COLUMNS)
        assignments = ", ".join(
            f"{column}=excluded.{column}" for column in COLUMNS if column not in ("label", "created_at")
        )
        try:
            with self._conn:
                self._conn.execute(
                    f"""
                    INSERT INTO imap_sync_state({", ".join(COLUMNS)})
                    VALUES ({placeholders})
                    ON CONFLICT(label) DO UPDATE SET {assignments}
                    """,
                    values,
                )
        except sqlite3.Error as exc:
            raise ArchiveStorageError(
                f"Cannot persist sync state for {state.label}: {exc}",
                details={"label": state.label},
            ) from exc
        return state

    def fetch(self, label: str) -> Optional[ImapSyncState]:
        """Fetch sync state for a label.

        Returns:
            Sync state if found, None otherwise
        """
        cur = self._conn.execute(
            f"SELECT {', '.join(COLUMNS)} FROM imap_sync_state WHERE label = ?",
            (label,),
        )
        row = cur.fetchone()
        return self._from_row(row) if row else None

    def iter_all(self) -> Iterator[ImapSyncState]:
        """Iterate all sync states ordered by label."""
        cur = self._conn.execute(
            f"SELECT {', '.join(COLUMNS)} FROM imap_sync_state ORDER BY label"
        )
        for row in cur.fetchall():
            yield self._from_row(row)

    @staticmethod
    def _from_row(row: tuple) -> ImapSyncState:
        data = dict(zip(COLUMNS, row))
        for column in _TIME_COLUMNS:
            if data[column] is not None:
                data[column] = datetime.fromisoformat(data[column])
        return ImapSyncState(**data)


__all__ = [
    "ImapSyncState",
    "ImapSyncStateStore",
]
