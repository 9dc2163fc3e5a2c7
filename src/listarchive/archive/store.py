"""SQLite persistence for the message archive.

The store owns the five archive tables (identities, topics, messages,
mentions, attachments). It runs the connection in autocommit mode and exposes
an explicit, re-entrant :meth:`ArchiveStore.transaction` so the ingestor can
write a message together with its topic, mentions and attachments atomically.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union

from listarchive.errors import ArchiveStorageError

from .models import Attachment, Identity, Message, Topic


logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS identities (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email TEXT NOT NULL,
    name TEXT NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (email, name)
);

CREATE TABLE IF NOT EXISTS topics (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    creator_id INTEGER NOT NULL REFERENCES identities(id),
    title TEXT NOT NULL,
    created_at TEXT NOT NULL,
    has_attachments BOOLEAN DEFAULT 0
);

CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    message_id TEXT NOT NULL UNIQUE,
    topic_id INTEGER NOT NULL REFERENCES topics(id),
    sender_id INTEGER NOT NULL REFERENCES identities(id),
    reply_to_message_id TEXT,
    reply_to_id INTEGER REFERENCES messages(id),
    subject TEXT NOT NULL,
    body TEXT NOT NULL,
    created_at TEXT NOT NULL,
    import_log TEXT
);

CREATE TABLE IF NOT EXISTS mentions (
    message_id INTEGER NOT NULL REFERENCES messages(id),
    identity_id INTEGER NOT NULL REFERENCES identities(id),
    PRIMARY KEY (message_id, identity_id)
);

CREATE TABLE IF NOT EXISTS attachments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    message_id INTEGER NOT NULL REFERENCES messages(id),
    file_name TEXT,
    content_type TEXT NOT NULL,
    body BLOB NOT NULL,
    is_patch BOOLEAN DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_messages_created_at ON messages(created_at);
CREATE INDEX IF NOT EXISTS idx_messages_topic_id ON messages(topic_id);
CREATE INDEX IF NOT EXISTS idx_attachments_message_id ON attachments(message_id);
"""

MESSAGE_COLUMNS = (
    "id, message_id, topic_id, sender_id, reply_to_message_id, reply_to_id, "
    "subject, body, created_at, import_log"
)

# Columns a duplicate delivery may overwrite.
UPDATABLE_MESSAGE_COLUMNS = frozenset({"body", "created_at", "reply_to_message_id", "import_log"})


def to_db_time(value: datetime) -> str:
    """Serialize a datetime as a sortable UTC ISO string (naive means UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: str) -> datetime:
    return datetime.fromisoformat(value)


class ArchiveStore:
    """SQLite-backed archive of topics, messages and their relations."""

    def __init__(self, path: Union[Path, str]) -> None:
        """Open (and create if needed) the archive database.

        Args:
            path: Path to SQLite database file, or ``":memory:"``
        """
        self._path = str(path)
        if self._path != ":memory:":
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = sqlite3.connect(
                self._path, isolation_level=None, check_same_thread=False
            )
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
            self._conn.executescript(SCHEMA)
        except sqlite3.Error as exc:
            raise ArchiveStorageError(
                f"Cannot open archive at {self._path}: {exc}",
                details={"database_path": self._path},
            ) from exc
        self._lock = threading.RLock()
        self._depth = 0

    def close(self) -> None:
        """Close database connection."""
        self._conn.close()

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator["ArchiveStore"]:
        """Run the block atomically.

        Nested use opens a savepoint, so an inner failure that the caller
        handles only undoes the inner block.
        """
        with self._lock:
            depth = self._depth
            savepoint = f"sp_{depth}"
            self._execute("BEGIN" if depth == 0 else f"SAVEPOINT {savepoint}")
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                if depth == 0:
                    self._conn.execute("ROLLBACK")
                else:
                    self._conn.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
                    self._conn.execute(f"RELEASE SAVEPOINT {savepoint}")
                raise
            self._depth -= 1
            self._execute("COMMIT" if depth == 0 else f"RELEASE SAVEPOINT {savepoint}")

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    # ------------------------------------------------------------------
    # Identities
    # ------------------------------------------------------------------

    def find_identity(self, email: str, name: str) -> Optional[Identity]:
        row = self._fetchone(
            "SELECT id, email, name, created_at FROM identities WHERE email = ? AND name = ?",
            (email, name),
        )
        return self._identity_from_row(row) if row else None

    def get_identity(self, identity_id: int) -> Optional[Identity]:
        row = self._fetchone(
            "SELECT id, email, name, created_at FROM identities WHERE id = ?",
            (identity_id,),
        )
        return self._identity_from_row(row) if row else None

    def create_identity(self, email: str, name: str, created_at: datetime) -> Identity:
        cur = self._execute(
            "INSERT INTO identities(email, name, created_at) VALUES (?, ?, ?)",
            (email, name, to_db_time(created_at)),
        )
        return Identity(id=cur.lastrowid, email=email, name=name, created_at=created_at)

    # ------------------------------------------------------------------
    # Topics
    # ------------------------------------------------------------------

    def create_topic(self, *, creator_id: int, title: str, created_at: datetime) -> Topic:
        cur = self._execute(
            "INSERT INTO topics(creator_id, title, created_at) VALUES (?, ?, ?)",
            (creator_id, title, to_db_time(created_at)),
        )
        return Topic(id=cur.lastrowid, creator_id=creator_id, title=title, created_at=created_at)

    def get_topic(self, topic_id: int) -> Optional[Topic]:
        row = self._fetchone(
            "SELECT id, creator_id, title, created_at, has_attachments FROM topics WHERE id = ?",
            (topic_id,),
        )
        if not row:
            return None
        return Topic(
            id=row[0],
            creator_id=row[1],
            title=row[2],
            created_at=from_db_time(row[3]),
            has_attachments=bool(row[4]),
        )

    def mark_topic_has_attachments(self, topic_id: int) -> None:
        self._execute("UPDATE topics SET has_attachments = 1 WHERE id = ?", (topic_id,))

    def count_topics(self) -> int:
        return self._fetchone("SELECT COUNT(*) FROM topics")[0]

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def create_message(
        self,
        *,
        message_id: str,
        topic_id: int,
        sender_id: int,
        subject: str,
        body: str,
        created_at: datetime,
        reply_to_message_id: Optional[str] = None,
        reply_to_id: Optional[int] = None,
        import_log: Optional[str] = None,
    ) -> Message:
        cur = self._execute(
            """
            INSERT INTO messages(
                message_id, topic_id, sender_id, reply_to_message_id, reply_to_id,
                subject, body, created_at, import_log
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                message_id,
                topic_id,
                sender_id,
                reply_to_message_id,
                reply_to_id,
                subject,
                body,
                to_db_time(created_at),
                import_log,
            ),
        )
        return Message(
            id=cur.lastrowid,
            message_id=message_id,
            topic_id=topic_id,
            sender_id=sender_id,
            reply_to_message_id=reply_to_message_id,
            reply_to_id=reply_to_id,
            subject=subject,
            body=body,
            created_at=created_at,
            import_log=import_log,
        )

    def find_message_by_message_id(self, message_id: str) -> Optional[Message]:
        if not message_id:
            return None
        row = self._fetchone(
            f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE message_id = ?",
            (message_id,),
        )
        return self._message_from_row(row) if row else None

    def get_message(self, message_pk: int) -> Optional[Message]:
        row = self._fetchone(f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE id = ?", (message_pk,))
        return self._message_from_row(row) if row else None

    def update_message_columns(self, message_pk: int, **columns: Any) -> None:
        """Overwrite selected columns of an existing message.

        Raises:
            ValueError: If a column is not updatable (``message_id`` never is)
        """
        unknown = set(columns) - UPDATABLE_MESSAGE_COLUMNS
        if unknown:
            raise ValueError(f"Columns not updatable: {sorted(unknown)}")
        if not columns:
            return
        values: Dict[str, Any] = {
            key: to_db_time(value) if isinstance(value, datetime) else value
            for key, value in columns.items()
        }
        assignments = ", ".join(f"{key} = ?" for key in values)
        self._execute(
            f"UPDATE messages SET {assignments} WHERE id = ?",
            (*values.values(), message_pk),
        )

    def list_messages_by_topic(self, topic_id: int) -> List[Message]:
        rows = self._fetchall(
            f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE topic_id = ? ORDER BY created_at, id",
            (topic_id,),
        )
        return [self._message_from_row(row) for row in rows]

    def recent_messages(
        self, window_start: datetime, window_end: datetime, limit: int
    ) -> List[Message]:
        """Messages sent within ``[window_start, window_end]``, newest first."""
        rows = self._fetchall(
            f"""
            SELECT {MESSAGE_COLUMNS} FROM messages
            WHERE created_at >= ? AND created_at <= ?
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            (to_db_time(window_start), to_db_time(window_end), limit),
        )
        return [self._message_from_row(row) for row in rows]

    def count_messages(self) -> int:
        return self._fetchone("SELECT COUNT(*) FROM messages")[0]

    # ------------------------------------------------------------------
    # Mentions and attachments
    # ------------------------------------------------------------------

    def add_mentions(self, message_pk: int, identity_ids: Iterable[int]) -> None:
        for identity_id in identity_ids:
            self._execute(
                "INSERT OR IGNORE INTO mentions(message_id, identity_id) VALUES (?, ?)",
                (message_pk, identity_id),
            )

    def list_mentions(self, message_pk: int) -> List[Identity]:
        rows = self._fetchall(
            """
            SELECT i.id, i.email, i.name, i.created_at
            FROM mentions m JOIN identities i ON i.id = m.identity_id
            WHERE m.message_id = ?
            ORDER BY i.id
            """,
            (message_pk,),
        )
        return [self._identity_from_row(row) for row in rows]

    def create_attachment(
        self,
        *,
        message_pk: int,
        file_name: Optional[str],
        content_type: str,
        body: bytes,
        is_patch: bool,
    ) -> Attachment:
        cur = self._execute(
            """
            INSERT INTO attachments(message_id, file_name, content_type, body, is_patch)
            VALUES (?, ?, ?, ?, ?)
            """,
            (message_pk, file_name, content_type, body, int(is_patch)),
        )
        return Attachment(
            id=cur.lastrowid,
            message_id=message_pk,
            file_name=file_name,
            content_type=content_type,
            body=body,
            is_patch=is_patch,
        )

    def list_attachments(self, message_pk: int) -> List[Attachment]:
        rows = self._fetchall(
            """
            SELECT id, message_id, file_name, content_type, body, is_patch
            FROM attachments WHERE message_id = ? ORDER BY id
            """,
            (message_pk,),
        )
        return [
            Attachment(
                id=row[0],
                message_id=row[1],
                file_name=row[2],
                content_type=row[3],
                body=bytes(row[4]),
                is_patch=bool(row[5]),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _execute(self, sql: str, params: Iterable[Any] = ()) -> sqlite3.Cursor:
        try:
            with self._lock:
                return self._conn.execute(sql, tuple(params))
        except sqlite3.Error as exc:
            raise ArchiveStorageError(
                f"Archive query failed: {exc}",
                details={"database_path": self._path},
            ) from exc

    def _fetchone(self, sql: str, params: Iterable[Any] = ()) -> Optional[tuple]:
        return self._execute(sql, params).fetchone()

    def _fetchall(self, sql: str, params: Iterable[Any] = ()) -> List[tuple]:
        return self._execute(sql, params).fetchall()

    @staticmethod
    def _identity_from_row(row: tuple) -> Identity:
        return Identity(id=row[0], email=row[1], name=row[2], created_at=from_db_time(row[3]))

    @staticmethod
    def _message_from_row(row: tuple) -> Message:
        return Message(
            id=row[0],
            message_id=row[1],
            topic_id=row[2],
            sender_id=row[3],
            reply_to_message_id=row[4],
            reply_to_id=row[5],
            subject=row[6],
            body=row[7],
            created_at=from_db_time(row[8]),
            import_log=row[9],
        )


__all__ = ["ArchiveStore", "SCHEMA", "from_db_time", "to_db_time"]
