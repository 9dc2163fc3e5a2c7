"""Shared test fixtures: raw message builders and a temporary archive."""

from __future__ import annotations

from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path
from typing import Callable, Iterable, Optional, Tuple

import pytest

from listarchive.archive import (
    ArchiveStore,
    SqliteAttachmentStore,
    SqliteIdentityResolver,
)
from listarchive.ingestion.imap.ingestor import EmailIngestor


# ============================================================================
# Raw message builder
# ============================================================================


def build_raw_message(
    *,
    message_id: Optional[str] = "<msg-1@example.org>",
    subject: Optional[str] = "Hello hackers",
    sender: Optional[str] = "Alice Example <alice@example.org>",
    to: Optional[str] = "pgsql-hackers@lists.postgresql.org",
    cc: Optional[str] = None,
    date: Optional[str] = "Mon, 06 Jan 2025 10:00:00 +0000",
    in_reply_to: Optional[str] = None,
    references: Optional[str] = None,
    body: str = "Body text\n",
    attachments: Iterable[Tuple[str, str, bytes]] = (),
) -> bytes:
    """Build RFC822 bytes.

    ``attachments`` items are ``(filename, content_type, data)``.
    """
    attachments = list(attachments)
    if attachments:
        msg = MIMEMultipart()
        msg.attach(MIMEText(body, "plain", "utf-8"))
        for filename, content_type, data in attachments:
            maintype, subtype = content_type.split("/", 1)
            part = MIMEApplication(data, _subtype=subtype)
            if maintype != "application":
                part.replace_header("Content-Type", content_type)
            part.add_header("Content-Disposition", "attachment", filename=filename)
            msg.attach(part)
    else:
        msg = MIMEText(body, "plain", "utf-8")

    headers = {
        "Message-ID": message_id,
        "Subject": subject,
        "From": sender,
        "To": to,
        "Cc": cc,
        "Date": date,
        "In-Reply-To": in_reply_to,
        "References": references,
    }
    for name, value in headers.items():
        if value is not None:
            msg[name] = value
    return msg.as_bytes()


@pytest.fixture
def make_message() -> Callable[..., bytes]:
    """Factory fixture for raw RFC822 messages."""
    return build_raw_message


# ============================================================================
# Archive fixtures
# ============================================================================


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "archive.db"


@pytest.fixture
def archive_store(db_path: Path):
    store = ArchiveStore(db_path)
    yield store
    store.close()


@pytest.fixture
def ingestor(archive_store: ArchiveStore) -> EmailIngestor:
    return EmailIngestor(
        archive_store,
        identities=SqliteIdentityResolver(archive_store),
        attachments=SqliteAttachmentStore(archive_store),
        own_domain="postgresql.org",
    )
