"""Tests for mbox archive import."""

from __future__ import annotations

from pathlib import Path

import pytest

from listarchive.ingestion.imap.ingestor import IngestOutcome
from listarchive.ingestion.imap.mbox_import import (
    MBOX_SEPARATOR,
    MboxImporter,
    iter_mbox_messages,
)


def _mbox(*messages: bytes) -> bytes:
    chunks = []
    for raw in messages:
        chunks.append(b"From alice@example.org Mon Jan  6 10:00:00 2025\n")
        chunks.append(raw.replace(b"\r\n", b"\n"))
        chunks.append(b"\n")
    return b"".join(chunks)


@pytest.fixture
def importer(archive_store, ingestor) -> MboxImporter:
    return MboxImporter(archive_store, ingestor)


@pytest.mark.parametrize(
    "line, expected",
    [
        (b"From alice@example.org Mon Jan  6 10:00:00 2025\n", True),
        (b"From pgsql-hackers-owner+M1@lists.postgresql.org Tue Feb 4 2025\n", True),
        (b"from BOB@Mail.Example.COM Sat Jan 1 1999\n", True),
        (b"From 1a2b3c4d Mon Sep 17 00:00:00 2001\n", False),
        (b"From nobody Mon Jan  6 10:00:00 2025\n", False),
        (b" From alice@example.org Mon Jan  6 2025\n", False),
    ],
)
def test_separator(line, expected):
    """Test only ``From <address>`` lines split messages."""
    assert bool(MBOX_SEPARATOR.match(line)) is expected


def test_iter_mbox_messages_keeps_last_message(make_message):
    """Test the final message is yielded without a trailing separator."""
    data = _mbox(
        make_message(message_id="<a@example.org>"),
        make_message(message_id="<b@example.org>"),
    )

    messages = list(iter_mbox_messages(data.splitlines(keepends=True)))

    assert len(messages) == 2
    assert b"<a@example.org>" in messages[0]
    assert b"<b@example.org>" in messages[1]
    assert not messages[0].startswith(b"From ")


def test_git_diff_from_line_does_not_split():
    """Test a format-patch header inside a body stays in the message."""
    lines = [
        b"From alice@example.org Mon Jan  6 10:00:00 2025\n",
        b"Message-ID: <patch@example.org>\n",
        b"\n",
        b"From 1a2b3c4d5e Mon Sep 17 00:00:00 2001\n",
        b"Subject: [PATCH] fix\n",
    ]

    messages = list(iter_mbox_messages(lines))

    assert len(messages) == 1
    assert b"From 1a2b3c4d5e" in messages[0]


def test_iter_mbox_messages_ignores_blank_tail():
    assert list(iter_mbox_messages([b"\n", b"  \n"])) == []


def test_import_file(importer, archive_store, make_message, tmp_path: Path):
    """Test messages are created and threaded by subject."""
    path = tmp_path / "pgsql-hackers.2025-01"
    path.write_bytes(
        _mbox(
            make_message(message_id="<root@example.org>", subject="Vacuum"),
            make_message(
                message_id="<reply@example.org>",
                subject="Re: Vacuum",
                date="Tue, 07 Jan 2025 10:00:00 +0000",
            ),
            make_message(message_id=None, subject="lost"),
        )
    )

    report = importer.import_file(path)

    assert report.processed == 3
    assert report.created == 2
    assert report.failed == 1
    root = archive_store.find_message_by_message_id("root@example.org")
    reply = archive_store.find_message_by_message_id("reply@example.org")
    assert reply.topic_id == root.topic_id
    assert reply.import_log == "Resolved by subject fallback"


def test_reimport_counts_duplicates(importer, make_message, tmp_path: Path):
    path = tmp_path / "archive.mbox"
    path.write_bytes(_mbox(make_message()))

    importer.import_file(path)
    report = importer.import_paths([path])

    assert report.duplicates == 1
    assert report.created == 0


def test_reimport_updates_requested_fields(archive_store, ingestor, make_message, tmp_path: Path):
    """Test ``update_existing`` rewrites bodies of known messages."""
    first = tmp_path / "first.mbox"
    first.write_bytes(_mbox(make_message(body="old\n")))
    second = tmp_path / "second.mbox"
    second.write_bytes(_mbox(make_message(body="new\n")))

    MboxImporter(archive_store, ingestor).import_file(first)
    MboxImporter(archive_store, ingestor, update_existing=["body"]).import_file(second)

    assert archive_store.find_message_by_message_id("msg-1@example.org").body == "new\n"


def test_unknown_update_field(archive_store, ingestor):
    with pytest.raises(ValueError):
        MboxImporter(archive_store, ingestor, update_existing=["subject"])


def test_failing_message_does_not_stop_import(archive_store, ingestor, make_message, tmp_path: Path):
    """Test one broken message is counted and the rest imported."""

    class FlakyIngestor:
        def ingest(self, raw, **kwargs):
            if b"<bad@example.org>" in raw:
                raise RuntimeError("boom")
            return ingestor.ingest(raw, **kwargs)

    path = tmp_path / "archive.mbox"
    path.write_bytes(
        _mbox(
            make_message(message_id="<bad@example.org>"),
            make_message(message_id="<good@example.org>"),
        )
    )

    report = MboxImporter(archive_store, FlakyIngestor()).import_file(path)

    assert report.failed == 1
    assert report.created == 1
    assert archive_store.count_messages() == 1


# ---------------------------------------------------------------------------
# Single message re-import
# ---------------------------------------------------------------------------


def test_import_message_updates_only_target(archive_store, ingestor, make_message, tmp_path: Path):
    """Test only the matching message is re-ingested with the requested updates."""
    first = tmp_path / "first.mbox"
    first.write_bytes(
        _mbox(
            make_message(message_id="<a@example.org>", body="old a\n"),
            make_message(message_id="<b@example.org>", body="old b\n"),
        )
    )
    MboxImporter(archive_store, ingestor).import_file(first)
    corrected = tmp_path / "corrected.mbox"
    corrected.write_bytes(
        _mbox(
            make_message(message_id="<a@example.org>", body="new a\n"),
            make_message(message_id="<b@example.org>", body="new b\n"),
        )
    )
    importer = MboxImporter(archive_store, ingestor, update_existing=["body"])

    result = importer.import_message(corrected, "Message-ID: <b@example.org>")

    assert result.outcome == IngestOutcome.DUPLICATE
    assert archive_store.find_message_by_message_id("b@example.org").body == "new b\n"
    assert archive_store.find_message_by_message_id("a@example.org").body == "old a\n"


def test_import_message_creates_missing_message(importer, archive_store, make_message, tmp_path: Path):
    path = tmp_path / "archive.mbox"
    path.write_bytes(
        _mbox(
            make_message(message_id="<a@example.org>"),
            make_message(message_id="<b@example.org>"),
        )
    )

    result = importer.import_message(path, "b@example.org")

    assert result.outcome == IngestOutcome.CREATED
    assert archive_store.count_messages() == 1


def test_import_message_not_found(importer, archive_store, make_message, tmp_path: Path):
    path = tmp_path / "archive.mbox"
    path.write_bytes(_mbox(make_message(message_id="<a@example.org>")))

    assert importer.import_message(path, "<missing@example.org>") is None
    assert archive_store.count_messages() == 0


def test_import_message_blank_target(importer, tmp_path: Path):
    path = tmp_path / "archive.mbox"
    path.write_bytes(b"")

    with pytest.raises(ValueError):
        importer.import_message(path, "<>")
