"""Bulk import of mbox archives.

Historic list archives are published as mbox files. Messages are split on
``From <address>@<domain>`` separator lines only; a bare ``From `` is not
enough because inline git diffs contain such lines. Each message is ingested
in its own transaction with subject fallback threading enabled, since old
archives often lost their In-Reply-To headers.

A single message can also be re-imported by Message-ID, for example to pick
up a corrected body with ``update_existing``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from email import policy
from email.parser import BytesHeaderParser
from pathlib import Path
from typing import Iterable, Iterator, Optional, Union

from listarchive.archive.store import ArchiveStore
from listarchive.errors import ArchiveStorageError

from .ingestor import EmailIngestor, IngestOutcome, IngestResult, UPDATABLE_FIELDS
from .message_id import normalize_message_id


logger = logging.getLogger(__name__)

MBOX_SEPARATOR = re.compile(rb"^From [^@\s]+@[a-z\d\-]+(\.[a-z\d\-]+)*\.[a-z]+", re.IGNORECASE)


@dataclass
class ImportReport:
    """Totals of an mbox import."""

    processed: int = 0
    created: int = 0
    duplicates: int = 0
    failed: int = 0

    def merge(self, other: "ImportReport") -> None:
        self.processed += other.processed
        self.created += other.created
        self.duplicates += other.duplicates
        self.failed += other.failed


def iter_mbox_messages(lines: Iterable[bytes]) -> Iterator[bytes]:
    """Yield raw messages from mbox lines, separator lines excluded."""
    buffer: list = []
    for line in lines:
        if MBOX_SEPARATOR.match(line):
            if buffer:
                yield b"".join(buffer)
            buffer = []
        else:
            buffer.append(line)
    if buffer and any(part.strip() for part in buffer):
        yield b"".join(buffer)


class MboxImporter:
    """Feed mbox files through :class:`EmailIngestor`."""

    def __init__(
        self,
        store: ArchiveStore,
        ingestor: EmailIngestor,
        *,
        update_existing: Iterable[str] = (),
    ) -> None:
        updates = frozenset(update_existing)
        unknown = updates - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported update fields: {sorted(unknown)}")
        self.store = store
        self.ingestor = ingestor
        self.update_existing = updates

    def import_paths(self, paths: Iterable[Union[Path, str]]) -> ImportReport:
        report = ImportReport()
        for path in paths:
            report.merge(self.import_file(Path(path)))
        return report

    def import_file(self, path: Path) -> ImportReport:
        """Import one mbox file.

        Raises:
            ArchiveStorageError: If the archive itself fails
            OSError: If the file cannot be read
        """
        logger.info(f"Importing {path}", extra={"path": str(path)})
        report = ImportReport()
        with path.open("rb") as handle:
            for raw in iter_mbox_messages(handle):
                report.processed += 1
                self._import_message(raw, report, path)
        logger.info(
            f"Imported {path}: {report.created} created, {report.duplicates} duplicates, "
            f"{report.failed} failed",
            extra={"path": str(path), "processed": report.processed},
        )
        return report

    def import_message(self, path: Path, message_id: str) -> Optional[IngestResult]:
        """Re-ingest the first message in ``path`` whose Message-ID matches.

        Args:
            path: mbox file to scan
            message_id: Target id, in any form :func:`normalize_message_id` accepts

        Returns:
            The ingest result, or None if no message in the file matches

        Raises:
            ValueError: If ``message_id`` is blank after normalization
        """
        target = normalize_message_id(message_id)
        if not target:
            raise ValueError("message-id is blank after normalization")

        logger.info(f"Scanning {path} for {target}", extra={"path": str(path), "message_id": target})
        with Path(path).open("rb") as handle:
            for raw in iter_mbox_messages(handle):
                if _header_message_id(raw) != target:
                    continue
                with self.store.transaction():
                    result = self.ingestor.ingest(
                        raw,
                        fallback_threading=True,
                        update_existing=self.update_existing,
                    )
                logger.info(
                    f"Reimported {target} from {path} ({result.outcome.value})",
                    extra={"path": str(path), "message_id": target},
                )
                return result

        logger.warning(f"Message {target} not found in {path}", extra={"path": str(path)})
        return None

    def _import_message(self, raw: bytes, report: ImportReport, path: Path) -> None:
        try:
            with self.store.transaction():
                result = self.ingestor.ingest(
                    raw,
                    fallback_threading=True,
                    update_existing=self.update_existing,
                )
        except ArchiveStorageError:
            raise
        except Exception as exc:  # noqa: BLE001
            report.failed += 1
            logger.error(
                f"Failed to import message #{report.processed} from {path}: {exc}",
                extra={"path": str(path), "error_class": type(exc).__name__},
            )
            return

        if result.outcome == IngestOutcome.CREATED:
            report.created += 1
        elif result.outcome == IngestOutcome.DUPLICATE:
            report.duplicates += 1
        else:
            report.failed += 1
            logger.warning(
                f"Skipped message #{report.processed} from {path}: {result.reason}",
                extra={"path": str(path)},
            )


def _header_message_id(raw: bytes) -> str:
    headers = BytesHeaderParser(policy=policy.compat32).parsebytes(raw)
    return normalize_message_id(headers.get("Message-ID"))


__all__ = ["ImportReport", "MboxImporter", "iter_mbox_messages"]
