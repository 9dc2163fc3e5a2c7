"""IMAP ingestion: mailbox client, ingestor, threading and the sync runner."""

from .advisory_lock import AdvisoryLock, lock_key_for_label
from .client import ConnectionState, IdleResult, ImapMailboxClient
from .email_parser import (
    AttachmentPart,
    EmailAddress,
    EmailParser,
    ParsedEmail,
    sanitize_date,
)
from .idle_runner import BackoffPolicy, ImapIdleRunner, RunnerPhase, SyncMetrics
from .ingestor import EmailIngestor, IngestOutcome, IngestResult
from .mbox_import import ImportReport, MboxImporter
from .message_id import extract_references, normalize_message_id
from .sync_state import ImapSyncState, ImapSyncStateStore
from .thread_resolver import ThreadResolution, ThreadResolver, normalize_subject

__all__ = [
    "AdvisoryLock",
    "AttachmentPart",
    "BackoffPolicy",
    "ConnectionState",
    "EmailAddress",
    "EmailIngestor",
    "EmailParser",
    "IdleResult",
    "ImapIdleRunner",
    "ImapMailboxClient",
    "ImapSyncState",
    "ImapSyncStateStore",
    "ImportReport",
    "IngestOutcome",
    "IngestResult",
    "MboxImporter",
    "ParsedEmail",
    "RunnerPhase",
    "SyncMetrics",
    "ThreadResolution",
    "ThreadResolver",
    "extract_references",
    "lock_key_for_label",
    "normalize_message_id",
    "normalize_subject",
    "sanitize_date",
]
