"""Message archive: SQLite store, records and ingestion collaborators."""

from .collaborators import (
    ActivityNotifier,
    AttachmentStore,
    IdentityResolver,
    LoggingActivityNotifier,
    PatchHook,
    SqliteAttachmentStore,
    SqliteIdentityResolver,
    log_patch_attachment,
    looks_like_patch,
)
from .models import Attachment, Identity, Message, Topic
from .store import ArchiveStore

__all__ = [
    "ActivityNotifier",
    "ArchiveStore",
    "Attachment",
    "AttachmentStore",
    "Identity",
    "IdentityResolver",
    "LoggingActivityNotifier",
    "Message",
    "PatchHook",
    "SqliteAttachmentStore",
    "SqliteIdentityResolver",
    "Topic",
    "log_patch_attachment",
    "looks_like_patch",
]
