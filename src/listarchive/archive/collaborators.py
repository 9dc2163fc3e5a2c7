"""Interfaces the ingestor consumes, plus the default implementations.

Identity management, attachment storage, patch parsing and activity fan-out
live outside the ingestion core. The ingestor only depends on the protocols
below; the ``Sqlite*`` and ``Logging*`` classes are the implementations the
CLI wires in.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional, Protocol, runtime_checkable

from .models import Attachment, Identity, Message
from .store import ArchiveStore


logger = logging.getLogger(__name__)

PATCH_EXTENSIONS = (".patch", ".diff")
PATCH_PREFIXES = (b"diff ", b"--- ", b"*** ", b"Index:")
PATCH_MARKERS = (b"@@", b"***************")


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class IdentityResolver(Protocol):
    """Maps addresses to identities, creating them on first sight."""

    def resolve_or_create_identity(
        self, address: str, name: str, seen_at: datetime
    ) -> Identity: ...

    def attach_identity(self, address: str, identity: Identity) -> None: ...


@runtime_checkable
class AttachmentStore(Protocol):
    """Persists attachments and classifies them."""

    def store(
        self, message: Message, filename: Optional[str], content_type: str, data: bytes
    ) -> Attachment: ...

    def is_patch_like(self, ref: Attachment) -> bool: ...


@runtime_checkable
class ActivityNotifier(Protocol):
    """Fan-out hook called once per newly created message."""

    def notify_new_message(self, message: Message) -> None: ...


PatchHook = Callable[[Attachment], None]


def looks_like_patch(file_name: Optional[str], data: bytes) -> bool:
    """True for ``.patch``/``.diff`` names or bodies that read like a diff."""
    if file_name and file_name.endswith(PATCH_EXTENSIONS):
        return True
    return data.startswith(PATCH_PREFIXES) or any(marker in data for marker in PATCH_MARKERS)


# ---------------------------------------------------------------------------
# Default implementations
# ---------------------------------------------------------------------------


class SqliteIdentityResolver:
    """Identity resolver backed by the archive's ``identities`` table."""

    def __init__(self, store: ArchiveStore) -> None:
        self._store = store

    def resolve_or_create_identity(self, address: str, name: str, seen_at: datetime) -> Identity:
        existing = self._store.find_identity(address, name)
        if existing:
            return existing
        return self._store.create_identity(address, name, seen_at)

    def attach_identity(self, address: str, identity: Identity) -> None:
        # Person grouping is owned by the people service; nothing to link here.
        logger.debug(f"Identity {identity.id} seen for {address}")


class SqliteAttachmentStore:
    """Stores attachment bodies in the archive's ``attachments`` table."""

    def __init__(self, store: ArchiveStore) -> None:
        self._store = store

    def store(
        self, message: Message, filename: Optional[str], content_type: str, data: bytes
    ) -> Attachment:
        attachment = self._store.create_attachment(
            message_pk=message.id,
            file_name=filename,
            content_type=content_type,
            body=data,
            is_patch=looks_like_patch(filename, data),
        )
        self._store.mark_topic_has_attachments(message.topic_id)
        return attachment

    def is_patch_like(self, ref: Attachment) -> bool:
        return ref.is_patch


class LoggingActivityNotifier:
    """Notifier that only logs; replaced by the activity service in deployments."""

    def notify_new_message(self, message: Message) -> None:
        logger.info(
            f"New message {message.message_id} in topic {message.topic_id}",
            extra={"message_id": message.message_id, "topic_id": message.topic_id},
        )


def log_patch_attachment(ref: Attachment) -> None:
    """Default patch hook: record that a patch arrived."""
    logger.info(
        f"Patch attachment {ref.id} ({ref.file_name or 'unnamed'}) on message {ref.message_id}",
        extra={"attachment_id": ref.id},
    )


__all__ = [
    "ActivityNotifier",
    "AttachmentStore",
    "IdentityResolver",
    "LoggingActivityNotifier",
    "PatchHook",
    "SqliteAttachmentStore",
    "SqliteIdentityResolver",
    "log_patch_attachment",
    "looks_like_patch",
]
