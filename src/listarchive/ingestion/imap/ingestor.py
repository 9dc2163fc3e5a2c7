"""Idempotent ingestion of one raw message into the archive.

:class:`EmailIngestor` parses a raw message, drops it if it has no usable
Message-ID, applies only the explicitly requested updates when the message is
already archived, and otherwise writes the topic (if new), message, mentions
and attachments. The caller owns the transaction; the ingestor never commits.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Iterable, List, Optional

from listarchive.archive.collaborators import (
    ActivityNotifier,
    AttachmentStore,
    IdentityResolver,
    LoggingActivityNotifier,
    PatchHook,
    SqliteAttachmentStore,
    SqliteIdentityResolver,
    log_patch_attachment,
)
from listarchive.archive.models import Identity, Message
from listarchive.archive.store import ArchiveStore

from .email_parser import EmailAddress, EmailParser, ParsedEmail, sanitize_date
from .thread_resolver import ThreadResolver


logger = logging.getLogger(__name__)

DEFAULT_TITLE = "No title"
UNKNOWN_USER_NAME = "Unknown User"
UNKNOWN_USER_DOMAIN = "unknown.user"
NONAME = "Noname"

UPDATABLE_FIELDS = frozenset({"body", "date", "reply_to_message_id"})

_SLUG_UNSAFE = re.compile(r"[^a-z0-9]")


class IngestOutcome(str, Enum):
    CREATED = "created"
    DUPLICATE = "duplicate"
    FAILED = "failed"


@dataclass
class IngestResult:
    """Tagged result of :meth:`EmailIngestor.ingest`."""

    outcome: IngestOutcome
    message: Optional[Message] = None
    reason: Optional[str] = None
    attachment_count: int = 0
    patch_file_count: int = 0

    @classmethod
    def failed(cls, reason: str) -> "IngestResult":
        return cls(outcome=IngestOutcome.FAILED, reason=reason)

    @property
    def created(self) -> bool:
        return self.outcome == IngestOutcome.CREATED


class EmailIngestor:
    """Turn raw RFC822 bytes into archive rows."""

    def __init__(
        self,
        store: ArchiveStore,
        *,
        identities: IdentityResolver,
        attachments: AttachmentStore,
        notifier: Optional[ActivityNotifier] = None,
        patch_hook: Optional[PatchHook] = None,
        own_domain: Optional[str] = None,
        parser: Optional[EmailParser] = None,
        resolver: Optional[ThreadResolver] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        """Initialize the ingestor.

        Args:
            store: Archive store (the caller wraps ``ingest`` in its transaction)
            identities: Identity resolver for senders and recipients
            attachments: Attachment store
            notifier: Notified once per created message
            patch_hook: Called with each patch-like attachment; failures are logged
            own_domain: Recipients at this domain are not recorded as mentions
            parser: Email parser override
            resolver: Thread resolver override
            clock: Returns "now" as an aware datetime
        """
        self.store = store
        self.identities = identities
        self.attachments = attachments
        self.notifier = notifier
        self.patch_hook = patch_hook
        self.own_domain = own_domain.lower().lstrip("@") if own_domain else None
        self.parser = parser or EmailParser()
        self.resolver = resolver or ThreadResolver(store)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def with_defaults(
        cls,
        store: ArchiveStore,
        *,
        own_domain: Optional[str] = None,
        notifier: Optional[ActivityNotifier] = None,
        patch_hook: Optional[PatchHook] = None,
    ) -> "EmailIngestor":
        """Ingestor wired to the SQLite identity and attachment stores."""
        return cls(
            store,
            identities=SqliteIdentityResolver(store),
            attachments=SqliteAttachmentStore(store),
            notifier=notifier or LoggingActivityNotifier(),
            patch_hook=patch_hook or log_patch_attachment,
            own_domain=own_domain,
        )

    def ingest(
        self,
        raw: bytes,
        *,
        trust_date: bool = False,
        fallback_threading: bool = False,
        update_existing: Iterable[str] = (),
    ) -> IngestResult:
        """Ingest one raw message.

        Args:
            raw: RFC822 bytes
            trust_date: Store the parsed Date header without sanitation
            fallback_threading: Allow subject-based parent lookup
            update_existing: Fields to overwrite on a duplicate, any of
                ``body``, ``date`` and ``reply_to_message_id``

        Returns:
            IngestResult tagged CREATED, DUPLICATE or FAILED

        Raises:
            MessageParseError: If the bytes cannot be parsed
        """
        updates = frozenset(update_existing)
        unknown = updates - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported update fields: {sorted(unknown)}")

        parsed = self.parser.parse(raw)
        if not parsed.message_id:
            logger.warning("Discarding message without Message-ID")
            return IngestResult.failed("missing Message-ID")

        sent_at = self._sent_at(parsed, trust_date)

        existing = self.store.find_message_by_message_id(parsed.message_id)
        if existing is not None:
            self._apply_updates(existing, parsed, sent_at, updates)
            return IngestResult(outcome=IngestOutcome.DUPLICATE, message=existing)

        resolution = self.resolver.resolve(
            message_id=parsed.message_id,
            reply_to_message_id=parsed.in_reply_to,
            references=parsed.references,
            subject=parsed.subject,
            sent_at=sent_at,
            fallback_threading=fallback_threading,
        )
        if resolution.notes:
            logger.warning(
                f"Unresolved threading for {parsed.message_id}: {resolution.import_log}",
                extra={"message_id": parsed.message_id},
            )

        sender = self._resolve_sender(parsed, sent_at)
        subject = parsed.subject or DEFAULT_TITLE
        parent = resolution.parent
        if parent is not None:
            topic_id = parent.topic_id
        else:
            topic_id = self.store.create_topic(
                creator_id=sender.id, title=subject, created_at=sent_at
            ).id

        message = self.store.create_message(
            message_id=parsed.message_id,
            topic_id=topic_id,
            sender_id=sender.id,
            reply_to_message_id=parsed.in_reply_to,
            reply_to_id=parent.id if parent else None,
            subject=subject,
            body=parsed.body,
            created_at=sent_at,
            import_log=resolution.import_log,
        )

        self._add_mentions(message, [*parsed.to, *parsed.cc], sent_at)
        attachment_count, patch_count = self._store_attachments(message, parsed)

        if self.notifier is not None:
            self.notifier.notify_new_message(message)

        logger.info(
            f"Ingested {message.message_id} into topic {topic_id}",
            extra={"message_id": message.message_id, "topic_id": topic_id},
        )
        return IngestResult(
            outcome=IngestOutcome.CREATED,
            message=message,
            attachment_count=attachment_count,
            patch_file_count=patch_count,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _sent_at(self, parsed: ParsedEmail, trust_date: bool) -> datetime:
        now = self._clock()
        if parsed.date is None:
            return now
        if trust_date:
            date = parsed.date
            return date if date.tzinfo else date.replace(tzinfo=timezone.utc)
        return sanitize_date(parsed.date, parsed.raw_date, now=now)

    def _apply_updates(
        self,
        existing: Message,
        parsed: ParsedEmail,
        sent_at: datetime,
        updates: frozenset,
    ) -> None:
        columns = {}
        if "body" in updates:
            columns["body"] = parsed.body
        if "date" in updates:
            columns["created_at"] = sent_at
        if "reply_to_message_id" in updates:
            columns["reply_to_message_id"] = parsed.in_reply_to
        if columns:
            self.store.update_message_columns(existing.id, **columns)
            logger.info(
                f"Updated {sorted(columns)} on duplicate {existing.message_id}",
                extra={"message_id": existing.message_id},
            )

    def _resolve_identity(self, address: EmailAddress, seen_at: datetime) -> Identity:
        identity = self.identities.resolve_or_create_identity(
            address.address, address.display_name or NONAME, seen_at
        )
        self.identities.attach_identity(address.address, identity)
        return identity

    def _resolve_sender(self, parsed: ParsedEmail, sent_at: datetime) -> Identity:
        if parsed.sender is not None:
            return self._resolve_identity(parsed.sender, sent_at)

        name = parsed.raw_from.strip() or UNKNOWN_USER_NAME
        email = f"{_SLUG_UNSAFE.sub('_', name.lower())}@{UNKNOWN_USER_DOMAIN}"
        logger.warning(
            f"No parseable sender in {parsed.message_id}, using {email}",
            extra={"message_id": parsed.message_id},
        )
        return self.identities.resolve_or_create_identity(email, name, sent_at)

    def _add_mentions(
        self, message: Message, recipients: List[EmailAddress], seen_at: datetime
    ) -> None:
        identity_ids = []
        for recipient in recipients:
            if self._is_own_domain(recipient.address):
                continue
            identity_ids.append(self._resolve_identity(recipient, seen_at).id)
        self.store.add_mentions(message.id, identity_ids)

    def _is_own_domain(self, address: str) -> bool:
        if not self.own_domain:
            return False
        domain = address.rsplit("@", 1)[-1]
        return domain == self.own_domain or domain.endswith(f".{self.own_domain}")

    def _store_attachments(self, message: Message, parsed: ParsedEmail) -> tuple:
        stored = 0
        patches = 0
        for part in parsed.attachments:
            attachment = self.attachments.store(
                message, part.filename, part.content_type, part.data
            )
            stored += 1
            if not self.attachments.is_patch_like(attachment):
                continue
            patches += 1
            if self.patch_hook is None:
                continue
            try:
                self.patch_hook(attachment)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    f"Patch hook failed for attachment {attachment.id}: {exc}",
                    extra={"message_id": message.message_id, "attachment_id": attachment.id},
                )
        return stored, patches


__all__ = [
    "EmailIngestor",
    "IngestOutcome",
    "IngestResult",
    "UPDATABLE_FIELDS",
]
