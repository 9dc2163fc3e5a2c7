"""Parent lookup for incoming messages.

A message joins an existing topic when its parent can be found in the
archive: first by In-Reply-To, then by the References chain, and optionally by
a subject match for replies whose headers were stripped (common in imported
mbox files). Every reference that could not be resolved is recorded in the
message's import log.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from listarchive.archive.models import Message
from listarchive.archive.store import ArchiveStore

from .message_id import normalize_message_id


logger = logging.getLogger(__name__)

SUBJECT_FALLBACK_WINDOW_BEFORE = timedelta(days=30)
SUBJECT_FALLBACK_WINDOW_AFTER = timedelta(days=1)
SUBJECT_FALLBACK_CANDIDATE_LIMIT = 300
MESSAGE_ID_SIMILARITY_THRESHOLD = 0.7

SUBJECT_FALLBACK_NOTE = "Resolved by subject fallback"
IMPORT_LOG_SEPARATOR = " | "

_REPLY_PREFIX = re.compile(r"^\s*(re|aw|fwd):", re.IGNORECASE)
_LIST_TAG = re.compile(r"\[[^\]]+\]\s*")
_REPLY_MARKERS = re.compile(r"(\s*(re|aw|fwd):\s*)+", re.IGNORECASE)
_FWD_MARKER = re.compile(r"\(fwd\)", re.IGNORECASE)


def normalize_subject(subject: Optional[str]) -> str:
    """Reduce a subject to the form used for fallback matching.

    Drops ``[list]`` tags, every ``re:``/``aw:``/``fwd:`` marker wherever it
    appears and ``(fwd)`` markers, then lowercases and collapses whitespace.
    """
    text = (subject or "").lower().strip()
    text = _LIST_TAG.sub(" ", text)
    text = _REPLY_MARKERS.sub(" ", text)
    text = _FWD_MARKER.sub(" ", text)
    return " ".join(text.split())


def is_reply_subject(subject: Optional[str]) -> bool:
    return bool(subject and _REPLY_PREFIX.match(subject))


def levenshtein_distance(a: str, b: str) -> int:
    if a == b:
        return 0
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            current.append(
                min(
                    previous[j] + 1,
                    current[j - 1] + 1,
                    previous[j - 1] + (char_a != char_b),
                )
            )
        previous = current
    return previous[-1]


def message_id_similarity(a: str, b: str) -> float:
    """Normalized Levenshtein similarity in ``[0, 1]``; 0.0 if either is empty."""
    if not a or not b:
        return 0.0
    return 1.0 - levenshtein_distance(a, b) / max(len(a), len(b))


@dataclass
class ThreadResolution:
    """Resolved parent plus the notes explaining how it was (not) found."""

    parent: Optional[Message] = None
    notes: List[str] = field(default_factory=list)

    @property
    def import_log(self) -> Optional[str]:
        return IMPORT_LOG_SEPARATOR.join(self.notes) if self.notes else None


class ThreadResolver:
    """Find the parent message of an incoming message in the archive."""

    def __init__(
        self,
        store: ArchiveStore,
        *,
        similarity_threshold: float = MESSAGE_ID_SIMILARITY_THRESHOLD,
        window_before: timedelta = SUBJECT_FALLBACK_WINDOW_BEFORE,
        window_after: timedelta = SUBJECT_FALLBACK_WINDOW_AFTER,
        candidate_limit: int = SUBJECT_FALLBACK_CANDIDATE_LIMIT,
    ) -> None:
        self.store = store
        self.similarity_threshold = similarity_threshold
        self.window_before = window_before
        self.window_after = window_after
        self.candidate_limit = candidate_limit

    def resolve(
        self,
        *,
        message_id: str,
        reply_to_message_id: Optional[str],
        references: Sequence[str],
        subject: Optional[str],
        sent_at: datetime,
        fallback_threading: bool = False,
    ) -> ThreadResolution:
        """Resolve the parent of a message.

        Args:
            message_id: Normalized id of the incoming message
            reply_to_message_id: Normalized In-Reply-To, if any
            references: Normalized References, oldest first
            subject: Decoded subject
            sent_at: Sent time of the incoming message
            fallback_threading: Allow the subject fallback for reply subjects

        Returns:
            ThreadResolution with the parent (or None) and import-log notes
        """
        resolution = ThreadResolution()

        if reply_to_message_id:
            resolution.parent = self.store.find_message_by_message_id(reply_to_message_id)
            if resolution.parent is None:
                resolution.notes.append(f"Reply to msg id not found: {reply_to_message_id}")

        if resolution.parent is None:
            for reference in references:
                resolution.parent = self.store.find_message_by_message_id(reference)
                if resolution.parent is not None:
                    break
                resolution.notes.append(f"Reference msg id not found: {reference}")

        if resolution.parent is None and fallback_threading and is_reply_subject(subject):
            resolution.parent = self.find_by_subject(
                subject or "",
                message_id=message_id,
                references=references,
                sent_at=sent_at,
            )
            if resolution.parent is not None:
                resolution.notes.append(SUBJECT_FALLBACK_NOTE)

        if resolution.notes:
            logger.debug(
                f"Threading notes for {message_id}: {resolution.import_log}",
                extra={"message_id": message_id},
            )
        return resolution

    def find_by_subject(
        self,
        subject: str,
        *,
        message_id: str,
        references: Sequence[str],
        sent_at: datetime,
    ) -> Optional[Message]:
        """Pick a parent among recent messages with the same normalized subject.

        Among matches, the first (newest) whose Message-ID is similar to the
        new id or one of its references wins; otherwise the newest match.
        """
        target = normalize_subject(subject)
        if not target:
            return None

        candidates = self.store.recent_messages(
            sent_at - self.window_before,
            sent_at + self.window_after,
            self.candidate_limit,
        )
        matched = [msg for msg in candidates if normalize_subject(msg.subject) == target]
        if not matched:
            return None

        target_ids = [
            normalized
            for normalized in (normalize_message_id(ref) for ref in (message_id, *references))
            if normalized
        ]
        for candidate in matched:
            if any(
                message_id_similarity(candidate.message_id, target_id) >= self.similarity_threshold
                for target_id in target_ids
            ):
                return candidate
        return matched[0]


__all__ = [
    "ThreadResolution",
    "ThreadResolver",
    "is_reply_subject",
    "levenshtein_distance",
    "message_id_similarity",
    "normalize_subject",
]
