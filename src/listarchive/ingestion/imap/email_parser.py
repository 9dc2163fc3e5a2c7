"""RFC822/MIME parsing for list mail.

This module turns raw message bytes into a :class:`ParsedEmail`: normalized
Message-ID and threading headers, decoded subject and addresses, the main
plain-text body and the attachment parts. It also hosts :func:`sanitize_date`,
which repairs the implausible Date headers common in old list archives.

Parsing uses the standard library ``email`` package with ``policy.default``;
HTML-only messages are converted with ``html2text``.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone
from email import message_from_bytes
from email.header import decode_header
from email.message import Message as StdMessage
from email.policy import default as email_policy
from email.utils import getaddresses, parsedate_to_datetime
from typing import List, Optional

import html2text
from pydantic import BaseModel, Field

from listarchive.errors import MessageParseError

from .message_id import extract_references, normalize_message_id


logger = logging.getLogger(__name__)

# Signature and contact-card parts are never stored as attachments.
SKIPPED_ATTACHMENT_TYPES = frozenset(
    {
        "application/pgp-signature",
        "application/x-pkcs7-signature",
        "text/x-vcard",
        "text/vcard",
    }
)

EARLIEST_VALID_DATE = datetime(1996, 1, 1, tzinfo=timezone.utc)
FUTURE_DATE_TOLERANCE = timedelta(hours=24)
SENTINEL_DATE = datetime(2000, 1, 1, tzinfo=timezone.utc)
_HEADER_YEAR = re.compile(r"\b\d{1,2}\s+\w+\s+(\d{2,4})\b")


# ---------------------------------------------------------------------------
# Parsed models
# ---------------------------------------------------------------------------


class EmailAddress(BaseModel):
    """Parsed email address with display name."""

    address: str = Field(..., description="Email address (user@domain.com)")
    display_name: Optional[str] = Field(default=None, description="Display name")

    @classmethod
    def from_header(cls, header_value: Optional[str]) -> List["EmailAddress"]:
        """Parse email addresses from a header value.

        Args:
            header_value: Raw header value (e.g., "Jane <jane@example.com>, bob@example.com")

        Returns:
            Parsed addresses; entries without ``@`` are dropped
        """
        if not header_value or not str(header_value).strip():
            return []

        result = []
        for display_name, addr in getaddresses([str(header_value)]):
            addr = addr.strip()
            if not addr or addr.count("@") != 1:
                continue
            result.append(
                cls(
                    address=addr.lower(),
                    display_name=display_name.strip() if display_name else None,
                )
            )
        return result


class AttachmentPart(BaseModel):
    """Decoded attachment payload."""

    filename: Optional[str] = None
    content_type: str
    data: bytes = b""


class ParsedEmail(BaseModel):
    """Fields of a raw message the ingestor needs."""

    message_id: str = Field(..., description="Normalized Message-ID; empty when missing")
    subject: Optional[str] = None
    raw_from: str = ""
    from_addresses: List[EmailAddress] = Field(default_factory=list)
    to: List[EmailAddress] = Field(default_factory=list)
    cc: List[EmailAddress] = Field(default_factory=list)
    date: Optional[datetime] = Field(default=None, description="Parsed Date header")
    raw_date: Optional[str] = None
    in_reply_to: Optional[str] = Field(default=None, description="Normalized In-Reply-To")
    references: List[str] = Field(default_factory=list)
    body: str = ""
    attachments: List[AttachmentPart] = Field(default_factory=list)

    @property
    def sender(self) -> Optional[EmailAddress]:
        return self.from_addresses[0] if self.from_addresses else None


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class EmailParser:
    """Parse raw RFC822 bytes into :class:`ParsedEmail`."""

    def __init__(self, html_converter: Optional[html2text.HTML2Text] = None) -> None:
        if html_converter is None:
            html_converter = html2text.HTML2Text()
            html_converter.ignore_images = True
            html_converter.body_width = 0
        self.html_converter = html_converter

    def parse(self, raw: bytes) -> ParsedEmail:
        """Parse ``raw``.

        Raises:
            MessageParseError: If the bytes cannot be read as a message at all
        """
        try:
            msg = message_from_bytes(raw, policy=email_policy)
        except Exception as exc:  # noqa: BLE001
            raise MessageParseError(f"Cannot parse message: {exc}") from exc

        try:
            raw_date = self._header(msg, "Date")
            body_part = self._find_body_part(msg)
            return ParsedEmail(
                message_id=normalize_message_id(self._header(msg, "Message-ID")),
                subject=self._extract_subject(msg),
                raw_from=self._raw_header(msg, "From") or "",
                from_addresses=EmailAddress.from_header(self._header(msg, "From")),
                to=EmailAddress.from_header(self._header(msg, "To")),
                cc=EmailAddress.from_header(self._header(msg, "Cc")),
                date=self._parse_date(raw_date),
                raw_date=raw_date,
                in_reply_to=normalize_message_id(self._header(msg, "In-Reply-To")) or None,
                references=extract_references(self._header(msg, "References")),
                body=normalize_body(self._extract_body(msg, body_part)),
                attachments=self._extract_attachments(msg, body_part),
            )
        except MessageParseError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise MessageParseError(f"Cannot parse message: {exc}") from exc

    # ------------------------------------------------------------------
    # Headers
    # ------------------------------------------------------------------

    @staticmethod
    def _header(msg: StdMessage, name: str) -> Optional[str]:
        value = msg.get(name)
        if value is None:
            return None
        return str(value)

    @staticmethod
    def _raw_header(msg: StdMessage, name: str) -> Optional[str]:
        """Header text as received, before address parsing rewrites it."""
        for key, value in msg.raw_items():
            if key.lower() == name.lower():
                return " ".join(str(value).split())
        return None

    def _extract_subject(self, msg: StdMessage) -> Optional[str]:
        """Decode encoded words (RFC 2047) in the Subject header."""
        subject = self._header(msg, "Subject")
        if not subject:
            return None

        result = ""
        for part, charset in decode_header(subject):
            if isinstance(part, bytes):
                try:
                    result += part.decode(charset or "utf-8", errors="replace")
                except (UnicodeDecodeError, LookupError):
                    result += part.decode("utf-8", errors="replace")
            else:
                result += part

        result = " ".join(result.split())
        return result or None

    @staticmethod
    def _parse_date(raw_date: Optional[str]) -> Optional[datetime]:
        if not raw_date:
            return None
        try:
            return parsedate_to_datetime(raw_date)
        except (TypeError, ValueError, IndexError) as exc:
            logger.warning(f"Failed to parse Date header {raw_date!r}: {exc}")
            return None

    # ------------------------------------------------------------------
    # Body and attachments
    # ------------------------------------------------------------------

    @staticmethod
    def _is_attachment(part: StdMessage) -> bool:
        return part.get_content_disposition() == "attachment"

    def _find_body_part(self, msg: StdMessage) -> Optional[StdMessage]:
        """First non-attachment text/plain part, depth first."""
        if not msg.is_multipart():
            return msg
        for part in msg.walk():
            if part.is_multipart() or self._is_attachment(part):
                continue
            if part.get_content_type() == "text/plain":
                return part
        return None

    def _extract_body(self, msg: StdMessage, body_part: Optional[StdMessage]) -> str:
        if body_part is not None:
            text = self._decode_part(body_part)
            if body_part.get_content_type() == "text/html":
                text = self._html_to_text(text)
            return text

        for part in msg.walk():
            if part.get_content_type() == "text/html" and not self._is_attachment(part):
                return self._html_to_text(self._decode_part(part))
        return ""

    def _decode_part(self, part: StdMessage) -> str:
        encoding = part.get("Content-Transfer-Encoding", "7bit")
        try:
            content = part.get_content()
            if isinstance(content, bytes):
                return content.decode("utf-8", errors="replace")
            return str(content)
        except (LookupError, UnicodeError, ValueError, KeyError, AttributeError) as first_error:
            try:
                payload = part.get_payload(decode=True) or b""
                charset = part.get_content_charset() or "utf-8"
                try:
                    return payload.decode(charset, errors="replace")
                except LookupError:
                    return payload.decode("utf-8", errors="replace")
            except Exception:  # noqa: BLE001
                return (
                    "[Message body could not be decoded - "
                    f"encoding: {encoding}, error: {first_error}]"
                )

    def _html_to_text(self, html: str) -> str:
        try:
            return self.html_converter.handle(html).strip()
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"HTML to text conversion failed: {exc}")
            return html

    def _extract_attachments(
        self, msg: StdMessage, body_part: Optional[StdMessage]
    ) -> List[AttachmentPart]:
        attachments: List[AttachmentPart] = []
        if not msg.is_multipart():
            return attachments

        for part in msg.walk():
            if part.is_multipart() or part is body_part:
                continue
            filename = part.get_filename()
            if not (self._is_attachment(part) or filename):
                continue
            content_type = part.get_content_type()
            if content_type in SKIPPED_ATTACHMENT_TYPES:
                continue
            try:
                data = part.get_payload(decode=True) or b""
            except Exception as exc:  # noqa: BLE001
                logger.warning(f"Failed to decode attachment {filename!r}: {exc}")
                continue
            attachments.append(
                AttachmentPart(filename=filename, content_type=content_type, data=data)
            )
        return attachments


def normalize_body(text: str) -> str:
    """Unify line endings and drop NUL bytes."""
    return text.replace("\x00", "").replace("\r\n", "\n").replace("\r", "\n")


# ---------------------------------------------------------------------------
# Date sanitation
# ---------------------------------------------------------------------------


def _as_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def sanitize_date(
    parsed: Optional[datetime],
    raw_header: Optional[str],
    *,
    now: Optional[datetime] = None,
) -> datetime:
    """Return a plausible sent time for a message.

    Dates inside ``[1996-01-01, now + 24h]`` are kept. Otherwise the year is
    re-read from the raw header (two-digit years map to 19xx from 96 up and
    20xx below) and the date rebuilt with it. If that still falls outside the
    window, the sentinel 2000-01-01T00:00:00Z is returned.

    Args:
        parsed: Date parsed from the header; None when missing or unparseable
        raw_header: Raw Date header text
        now: Reference time (defaults to the current UTC time)

    Returns:
        A timezone-aware datetime
    """
    now = _as_aware(now) if now else datetime.now(timezone.utc)
    if parsed is None:
        return now

    parsed = _as_aware(parsed)
    latest = now + FUTURE_DATE_TOLERANCE
    if EARLIEST_VALID_DATE <= parsed <= latest:
        return parsed

    candidate = parsed
    match = _HEADER_YEAR.search(raw_header or "")
    if match:
        year = int(match.group(1))
        if year < 100:
            year = 1900 + year if year >= 96 else 2000 + year
        try:
            candidate = parsed.replace(year=year)
        except ValueError:
            candidate = parsed

    if not (EARLIEST_VALID_DATE <= candidate <= latest):
        logger.warning(
            f"Implausible Date header {raw_header!r}, using sentinel date",
            extra={"raw_date": raw_header},
        )
        return SENTINEL_DATE

    logger.warning(
        f"Rebuilt implausible Date header {raw_header!r} as {candidate.isoformat()}",
        extra={"raw_date": raw_header},
    )
    return candidate


__all__ = [
    "AttachmentPart",
    "EmailAddress",
    "EmailParser",
    "ParsedEmail",
    "SENTINEL_DATE",
    "SKIPPED_ATTACHMENT_TYPES",
    "normalize_body",
    "sanitize_date",
]
