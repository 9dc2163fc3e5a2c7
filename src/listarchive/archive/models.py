"""Archive records returned by :class:`~listarchive.archive.store.ArchiveStore`."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class Identity(BaseModel):
    """A sender/recipient alias, unique on (email, name)."""

    id: int
    email: str
    name: str
    created_at: datetime


class Topic(BaseModel):
    """A thread. Created once, by the first message with no resolvable parent."""

    id: int
    creator_id: int
    title: str
    created_at: datetime
    has_attachments: bool = False


class Message(BaseModel):
    """An archived email."""

    id: int
    message_id: str = Field(..., description="Normalized Message-ID, unique and immutable")
    topic_id: int
    sender_id: int
    reply_to_message_id: Optional[str] = Field(
        default=None, description="Normalized In-Reply-To as received"
    )
    reply_to_id: Optional[int] = Field(default=None, description="Resolved parent message")
    subject: str
    body: str
    created_at: datetime = Field(..., description="Sent time")
    import_log: Optional[str] = None


class Attachment(BaseModel):
    """A stored attachment."""

    id: int
    message_id: int
    file_name: Optional[str] = None
    content_type: str
    body: bytes
    is_patch: bool = False


__all__ = ["Attachment", "Identity", "Message", "Topic"]
