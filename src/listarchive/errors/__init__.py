"""Centralized error definitions for listarchive.

This module provides the error hierarchy shared by the IMAP ingestion path,
the archive store and the CLI. Each error carries a stable ``code`` and a
``recoverable`` flag so the sync runner can decide between backoff and
termination without inspecting messages.

Usage:
    from listarchive.errors import (
        ListArchiveError,
        ImapProtocolError,
        format_error_for_cli,
    )

    try:
        client.connect()
    except ListArchiveError as e:
        print(format_error_for_cli(e))
"""

from __future__ import annotations

from listarchive.errors.user_messages import (
    format_error_for_cli,
    format_error_for_user,
    get_recovery_suggestion,
    get_user_message,
)


# =============================================================================
# Base Error
# =============================================================================


class ListArchiveError(Exception):
    """Base exception for all listarchive errors.

    Attributes:
        code: Error code for categorization
        user_message: User-friendly message (optional override)
        recoverable: Whether the error is potentially recoverable
        details: Additional error details for debugging
    """

    code: str = "LISTARCHIVE_ERROR"
    default_message: str = "An unexpected error occurred"
    recoverable: bool = False

    def __init__(
        self,
        message: str | None = None,
        *,
        user_message: str | None = None,
        details: dict | None = None,
    ) -> None:
        self.message = message or self.default_message
        self._user_message = user_message
        self.details = details or {}
        super().__init__(self.message)

    @property
    def user_message(self) -> str:
        """Get user-friendly message."""
        if self._user_message:
            return self._user_message
        return get_user_message(self)

    @property
    def recovery_suggestion(self) -> str:
        """Get recovery suggestion."""
        return get_recovery_suggestion(self)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "code": self.code,
            "message": self.message,
            "user_message": self.user_message,
            "recoverable": self.recoverable,
            "details": self.details,
        }


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(ListArchiveError):
    """Base error for configuration issues. Never retried."""

    code = "CONFIGURATION_ERROR"
    default_message = "Configuration error"


class InvalidConfigError(ConfigurationError):
    """Configuration is invalid."""

    code = "INVALID_CONFIG"
    default_message = "Invalid configuration"


class MissingConfigError(ConfigurationError):
    """Required configuration is missing."""

    code = "MISSING_CONFIG"
    default_message = "Missing required configuration"


# =============================================================================
# IMAP Protocol Errors
# =============================================================================


class ImapProtocolError(ListArchiveError):
    """Protocol or network failure talking to the IMAP server.

    Raised for failures during idle, search, fetch and flag updates. The
    sync runner answers these with reconnect-and-backoff.
    """

    code = "IMAP_PROTOCOL_ERROR"
    default_message = "IMAP protocol error"
    recoverable = True


class ImapConnectionError(ImapProtocolError):
    """Connection, login or mailbox selection failed."""

    code = "IMAP_CONNECTION_ERROR"
    default_message = "Cannot connect to the IMAP server"


# =============================================================================
# Lock Errors
# =============================================================================


class LockBackendError(ListArchiveError):
    """The lock backend itself is unusable (not plain contention)."""

    code = "LOCK_BACKEND_ERROR"
    default_message = "Lock backend unavailable"


# =============================================================================
# Ingestion / Storage Errors
# =============================================================================


class IngestionError(ListArchiveError):
    """Base error for per-message ingestion failures."""

    code = "INGESTION_ERROR"
    default_message = "Message ingestion failed"
    recoverable = True


class MessageParseError(IngestionError):
    """Raw message could not be parsed."""

    code = "MESSAGE_PARSE_ERROR"
    default_message = "Message could not be parsed"


class ArchiveStorageError(ListArchiveError):
    """Archive database failure."""

    code = "ARCHIVE_STORAGE_ERROR"
    default_message = "Archive storage failed"


# =============================================================================
# Error Handler
# =============================================================================


def handle_error(error: Exception) -> str:
    """Handle an error and return a user-friendly message.

    Args:
        error: The exception to handle

    Returns:
        User-friendly error message with recovery suggestion
    """
    return format_error_for_user(error)


def is_recoverable(error: Exception) -> bool:
    """Check if an error is potentially recoverable.

    Args:
        error: The exception to check

    Returns:
        True if the error is recoverable
    """
    if isinstance(error, ListArchiveError):
        return error.recoverable
    return False


__all__ = [
    # Base
    "ListArchiveError",
    # Configuration
    "ConfigurationError",
    "InvalidConfigError",
    "MissingConfigError",
    # IMAP
    "ImapProtocolError",
    "ImapConnectionError",
    # Lock
    "LockBackendError",
    # Ingestion / storage
    "IngestionError",
    "MessageParseError",
    "ArchiveStorageError",
    # Handlers
    "format_error_for_cli",
    "handle_error",
    "is_recoverable",
]
