"""User-friendly error messages for listarchive.

This module provides human-readable error messages and recovery suggestions
for all error types, so operators never have to read raw tracebacks to know
what to fix.

Privacy Note:
- Error messages NEVER include message bodies or credentials
"""

from __future__ import annotations

from typing import Any


# =============================================================================
# Error Message Catalog
# =============================================================================

ERROR_MESSAGES: dict[str, str] = {
    # Configuration errors
    "CONFIGURATION_ERROR": "There's a configuration issue.",
    "INVALID_CONFIG": "The configuration is invalid. Check settings.",
    "MISSING_CONFIG": "Required configuration is missing.",
    # IMAP errors
    "IMAP_PROTOCOL_ERROR": "The IMAP server returned an error or the connection dropped.",
    "IMAP_CONNECTION_ERROR": "Cannot connect to the IMAP server.",
    # Lock errors
    "LOCK_BACKEND_ERROR": "The runner lock could not be used.",
    # Ingestion errors
    "INGESTION_ERROR": "A message could not be ingested.",
    "MESSAGE_PARSE_ERROR": "A message could not be parsed.",
    "ARCHIVE_STORAGE_ERROR": "The archive database reported an error.",
    # Generic
    "LISTARCHIVE_ERROR": "An unexpected error occurred.",
    "UNKNOWN_ERROR": "Something went wrong.",
}


# =============================================================================
# Recovery Suggestions
# =============================================================================

RECOVERY_SUGGESTIONS: dict[str, str] = {
    "CONFIGURATION_ERROR": "Review the IMAP_* and LISTARCHIVE_* environment variables.",
    "INVALID_CONFIG": "Fix the reported field and restart.",
    "MISSING_CONFIG": "Set IMAP_MAILBOX_LABEL to a dedicated label (not INBOX).",
    "IMAP_PROTOCOL_ERROR": "The runner retries automatically; check network and server status if it persists.",
    "IMAP_CONNECTION_ERROR": "Check host, port, TLS setting and credentials (use an app password for Gmail).",
    "LOCK_BACKEND_ERROR": "Check that the lock directory exists and is writable.",
    "INGESTION_ERROR": "Inspect the logged UID; the runner continues with the next message.",
    "MESSAGE_PARSE_ERROR": "Inspect the logged UID; malformed messages are skipped.",
    "ARCHIVE_STORAGE_ERROR": "Check the database path, free disk space and file permissions.",
    "LISTARCHIVE_ERROR": "Retry the command; report the issue if it persists.",
    "UNKNOWN_ERROR": "Retry the command; report the issue if it persists.",
}


# =============================================================================
# Helper Functions
# =============================================================================


def _error_code(error: Any) -> str:
    if hasattr(error, "code"):
        return error.code
    if isinstance(error, str):
        return error
    return type(error).__name__.upper()


def get_user_message(error: Any) -> str:
    """Get user-friendly message for an error.

    Args:
        error: The error (can be Exception or error code string)

    Returns:
        User-friendly error message
    """
    return ERROR_MESSAGES.get(_error_code(error), ERROR_MESSAGES["UNKNOWN_ERROR"])


def get_recovery_suggestion(error: Any) -> str:
    """Get recovery suggestion for an error."""
    return RECOVERY_SUGGESTIONS.get(
        _error_code(error), RECOVERY_SUGGESTIONS["UNKNOWN_ERROR"]
    )


def format_error_for_user(error: Any) -> str:
    """Format error with message and recovery suggestion."""
    message = get_user_message(error)
    suggestion = get_recovery_suggestion(error)

    return f"{message}\n\nSuggestion: {suggestion}"


def format_error_for_cli(error: Any) -> str:
    """Format error for CLI output.

    Args:
        error: The error to format

    Returns:
        CLI-formatted error message
    """
    message = get_user_message(error)
    suggestion = get_recovery_suggestion(error)
    code = getattr(error, "code", "ERROR")

    lines = [
        f"Error [{code}]: {message}",
    ]

    detail = getattr(error, "message", None) or (str(error) if isinstance(error, Exception) else None)
    if detail and detail != message:
        lines.append(f"  {detail}")

    lines.append("")
    lines.append(f"Suggestion: {suggestion}")

    if hasattr(error, "details") and error.details:
        lines.append("")
        lines.append("Details:")
        for key, value in error.details.items():
            # Don't expose sensitive details
            if key not in ("password", "token", "body"):
                lines.append(f"  {key}: {value}")

    return "\n".join(lines)


__all__ = [
    "ERROR_MESSAGES",
    "RECOVERY_SUGGESTIONS",
    "format_error_for_cli",
    "format_error_for_user",
    "get_recovery_suggestion",
    "get_user_message",
]
