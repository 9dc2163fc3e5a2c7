"""IMAP mailbox client used by the sync runner.

This module wraps :class:`imapclient.IMAPClient` in the handful of UID-mode
operations the runner needs: connect and select the dedicated label, list UIDs
beyond a cursor in bounded windows, fetch raw RFC822 bytes, set ``\\Seen`` and
wait in IDLE. Every network or protocol failure is re-raised as
:class:`~listarchive.errors.ImapProtocolError` so the runner can treat them
uniformly as transient.
"""

from __future__ import annotations

import logging
import ssl
from contextlib import contextmanager
from enum import Enum
from typing import Any, Callable, Iterable, Iterator, List, Optional

try:
    from imapclient import IMAPClient  # type: ignore
    from imapclient.exceptions import IMAPClientError  # type: ignore
except Exception as exc:  # pragma: no cover - missing dependency
    raise RuntimeError(
        "imapclient must be installed to use the IMAP mailbox client"
    ) from exc

import certifi

from listarchive.configuration.settings import DEFAULT_MAILBOX, ImapSettings
from listarchive.errors import (
    ConfigurationError,
    ImapConnectionError,
    ImapProtocolError,
)


logger = logging.getLogger(__name__)

SEEN_FLAG = b"\\Seen"
DEFAULT_BATCH_SIZE = 200
DEFAULT_IDLE_TIMEOUT = 1500

# Untagged IDLE responses that mean the mailbox changed.
_ACTIVITY_MARKERS = (b"EXISTS", b"EXPUNGE", b"FETCH", b"RECENT")


# ---------------------------------------------------------------------------
# States and results
# ---------------------------------------------------------------------------


class ConnectionState(str, Enum):
    """Lifecycle states for the mailbox session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    IDLE = "idle"
    FAILED = "failed"


class IdleResult(str, Enum):
    """Outcome of a single IDLE wait."""

    ACTIVITY = "activity"
    TIMEOUT = "timeout"


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class ImapMailboxClient:
    """Single-mailbox IMAP session in UID mode."""

    def __init__(
        self,
        *,
        mailbox_label: Optional[str],
        host: str = "imap.gmail.com",
        port: int = 993,
        use_ssl: bool = True,
        username: Optional[str] = None,
        password: Optional[str] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        connection_timeout: int = 30,
        client_factory: Optional[Callable[..., Any]] = None,
    ) -> None:
        """Initialize the client without touching the network.

        Args:
            mailbox_label: Dedicated label/folder to select; INBOX is refused
            host: IMAP hostname
            port: IMAP port
            use_ssl: Use implicit TLS
            username: Login name, or None to skip login
            password: Login password
            batch_size: Max UIDs returned by :meth:`uids_after`
            connection_timeout: Socket timeout in seconds
            client_factory: Callable building the underlying IMAPClient

        Raises:
            ConfigurationError: If the label is missing, blank or INBOX
        """
        label = (mailbox_label or "").strip()
        if not label:
            raise ConfigurationError(
                "A mailbox label is required",
                details={"setting": "imap.mailbox_label"},
            )
        if label.upper() == DEFAULT_MAILBOX:
            raise ConfigurationError(
                "Refusing to ingest INBOX; configure a dedicated label",
                details={"setting": "imap.mailbox_label", "value": label},
            )
        if batch_size < 1:
            raise ConfigurationError(f"batch_size must be positive, got {batch_size}")

        self.mailbox_label = label
        self.host = host
        self.port = port
        self.use_ssl = use_ssl
        self.username = username
        self._password = password
        self.batch_size = batch_size
        self.connection_timeout = connection_timeout
        self._client_factory = client_factory

        self._client: Optional[Any] = None
        self.state = ConnectionState.DISCONNECTED

    @classmethod
    def from_settings(cls, settings: ImapSettings, **kwargs: Any) -> "ImapMailboxClient":
        password = settings.password.get_secret_value() if settings.password else None
        return cls(
            mailbox_label=settings.mailbox_label,
            host=settings.host,
            port=settings.port,
            use_ssl=settings.ssl,
            username=settings.username,
            password=password,
            batch_size=settings.batch_size,
            connection_timeout=settings.connection_timeout,
            **kwargs,
        )

    @property
    def is_connected(self) -> bool:
        return self._client is not None and self.state == ConnectionState.CONNECTED

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def connect(self) -> None:
        """Open a fresh session, log in and select the label.

        Any existing session is torn down first.

        Raises:
            ImapConnectionError: If connecting, login or select fails
        """
        self.disconnect()
        self.state = ConnectionState.CONNECTING
        logger.info(
            f"Connecting to {self.host}:{self.port} for label {self.mailbox_label}",
            extra={"host": self.host, "port": self.port, "label": self.mailbox_label},
        )
        try:
            factory = self._client_factory or IMAPClient
            if not self.use_ssl:
                logger.warning(f"TLS disabled for {self.host}:{self.port}")
            self._client = factory(
                host=self.host,
                port=self.port,
                ssl=self.use_ssl,
                ssl_context=self._create_ssl_context() if self.use_ssl else None,
                timeout=self.connection_timeout,
                use_uid=True,
            )
            if self.username:
                self._client.login(self.username, self._password or "")
            self._client.select_folder(self.mailbox_label)
        except (IMAPClientError, OSError) as exc:
            self.state = ConnectionState.FAILED
            self._cleanup_connection()
            raise ImapConnectionError(
                f"Cannot open {self.mailbox_label} on {self.host}:{self.port}: {exc}",
                details={"host": self.host, "port": self.port, "label": self.mailbox_label},
            ) from exc
        self.state = ConnectionState.CONNECTED

    def disconnect(self) -> None:
        """Best-effort logout. Never raises."""
        self._cleanup_connection()
        self.state = ConnectionState.DISCONNECTED

    def _cleanup_connection(self) -> None:
        if not self._client:
            return
        try:
            self._client.logout()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Error during logout", exc_info=exc)
            try:
                self._client.shutdown()
            except Exception:  # noqa: BLE001
                pass
        finally:
            self._client = None

    def _create_ssl_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context()
        context.load_verify_locations(certifi.where())
        context.minimum_version = ssl.TLSVersion.TLSv1_2
        context.check_hostname = True
        context.verify_mode = ssl.CERT_REQUIRED
        return context

    # ------------------------------------------------------------------
    # Mailbox operations
    # ------------------------------------------------------------------

    def uids_after(self, uid: int) -> List[int]:
        """Return up to ``batch_size`` UIDs strictly greater than ``uid``.

        UIDs are listed with bounded ``UID FETCH start:end`` windows. Windows
        that come back empty because of UID gaps are skipped until one
        returns UIDs or the mailbox's highest UID is passed.

        Args:
            uid: Cursor; values <= 0 start from the beginning

        Returns:
            Ascending list of UIDs
        """
        client = self._require_client()
        start = max(int(uid or 0), 0) + 1
        top = self.max_uid()
        with self._protocol_errors("uids_after"):
            while start <= top:
                end = min(top, start + self.batch_size - 1)
                response = client.fetch(f"{start}:{end}", ["UID"])
                uids = sorted(int(found) for found in response if int(found) >= start)
                if uids:
                    return uids[: self.batch_size]
                start = end + 1
        return []

    def max_uid(self) -> int:
        """Return the highest UID in the selected label, 0 when empty."""
        client = self._require_client()
        with self._protocol_errors("max_uid"):
            status = client.folder_status(self.mailbox_label, [b"MESSAGES"])
            if not int(status.get(b"MESSAGES", 0) or 0):
                return 0
            response = client.fetch("*", ["UID"])
        return max((int(found) for found in response), default=0)

    def fetch_raw(self, uid: int) -> Optional[bytes]:
        """Return the RFC822 bytes of ``uid`` or None if the server lost it."""
        client = self._require_client()
        with self._protocol_errors("fetch"):
            response = client.fetch([uid], ["RFC822"])
        data = response.get(uid) or response.get(int(uid)) or {}
        raw = data.get(b"RFC822")
        if raw is None:
            return None
        return bytes(raw)

    def mark_seen(self, uid: int) -> None:
        """Set ``\\Seen`` silently on ``uid``."""
        client = self._require_client()
        with self._protocol_errors("mark_seen"):
            client.add_flags([uid], [SEEN_FLAG], silent=True)

    def idle_once(self, timeout: float = DEFAULT_IDLE_TIMEOUT) -> IdleResult:
        """Block in IDLE until activity or ``timeout`` seconds pass."""
        client = self._require_client()
        with self._protocol_errors("idle"):
            client.idle()
            self.state = ConnectionState.IDLE
            try:
                responses = client.idle_check(timeout=timeout)
            finally:
                self.state = ConnectionState.CONNECTED
                client.idle_done()
        if self._has_activity(responses):
            logger.debug(f"IDLE activity on {self.mailbox_label}")
            return IdleResult.ACTIVITY
        return IdleResult.TIMEOUT

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_client(self) -> Any:
        if not self.is_connected:
            raise ImapConnectionError("Not connected", details={"label": self.mailbox_label})
        return self._client

    @contextmanager
    def _protocol_errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except ImapProtocolError:
            raise
        except (IMAPClientError, OSError) as exc:
            self.state = ConnectionState.FAILED
            raise ImapProtocolError(
                f"IMAP {operation} failed: {exc}",
                details={"operation": operation, "label": self.mailbox_label},
            ) from exc

    @staticmethod
    def _has_activity(responses: Optional[Iterable[Any]]) -> bool:
        for response in responses or []:
            parts = response if isinstance(response, (tuple, list)) else (response,)
            for part in parts:
                if isinstance(part, str):
                    part = part.encode("utf-8", errors="replace")
                if isinstance(part, bytes) and any(marker in part.upper() for marker in _ACTIVITY_MARKERS):
                    return True
        return False


__all__ = [
    "ConnectionState",
    "IdleResult",
    "ImapMailboxClient",
]
