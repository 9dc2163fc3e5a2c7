"""Shared test fixtures and mock infrastructure for IMAP tests."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import pytest
from imapclient.exceptions import IMAPClientAbortError

from listarchive.archive.store import ArchiveStore
from listarchive.ingestion.imap.advisory_lock import AdvisoryLock, lock_key_for_label
from listarchive.ingestion.imap.client import ImapMailboxClient
from listarchive.ingestion.imap.idle_runner import ImapIdleRunner
from listarchive.ingestion.imap.ingestor import EmailIngestor
from listarchive.ingestion.imap.sync_state import ImapSyncStateStore


LABEL = "pgsql-hackers"


# ============================================================================
# Mock IMAP Server
# ============================================================================


class MockImapServer:
    """Mock IMAP server for testing.

    Stands in for :class:`imapclient.IMAPClient` in UID mode. Failures can be
    queued per operation with :meth:`fail_next`; each queued exception is
    raised once, in order.
    """

    def __init__(self) -> None:
        self.messages: Dict[int, bytes] = {}
        self.flags: Dict[int, List[bytes]] = {}
        self.selected_folder: Optional[str] = None
        self.idle_responses: List[List[Any]] = []
        self.failures: Dict[str, List[Exception]] = {}
        self.calls: List[str] = []
        self.connect_kwargs: List[Dict[str, Any]] = []
        self.logged_in_as: Optional[str] = None
        self.logouts = 0
        self.idle_timeouts: List[float] = []

    # -- test controls -----------------------------------------------------

    def add_message(self, uid: int, raw_message: bytes) -> None:
        self.messages[uid] = raw_message

    def fail_next(self, operation: str, exc: Optional[Exception] = None, times: int = 1) -> None:
        for _ in range(times):
            self.failures.setdefault(operation, []).append(
                exc or IMAPClientAbortError(f"{operation} aborted")
            )

    def _maybe_fail(self, operation: str) -> None:
        self.calls.append(operation)
        queued = self.failures.get(operation)
        if queued:
            raise queued.pop(0)

    # -- IMAPClient surface ------------------------------------------------

    def connect(self, **kwargs: Any) -> "MockImapServer":
        self.connect_kwargs.append(kwargs)
        self._maybe_fail("connect")
        return self

    def login(self, username: str, password: str) -> bytes:
        self._maybe_fail("login")
        self.logged_in_as = username
        return b"LOGIN completed"

    def select_folder(self, folder: str, readonly: bool = False) -> Dict[bytes, Any]:
        self._maybe_fail("select_folder")
        self.selected_folder = folder
        return {b"EXISTS": len(self.messages), b"UIDVALIDITY": 1}

    def folder_status(self, folder: str, what: Sequence[bytes]) -> Dict[bytes, Any]:
        self._maybe_fail("folder_status")
        return {b"MESSAGES": len(self.messages)}

    def fetch(self, messages: Union[str, Sequence[int]], data: Sequence[str]) -> Dict[int, Dict[bytes, Any]]:
        self._maybe_fail("fetch")
        results: Dict[int, Dict[bytes, Any]] = {}
        for uid in self._resolve(messages):
            entry: Dict[bytes, Any] = {b"UID": uid, b"SEQ": uid}
            if "RFC822" in data:
                entry[b"RFC822"] = self.messages[uid]
            results[uid] = entry
        return results

    def add_flags(self, messages: Sequence[int], flags: Sequence[bytes], silent: bool = False) -> None:
        self._maybe_fail("add_flags")
        for uid in messages:
            self.flags.setdefault(uid, []).extend(flags)

    def idle(self) -> None:
        self._maybe_fail("idle")

    def idle_check(self, timeout: Optional[float] = None) -> List[Any]:
        self.idle_timeouts.append(timeout)
        self._maybe_fail("idle_check")
        return self.idle_responses.pop(0) if self.idle_responses else []

    def idle_done(self) -> tuple:
        self._maybe_fail("idle_done")
        return (b"IDLE terminated", [])

    def logout(self) -> bytes:
        self.logouts += 1
        self._maybe_fail("logout")
        return b"LOGOUT"

    def shutdown(self) -> None:
        self.calls.append("shutdown")

    def _resolve(self, messages: Union[str, Sequence[int]]) -> List[int]:
        if isinstance(messages, str):
            if messages == "*":
                return [max(self.messages)] if self.messages else []
            start, _, end = messages.partition(":")
            low = int(start)
            high = int(end) if end else low
            return [uid for uid in sorted(self.messages) if low <= uid <= high]
        return [int(uid) for uid in messages if int(uid) in self.messages]


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def mock_server() -> MockImapServer:
    return MockImapServer()


@pytest.fixture
def imap_client(mock_server: MockImapServer) -> ImapMailboxClient:
    return ImapMailboxClient(
        mailbox_label=LABEL,
        username="archiver@example.org",
        password="app-password",
        batch_size=200,
        client_factory=mock_server.connect,
    )


@pytest.fixture
def state_store(db_path: Path):
    store = ImapSyncStateStore(db_path)
    yield store
    store.close()


@pytest.fixture
def lock_dir(tmp_path: Path) -> Path:
    return tmp_path / "locks"


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def make_runner(
    imap_client: ImapMailboxClient,
    ingestor: EmailIngestor,
    archive_store: ArchiveStore,
    state_store: ImapSyncStateStore,
    lock_dir: Path,
    sleeps: List[float],
):
    """Build a runner over the mock server with a recording sleeper."""

    def _make(**overrides: Any) -> ImapIdleRunner:
        options: Dict[str, Any] = dict(
            label=LABEL,
            client=imap_client,
            ingestor=ingestor,
            store=archive_store,
            state_store=state_store,
            lock=AdvisoryLock(lock_key_for_label(LABEL), lock_dir),
            sleeper=sleeps.append,
        )
        options.update(overrides)
        return ImapIdleRunner(**options)

    return _make
