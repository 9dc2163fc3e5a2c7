"""Long-running IMAP IDLE sync runner.

The runner keeps one mailbox label mirrored into the archive:

1. Take the per-label :class:`AdvisoryLock` (try once; a held lock is a no-op).
2. Connect and catch up on everything beyond the stored UID cursor.
3. Loop: IDLE until activity or timeout, run one incremental pass, record the
   cycle's counters in :class:`ImapSyncState`.

Each message is ingested in its own archive transaction. Only after commit is
it marked ``\\Seen`` and the cursor moved to its UID. IMAP protocol errors
are transient: they are recorded, followed by an exponential backoff sleep,
and the session is re-opened (with a catch-up pass) on the next cycle. Any
other exception is fatal: it is recorded, counted as an error and re-raised
after cleanup.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from listarchive.archive.store import ArchiveStore
from listarchive.configuration.settings import ArchiveSettings, DEFAULT_MAILBOX, Settings
from listarchive.errors import ArchiveStorageError, ConfigurationError, ImapProtocolError

from .advisory_lock import AdvisoryLock, lock_key_for_label
from .client import DEFAULT_IDLE_TIMEOUT, ImapMailboxClient
from .ingestor import EmailIngestor, IngestOutcome
from .sync_state import ImapSyncState, ImapSyncStateStore, utcnow


logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 500


# ---------------------------------------------------------------------------
# Phases, metrics and backoff
# ---------------------------------------------------------------------------


class RunnerPhase(str, Enum):
    """Where the runner currently is in its lifecycle."""

    IDLE = "idle"
    CONNECTING = "connecting"
    CATCHING_UP = "catching_up"
    WAITING = "waiting"
    SYNCING = "syncing"
    BACKOFF = "backoff"
    STOPPED = "stopped"


@dataclass
class SyncMetrics:
    """Counters of one incremental pass."""

    fetched: int = 0
    ingested: int = 0
    duplicate: int = 0
    failed: int = 0
    attachments: int = 0
    patch_files: int = 0
    backlog: int = 0

    def to_dict(self) -> dict:
        return {
            "fetched": self.fetched,
            "ingested": self.ingested,
            "duplicate": self.duplicate,
            "failed": self.failed,
            "attachments": self.attachments,
            "patch_files": self.patch_files,
            "backlog": self.backlog,
        }


@dataclass
class BackoffPolicy:
    """Exponential backoff without jitter: 1, 2, 4, ... capped at ``max_delay``."""

    initial_delay: int = 1
    max_delay: int = 60
    exponential_base: int = 2
    current: int = field(default=0, init=False)

    def __post_init__(self) -> None:
        self.current = self.initial_delay

    def next_delay(self) -> int:
        """Return the delay to sleep now and double the stored value."""
        delay = min(self.current, self.max_delay)
        self.current = min(self.current * self.exponential_base, self.max_delay)
        return delay

    def reset(self) -> None:
        self.current = self.initial_delay


def short_error(exc: BaseException) -> str:
    message = str(exc) or type(exc).__name__
    if len(message) > MAX_ERROR_LENGTH:
        return message[:MAX_ERROR_LENGTH] + "…"
    return message


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class ImapIdleRunner:
    """Keeps one mailbox label synchronized into the archive."""

    def __init__(
        self,
        *,
        label: str,
        client: ImapMailboxClient,
        ingestor: EmailIngestor,
        store: ArchiveStore,
        state_store: ImapSyncStateStore,
        lock: Optional[AdvisoryLock] = None,
        lock_dir: Optional[Path] = None,
        trust_date: bool = True,
        idle_timeout: int = DEFAULT_IDLE_TIMEOUT,
        backoff: Optional[BackoffPolicy] = None,
        sleeper: Optional[Callable[[float], object]] = None,
    ) -> None:
        """Initialize the runner.

        Args:
            label: Mailbox label (never INBOX)
            client: IMAP client for the label
            ingestor: Message ingestor
            store: Archive store providing the per-message transaction
            state_store: Sync state persistence
            lock: Runner lock (defaults to one keyed ``imap_idle:<label>``)
            lock_dir: Directory for the default lock file
            trust_date: Store Date headers without sanitation
            idle_timeout: Default IDLE wait per cycle in seconds
            backoff: Backoff policy for transient errors
            sleeper: Called with the backoff delay; defaults to a wait that
                returns early when a stop is requested

        Raises:
            ConfigurationError: If the label is missing or INBOX
        """
        label = (label or "").strip()
        if not label or label.upper() == DEFAULT_MAILBOX:
            raise ConfigurationError(
                "IMAP_MAILBOX_LABEL is required and must point to a dedicated label (not INBOX)",
                details={"setting": "imap.mailbox_label"},
            )
        self.label = label
        self.client = client
        self.ingestor = ingestor
        self.store = store
        self.state_store = state_store
        self.lock = lock or AdvisoryLock(
            lock_key_for_label(label), lock_dir or ArchiveSettings().lock_dir
        )
        self.trust_date = trust_date
        self.idle_timeout = idle_timeout
        self.backoff = backoff or BackoffPolicy()

        self._stop = threading.Event()
        self._sleep = sleeper or self._stop.wait
        self._state: Optional[ImapSyncState] = None
        self.phase = RunnerPhase.IDLE

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        store: Optional[ArchiveStore] = None,
        state_store: Optional[ImapSyncStateStore] = None,
    ) -> "ImapIdleRunner":
        """Build a runner and its collaborators from settings."""
        imap = settings.require_imap()
        store = store or ArchiveStore(settings.archive.database_path)
        state_store = state_store or ImapSyncStateStore(settings.archive.database_path)
        return cls(
            label=imap.mailbox_label,
            client=ImapMailboxClient.from_settings(imap),
            ingestor=EmailIngestor.with_defaults(store, own_domain=settings.archive.own_domain),
            store=store,
            state_store=state_store,
            lock_dir=settings.archive.lock_dir,
            trust_date=imap.trust_dates,
            idle_timeout=imap.idle_timeout_seconds,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> ImapSyncState:
        if self._state is None:
            self._state = self.state_store.for_label(self.label)
        return self._state

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def snapshot(self) -> ImapSyncState:
        """Read-only copy of the current diagnostic state."""
        return self.state.model_copy(deep=True)

    def close(self) -> None:
        """Close the archive and sync state connections."""
        self.store.close()
        self.state_store.close()

    def request_stop(self) -> None:
        """Ask the runner to stop at the next cycle boundary."""
        logger.info(f"Stop requested for {self.label}", extra={"label": self.label})
        self._stop.set()

    def run(self, max_cycles: Optional[int] = None, idle_timeout: Optional[int] = None) -> bool:
        """Run until stopped, ``max_cycles`` cycles pass or a fatal error.

        Args:
            max_cycles: Idle cycles to run after the initial catch-up (None = forever)
            idle_timeout: IDLE wait per cycle in seconds

        Returns:
            False if another runner holds the lock, True after a normal stop

        Raises:
            Exception: Any non-protocol error, after it is recorded
        """
        timeout = idle_timeout or self.idle_timeout
        if not self._acquire_lock():
            logger.info(
                f"Runner for {self.label} already active elsewhere",
                extra={"label": self.label},
            )
            return False

        logger.info(f"Runner started for {self.label}", extra={"label": self.label})
        try:
            self._main_loop(max_cycles, timeout)
        except Exception as exc:
            logger.error(
                f"IMAP runner fatal error: {type(exc).__name__}: {exc}",
                extra={"label": self.label, "error_class": type(exc).__name__},
            )
            self._record_error(exc)
            raise
        finally:
            self._shutdown()
        return True

    def sync_once(self) -> Optional[SyncMetrics]:
        """Lock, connect, run one incremental pass and disconnect.

        Returns:
            Pass metrics, or None if another runner holds the lock
        """
        if not self._acquire_lock():
            logger.info(
                f"Runner for {self.label} already active elsewhere",
                extra={"label": self.label},
            )
            return None

        try:
            self.phase = RunnerPhase.CONNECTING
            self.client.connect()
            started = utcnow()
            self.state.last_cycle_started_at = started
            metrics = self._incremental_pass()
            self._record_cycle(started, metrics)
            return metrics
        except Exception as exc:
            self._record_error(exc)
            raise
        finally:
            self._shutdown()

    def _acquire_lock(self) -> bool:
        try:
            return self.lock.acquire()
        except Exception as exc:
            logger.error(
                f"Cannot acquire runner lock for {self.label}: {type(exc).__name__}: {exc}",
                extra={"label": self.label, "error_class": type(exc).__name__},
            )
            self._record_error(exc)
            raise

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def _main_loop(self, max_cycles: Optional[int], idle_timeout: int) -> None:
        cycles = 0
        needs_connect = True
        while not self._stop.is_set():
            counted = False
            try:
                if needs_connect:
                    self._connect_and_catch_up()
                    needs_connect = False
                    if self._stop.is_set():
                        break
                if max_cycles is not None and cycles >= max_cycles:
                    break
                cycles += 1
                counted = True
                self._run_cycle(idle_timeout)
            except ImapProtocolError as exc:
                needs_connect = True
                if not counted:
                    cycles += 1
                self._handle_transient_error(exc)
                if max_cycles is not None and cycles >= max_cycles:
                    break
            finally:
                self.state.last_checked_at = utcnow()
                self._save()

    def _connect_and_catch_up(self) -> None:
        self.phase = RunnerPhase.CONNECTING
        self.client.connect()
        logger.info(f"Connected to {self.label}", extra={"label": self.label})
        self.phase = RunnerPhase.CATCHING_UP
        while not self._stop.is_set():
            cursor = self.state.last_uid
            metrics = self._incremental_pass()
            logger.info(
                f"Catch-up pass on {self.label}: {metrics.to_dict()}",
                extra={"label": self.label, **metrics.to_dict()},
            )
            if metrics.fetched == 0 or self.state.last_uid == cursor:
                break
        self.phase = RunnerPhase.WAITING

    def _run_cycle(self, idle_timeout: int) -> SyncMetrics:
        started = utcnow()
        self.state.last_cycle_started_at = started
        self._save()

        self.phase = RunnerPhase.WAITING
        result = self.client.idle_once(idle_timeout)
        logger.debug(
            f"IDLE on {self.label} returned {result.value}",
            extra={"label": self.label, "result": result.value},
        )

        self.phase = RunnerPhase.SYNCING
        metrics = self._incremental_pass()
        self._record_cycle(started, metrics)
        self.backoff.reset()
        self.phase = RunnerPhase.WAITING
        return metrics

    def _handle_transient_error(self, exc: ImapProtocolError) -> None:
        delay = self.backoff.next_delay()
        self.phase = RunnerPhase.BACKOFF
        self._record_error(exc, backoff_seconds=delay)
        logger.warning(
            f"IMAP error on {self.label}, retrying in {delay}s: {exc}",
            extra={
                "label": self.label,
                "error_class": type(exc).__name__,
                "backoff_seconds": delay,
            },
        )
        self.client.disconnect()
        if self._stop.is_set():
            return
        self._sleep(delay)

    # ------------------------------------------------------------------
    # Incremental pass
    # ------------------------------------------------------------------

    def _incremental_pass(self) -> SyncMetrics:
        """Process every UID beyond the cursor, oldest first."""
        uids = sorted(self.client.uids_after(self.state.last_uid))
        metrics = SyncMetrics(fetched=len(uids), backlog=len(uids))
        for uid in uids:
            self._process_uid(uid, metrics)
        self.state.last_checked_at = utcnow()
        self._save()
        return metrics

    def _process_uid(self, uid: int, metrics: SyncMetrics) -> None:
        raw = self.client.fetch_raw(uid)
        if raw is None:
            logger.warning(
                f"UID {uid} vanished from {self.label}, skipping",
                extra={"label": self.label, "uid": uid},
            )
            self._advance_cursor(uid)
            return

        try:
            with self.store.transaction():
                result = self.ingestor.ingest(raw, trust_date=self.trust_date)
        except (ImapProtocolError, ArchiveStorageError):
            raise
        except Exception as exc:  # noqa: BLE001
            metrics.failed += 1
            logger.error(
                f"Failed to ingest UID {uid} from {self.label}: {type(exc).__name__}: {exc}",
                extra={"label": self.label, "uid": uid, "error_class": type(exc).__name__},
            )
            self.state.last_error = short_error(exc)
            self.state.last_error_class = type(exc).__name__
            self._save()
            return

        self.client.mark_seen(uid)
        if result.outcome == IngestOutcome.CREATED:
            metrics.ingested += 1
            metrics.attachments += result.attachment_count
            metrics.patch_files += result.patch_file_count
        elif result.outcome == IngestOutcome.DUPLICATE:
            metrics.duplicate += 1
        else:
            metrics.failed += 1
            logger.warning(
                f"Discarded UID {uid} from {self.label}: {result.reason}",
                extra={"label": self.label, "uid": uid},
            )
        self.state.last_error = None
        self.state.last_error_class = None
        self._advance_cursor(uid)
        logger.info(
            f"Processed UID {uid} ({result.outcome.value})",
            extra={
                "label": self.label,
                "uid": uid,
                "message_id": result.message.message_id if result.message else None,
                "outcome": result.outcome.value,
            },
        )

    def _advance_cursor(self, uid: int) -> None:
        self.state.last_uid = uid
        self.state.last_checked_at = utcnow()
        self._save()

    # ------------------------------------------------------------------
    # State bookkeeping
    # ------------------------------------------------------------------

    def _record_cycle(self, started: datetime, metrics: SyncMetrics) -> None:
        state = self.state
        state.last_cycle_duration_ms = int((time.time() - started.timestamp()) * 1000)
        state.last_fetched_count = metrics.fetched
        state.last_ingested_count = metrics.ingested
        state.last_duplicate_count = metrics.duplicate
        state.last_failed_count = metrics.failed
        state.last_attachment_count = metrics.attachments
        state.last_patch_files_count = metrics.patch_files
        state.last_backlog_count = metrics.backlog
        state.consecutive_error_count = 0
        state.backoff_seconds = 0
        self._save()
        logger.info(
            f"Cycle on {self.label} finished in {state.last_cycle_duration_ms}ms",
            extra={"label": self.label, **metrics.to_dict()},
        )

    def _record_error(
        self,
        exc: BaseException,
        *,
        backoff_seconds: Optional[int] = None,
    ) -> None:
        state = self.state
        state.last_error = short_error(exc)
        state.last_error_class = type(exc).__name__
        state.consecutive_error_count += 1
        if backoff_seconds is not None:
            state.backoff_seconds = backoff_seconds
        try:
            self._save()
        except ArchiveStorageError as save_error:
            logger.error(f"Cannot record error state for {self.label}: {save_error}")

    def _save(self) -> None:
        self.state_store.upsert(self.state)

    def _shutdown(self) -> None:
        self.client.disconnect()
        self.lock.release()
        self.phase = RunnerPhase.STOPPED
        logger.info(f"Runner stopped for {self.label}", extra={"label": self.label})


__all__ = [
    "BackoffPolicy",
    "ImapIdleRunner",
    "RunnerPhase",
    "SyncMetrics",
    "short_error",
]
