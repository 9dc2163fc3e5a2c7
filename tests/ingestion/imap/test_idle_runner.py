"""Tests for the IMAP IDLE sync runner.

The runner is driven against :class:`MockImapServer` with a recording sleeper,
so backoff delays are asserted without waiting.
"""

from __future__ import annotations

import pytest

from listarchive.errors import (
    ArchiveStorageError,
    ConfigurationError,
    ImapProtocolError,
    LockBackendError,
)
from listarchive.ingestion.imap.advisory_lock import AdvisoryLock, lock_key_for_label
from listarchive.ingestion.imap.idle_runner import BackoffPolicy, RunnerPhase, short_error


LABEL = "pgsql-hackers"


def _lock_is_free(lock_dir) -> bool:
    probe = AdvisoryLock(lock_key_for_label(LABEL), lock_dir)
    acquired = probe.acquire()
    probe.release()
    return acquired


def _seed(mock_server, make_message, *uids):
    for uid in uids:
        mock_server.add_message(uid, make_message(message_id=f"<uid-{uid}@example.org>"))


class SelectiveFailingIngestor:
    """Wraps the real ingestor and raises for marked messages."""

    def __init__(self, inner, marker: bytes, exc: Exception) -> None:
        self.inner = inner
        self.marker = marker
        self.exc = exc

    def ingest(self, raw, **kwargs):
        if self.marker in raw:
            raise self.exc
        return self.inner.ingest(raw, **kwargs)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def test_backoff_policy_sequence():
    """Test delays double up to the cap and reset to the start."""
    policy = BackoffPolicy()

    delays = [policy.next_delay() for _ in range(9)]

    assert delays == [1, 2, 4, 8, 16, 32, 60, 60, 60]
    policy.reset()
    assert policy.next_delay() == 1


def test_short_error_truncates():
    assert short_error(RuntimeError("x" * 600)) == "x" * 500 + "…"
    assert short_error(RuntimeError()) == "RuntimeError"


def test_rejects_inbox_label(make_runner):
    with pytest.raises(ConfigurationError):
        make_runner(label="INBOX")
    with pytest.raises(ConfigurationError):
        make_runner(label=" ")


# ---------------------------------------------------------------------------
# Catch-up and cycles
# ---------------------------------------------------------------------------


def test_run_catches_up(make_runner, mock_server, make_message, archive_store, lock_dir):
    """Test the initial catch-up ingests the backlog in UID order."""
    _seed(mock_server, make_message, 1, 2, 3)
    runner = make_runner()

    assert runner.run(max_cycles=0) is True

    assert archive_store.count_messages() == 3
    assert runner.state.last_uid == 3
    assert sorted(mock_server.flags) == [1, 2, 3]
    assert runner.phase == RunnerPhase.STOPPED
    assert mock_server.logouts == 1
    assert _lock_is_free(lock_dir)


def test_catch_up_spans_several_batches(mock_server, make_message, make_runner, archive_store):
    """Test catch-up keeps passing until the backlog is drained."""
    _seed(mock_server, make_message, *range(1, 8))
    runner = make_runner()
    runner.client.batch_size = 3

    runner.run(max_cycles=0)

    assert archive_store.count_messages() == 7
    assert runner.state.last_uid == 7


def test_cycle_ingests_new_mail(make_runner, mock_server, make_message, archive_store, state_store):
    """Test IDLE activity is followed by an incremental pass."""
    _seed(mock_server, make_message, 1)

    def idle_check(timeout=None):
        mock_server.idle_timeouts.append(timeout)
        mock_server.add_message(2, make_message(message_id="<uid-2@example.org>"))
        return [(2, b"EXISTS")]

    mock_server.idle_check = idle_check
    runner = make_runner()

    runner.run(max_cycles=1, idle_timeout=30)

    assert archive_store.count_messages() == 2
    assert mock_server.idle_timeouts == [30]
    stored = state_store.fetch(LABEL)
    assert stored.last_uid == 2
    assert stored.last_fetched_count == 1
    assert stored.last_ingested_count == 1
    assert stored.last_cycle_started_at is not None
    assert stored.last_cycle_duration_ms is not None
    assert stored.last_checked_at is not None


def test_resumes_from_stored_cursor(make_runner, mock_server, make_message, archive_store, state_store):
    """Test a restart only processes UIDs beyond the stored cursor."""
    _seed(mock_server, make_message, 1, 2, 3)
    state = state_store.for_label(LABEL)
    state.last_uid = 2
    state_store.upsert(state)

    make_runner().run(max_cycles=0)

    assert archive_store.count_messages() == 1
    assert list(mock_server.flags) == [3]


def test_duplicate_delivery_is_marked_seen(make_runner, mock_server, make_message, ingestor, archive_store):
    """Test already archived messages still advance the cursor."""
    raw = make_message(message_id="<uid-1@example.org>")
    ingestor.ingest(raw)
    mock_server.add_message(1, raw)
    runner = make_runner()

    metrics = runner.sync_once()

    assert metrics.duplicate == 1
    assert metrics.ingested == 0
    assert archive_store.count_messages() == 1
    assert mock_server.flags[1] == [b"\\Seen"]
    assert runner.state.last_uid == 1


def test_reply_and_redelivery_in_one_pass(make_runner, mock_server, make_message, archive_store):
    """Test a reply joins its parent's topic and a redelivered root is a duplicate."""
    root = make_message(message_id="<a@example.org>", subject="Vacuum")
    mock_server.add_message(1, root)
    mock_server.add_message(
        2,
        make_message(
            message_id="<b@example.org>",
            subject="Re: Vacuum",
            in_reply_to="<a@example.org>",
        ),
    )
    mock_server.add_message(3, root)
    runner = make_runner()

    metrics = runner.sync_once()

    assert (metrics.fetched, metrics.ingested, metrics.duplicate) == (3, 2, 1)
    assert archive_store.count_messages() == 2
    parent = archive_store.find_message_by_message_id("a@example.org")
    reply = archive_store.find_message_by_message_id("b@example.org")
    assert reply.topic_id == parent.topic_id
    assert runner.state.last_uid == 3


def test_message_without_id_is_discarded(make_runner, mock_server, make_message, archive_store):
    """Test an unparseable delivery is marked seen and skipped."""
    mock_server.add_message(1, make_message(message_id=None))

    metrics = make_runner().sync_once()

    assert metrics.failed == 1
    assert archive_store.count_messages() == 0
    assert mock_server.flags[1] == [b"\\Seen"]


def test_vanished_uid_advances_cursor(make_runner, mock_server, make_message, imap_client, monkeypatch, archive_store):
    """Test a UID the server lost between listing and fetch is skipped."""
    _seed(mock_server, make_message, 1, 2)
    real_fetch = imap_client.fetch_raw
    monkeypatch.setattr(imap_client, "fetch_raw", lambda uid: None if uid == 1 else real_fetch(uid))
    runner = make_runner()

    runner.sync_once()

    assert runner.state.last_uid == 2
    assert archive_store.count_messages() == 1
    assert 1 not in mock_server.flags


def test_failed_message_is_skipped_by_later_success(make_runner, mock_server, make_message, ingestor, archive_store):
    """Test a failing message leaves the cursor until a later UID succeeds.

    The failed UID is neither committed nor marked seen, and once UID 6
    succeeds the cursor passes it.
    """
    mock_server.add_message(5, make_message(message_id="<bad@example.org>"))
    mock_server.add_message(6, make_message(message_id="<good@example.org>"))
    runner = make_runner(
        ingestor=SelectiveFailingIngestor(ingestor, b"bad@example.org", RuntimeError("broken"))
    )

    metrics = runner.sync_once()

    assert metrics.failed == 1
    assert metrics.ingested == 1
    assert 5 not in mock_server.flags
    assert mock_server.flags[6] == [b"\\Seen"]
    assert runner.state.last_uid == 6
    assert runner.state.last_error is None
    assert runner.state.last_error_class is None
    assert archive_store.find_message_by_message_id("bad@example.org") is None


def test_failed_message_keeps_cursor(make_runner, mock_server, make_message, ingestor):
    """Test a failing last message is retried on the next pass."""
    mock_server.add_message(1, make_message(message_id="<bad@example.org>"))
    runner = make_runner(
        ingestor=SelectiveFailingIngestor(ingestor, b"bad@example.org", RuntimeError("broken"))
    )

    runner.sync_once()

    assert runner.state.last_uid == 0
    assert runner.state.last_error == "broken"
    assert runner.state.last_error_class == "RuntimeError"
    assert runner.state.last_failed_count == 1


# ---------------------------------------------------------------------------
# Transient errors and backoff
# ---------------------------------------------------------------------------


def test_backoff_on_repeated_idle_failures(make_runner, mock_server, sleeps, state_store):
    """Test five failing cycles back off 1, 2, 4, 8 and 16 seconds."""
    mock_server.fail_next("idle_check", times=5)
    runner = make_runner()

    assert runner.run(max_cycles=5) is True

    assert sleeps == [1, 2, 4, 8, 16]
    stored = state_store.fetch(LABEL)
    assert stored.consecutive_error_count == 5
    assert stored.backoff_seconds == 16
    assert stored.last_error_class == "ImapProtocolError"
    assert not stored.is_healthy
    assert len(mock_server.connect_kwargs) == 5


def test_backoff_resets_after_success(make_runner, mock_server, sleeps, state_store):
    """Test a successful cycle clears the error streak and the delay."""
    mock_server.fail_next("idle_check", times=2)
    runner = make_runner()

    runner.run(max_cycles=4)

    assert sleeps == [1, 2]
    stored = state_store.fetch(LABEL)
    assert stored.consecutive_error_count == 0
    assert stored.backoff_seconds == 0
    assert runner.backoff.next_delay() == 1


def test_connect_failures_count_as_cycles(make_runner, mock_server, sleeps):
    """Test a failing connect backs off like any protocol error."""
    mock_server.fail_next("connect", times=3)
    runner = make_runner()

    runner.run(max_cycles=3)

    assert sleeps == [1, 2, 4]
    assert "idle" not in mock_server.calls
    assert runner.state.last_error_class == "ImapConnectionError"


def test_reconnect_redelivers_unflagged_message(make_runner, mock_server, make_message, sleeps, archive_store):
    """Test a message committed before a protocol error is not duplicated."""
    _seed(mock_server, make_message, 1, 2)
    mock_server.fail_next("add_flags")
    runner = make_runner()

    runner.run(max_cycles=2)

    assert sleeps == [1]
    assert archive_store.count_messages() == 2
    assert sorted(mock_server.flags) == [1, 2]
    assert runner.state.last_uid == 2


# ---------------------------------------------------------------------------
# Fatal errors, locking and stopping
# ---------------------------------------------------------------------------


def test_fatal_error_is_reraised(make_runner, mock_server, make_message, ingestor, lock_dir, state_store):
    """Test storage failures stop the runner after cleanup."""
    _seed(mock_server, make_message, 1)
    runner = make_runner(
        ingestor=SelectiveFailingIngestor(
            ingestor, b"uid-1@example.org", ArchiveStorageError("disk full")
        )
    )

    with pytest.raises(ArchiveStorageError):
        runner.run(max_cycles=3)

    stored = state_store.fetch(LABEL)
    assert stored.last_error == "disk full"
    assert stored.last_error_class == "ArchiveStorageError"
    assert stored.consecutive_error_count == 1
    assert not stored.is_healthy
    assert stored.last_uid == 0
    assert runner.phase == RunnerPhase.STOPPED
    assert mock_server.logouts == 1
    assert _lock_is_free(lock_dir)


def test_lock_backend_failure_is_recorded(make_runner, mock_server, state_store):
    """Test a broken lock backend is recorded before the error propagates."""

    class BrokenLock:
        def acquire(self):
            raise LockBackendError("lock dir unavailable")

        def release(self):
            pass

    runner = make_runner(lock=BrokenLock())

    with pytest.raises(LockBackendError):
        runner.run(max_cycles=1)

    stored = state_store.fetch(LABEL)
    assert stored.last_error_class == "LockBackendError"
    assert stored.consecutive_error_count == 1
    assert runner.snapshot().last_error_class == "LockBackendError"
    assert mock_server.connect_kwargs == []


def test_lock_contention_is_noop(make_runner, mock_server, lock_dir):
    """Test a second runner for the same label does nothing."""
    holder = AdvisoryLock(lock_key_for_label(LABEL), lock_dir)
    assert holder.acquire()
    try:
        runner = make_runner()
        assert runner.run(max_cycles=1) is False
        assert runner.sync_once() is None
    finally:
        holder.release()

    assert mock_server.connect_kwargs == []


def test_stop_before_run(make_runner, mock_server, lock_dir):
    """Test a stop requested up front exits without connecting."""
    runner = make_runner()
    runner.request_stop()

    assert runner.run() is True

    assert runner.stop_requested
    assert mock_server.connect_kwargs == []
    assert _lock_is_free(lock_dir)


def test_stop_during_idle(make_runner, mock_server):
    """Test a stop requested mid-cycle ends the loop at the cycle boundary."""
    runner = make_runner()

    def idle_check(timeout=None):
        runner.request_stop()
        return []

    mock_server.idle_check = idle_check

    assert runner.run() is True
    assert runner.phase == RunnerPhase.STOPPED
    assert runner.state.consecutive_error_count == 0


def test_stop_during_catch_up_skips_idle(make_runner, mock_server, make_message, ingestor, archive_store, lock_dir):
    """Test a stop requested while catching up exits without entering IDLE."""
    _seed(mock_server, make_message, 1, 2)
    runner = None

    class StoppingIngestor:
        def ingest(self, raw, **kwargs):
            runner.request_stop()
            return ingestor.ingest(raw, **kwargs)

    runner = make_runner(ingestor=StoppingIngestor())

    assert runner.run() is True

    assert "idle" not in mock_server.calls
    assert mock_server.idle_timeouts == []
    assert archive_store.count_messages() == 2
    assert runner.phase == RunnerPhase.STOPPED
    assert _lock_is_free(lock_dir)


def test_stop_skips_backoff_sleep(make_runner, mock_server, sleeps):
    """Test no backoff sleep happens once a stop is requested."""
    runner = make_runner()

    def idle_check(timeout=None):
        runner.request_stop()
        raise ImapProtocolError("connection dropped")

    mock_server.idle_check = idle_check

    runner.run()

    assert sleeps == []
    assert runner.state.consecutive_error_count == 1


def test_sync_once_records_protocol_error(make_runner, mock_server, make_message, lock_dir):
    """Test a protocol error in a one-shot pass is recorded and raised."""
    _seed(mock_server, make_message, 1)
    mock_server.fail_next("folder_status")
    runner = make_runner()

    with pytest.raises(ImapProtocolError):
        runner.sync_once()

    assert runner.state.consecutive_error_count == 1
    assert _lock_is_free(lock_dir)


def test_snapshot_is_a_copy(make_runner):
    """Test callers cannot mutate the live state through a snapshot."""
    runner = make_runner()

    snapshot = runner.snapshot()
    snapshot.last_uid = 99

    assert runner.state.last_uid == 0
    assert snapshot.label == LABEL
