"""CLI commands for the IMAP sync runner and mbox import."""

from __future__ import annotations

import json
import signal
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
from rich.console import Console
from rich.table import Table

from listarchive.archive.store import ArchiveStore
from listarchive.configuration.settings import Settings, load_settings
from listarchive.errors import ListArchiveError, format_error_for_cli

from .idle_runner import ImapIdleRunner
from .ingestor import EmailIngestor
from .mbox_import import MboxImporter
from .sync_state import ImapSyncState, ImapSyncStateStore

# Rich console for formatted output
console = Console()
error_console = Console(stderr=True)

imap_app = typer.Typer(help="IMAP sync runner commands")


def _config_path(ctx: typer.Context) -> Optional[Path]:
    obj = ctx.obj or {}
    return obj.get("config_path")


def _load(ctx: typer.Context, *, require_imap: bool = True) -> Settings:
    try:
        return load_settings(_config_path(ctx), require_imap=require_imap)
    except ListArchiveError as exc:
        error_console.print(format_error_for_cli(exc))
        raise typer.Exit(1)


def _fail(exc: ListArchiveError, json_output: bool = False) -> None:
    if json_output:
        print(json.dumps({"success": False, "error": exc.to_dict()}))
    else:
        error_console.print(format_error_for_cli(exc))
    raise typer.Exit(1)


def _install_stop_handlers(runner: ImapIdleRunner) -> Dict[int, Any]:
    """First SIGINT/SIGTERM asks the runner to stop; a second one interrupts.

    Returns:
        The previous handlers, for :func:`_restore_handlers`
    """

    def _handler(signum, _frame) -> None:
        if runner.stop_requested:
            raise KeyboardInterrupt
        console.print(f"[yellow]{signal.Signals(signum).name} received, stopping...[/yellow]")
        runner.request_stop()

    previous = {}
    for signum in (signal.SIGTERM, signal.SIGINT):
        previous[signum] = signal.signal(signum, _handler)
    return previous


def _restore_handlers(previous: Dict[int, Any]) -> None:
    for signum, handler in previous.items():
        if handler is not None:
            signal.signal(signum, handler)


@imap_app.command("run")
def run_runner(
    ctx: typer.Context,
    max_cycles: Optional[int] = typer.Option(
        None, "--max-cycles", min=0, help="Stop after N idle cycles (default: run until stopped)"
    ),
    idle_timeout: Optional[int] = typer.Option(
        None, "--idle-timeout", min=1, help="IDLE wait per cycle in seconds"
    ),
) -> None:
    """Run the long-lived IDLE runner for the configured label.

    Examples:
        IMAP_MAILBOX_LABEL=pgsql-hackers listarchive imap run
        listarchive imap run --max-cycles 1 --idle-timeout 60
    """
    settings = _load(ctx)
    imap = settings.require_imap()
    try:
        runner = ImapIdleRunner.from_settings(settings)
        previous_handlers = _install_stop_handlers(runner)
        console.print(f"[bold blue]Starting IMAP runner for {imap.mailbox_label}[/bold blue]")
        try:
            ran = runner.run(
                max_cycles=max_cycles if max_cycles is not None else imap.max_cycles,
                idle_timeout=idle_timeout or imap.idle_timeout_seconds,
            )
        finally:
            _restore_handlers(previous_handlers)
            runner.close()
    except ListArchiveError as exc:
        _fail(exc)
        return

    if not ran:
        console.print(f"[yellow]Another runner holds the lock for {imap.mailbox_label}; nothing to do[/yellow]")
        return
    console.print(f"[green]Runner for {imap.mailbox_label} stopped[/green]")


@imap_app.command("sync-once")
def sync_once(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Run a single incremental pass and exit."""
    settings = _load(ctx)
    try:
        runner = ImapIdleRunner.from_settings(settings)
        try:
            metrics = runner.sync_once()
        finally:
            runner.close()
    except ListArchiveError as exc:
        _fail(exc, json_output)
        return

    if metrics is None:
        if json_output:
            print(json.dumps({"success": False, "locked": True}))
        else:
            console.print("[yellow]Another runner holds the lock; skipped[/yellow]")
        return

    if json_output:
        print(json.dumps({"success": True, "metrics": metrics.to_dict(), "last_uid": runner.state.last_uid}))
        return

    table = Table(title=f"Sync pass for {runner.label}")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green", justify="right")
    for key, value in metrics.to_dict().items():
        table.add_row(key, str(value))
    table.add_row("last_uid", str(runner.state.last_uid))
    console.print(table)


@imap_app.command("status")
def status(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Show the stored sync state of the configured label."""
    settings = _load(ctx)
    imap = settings.require_imap()
    try:
        store = ImapSyncStateStore(settings.archive.database_path)
        try:
            state = store.fetch(imap.mailbox_label)
        finally:
            store.close()
    except ListArchiveError as exc:
        _fail(exc, json_output)
        return

    if state is None:
        if json_output:
            print(json.dumps({"label": imap.mailbox_label, "state": None}))
        else:
            console.print(f"[yellow]No sync state recorded for {imap.mailbox_label}[/yellow]")
        return

    if json_output:
        print(json.dumps({"label": imap.mailbox_label, "state": state.model_dump(mode="json")}))
        return

    console.print(_state_table(state))


def _state_table(state: ImapSyncState) -> Table:
    table = Table(title=f"IMAP sync state: {state.label}")
    table.add_column("Field", style="cyan", no_wrap=True)
    table.add_column("Value", style="green")
    for key, value in state.model_dump().items():
        if key == "label":
            continue
        style = "red" if key in ("last_error", "last_error_class") and value else None
        text = "-" if value is None else str(value)
        table.add_row(key, f"[{style}]{text}[/{style}]" if style else text)
    return table


@imap_app.command("import-mbox")
def import_mbox(
    ctx: typer.Context,
    paths: List[Path] = typer.Argument(..., exists=True, dir_okay=False, help="mbox files"),
    update_body: bool = typer.Option(False, "--update-body", help="Update body of existing messages"),
    update_date: bool = typer.Option(False, "--update-date", help="Update date of existing messages"),
    update_reply_to_message_id: bool = typer.Option(
        False,
        "--update-reply-to-message-id",
        help="Update reply_to_message_id of existing messages",
    ),
    message_id: Optional[str] = typer.Option(
        None, "--message-id", help="Re-import only the message with this Message-ID (one file)"
    ),
) -> None:
    """Import one or more mbox files into the archive.

    Examples:
        listarchive imap import-mbox pgsql-hackers.200301
        listarchive imap import-mbox --update-body *.mbox
        listarchive imap import-mbox --update-body --message-id "<abc@x.org>" list.mbox
    """
    settings = _load(ctx, require_imap=False)
    if message_id is not None and len(paths) != 1:
        error_console.print("[red]--message-id takes exactly one mbox file[/red]")
        raise typer.Exit(2)
    update_existing = [
        name
        for name, enabled in (
            ("body", update_body),
            ("date", update_date),
            ("reply_to_message_id", update_reply_to_message_id),
        )
        if enabled
    ]
    try:
        store = ArchiveStore(settings.archive.database_path)
        try:
            importer = MboxImporter(
                store,
                EmailIngestor.with_defaults(store, own_domain=settings.archive.own_domain),
                update_existing=update_existing,
            )
            if message_id is not None:
                _import_single(importer, paths[0], message_id)
                return
            report = importer.import_paths(paths)
        finally:
            store.close()
    except ListArchiveError as exc:
        _fail(exc)
        return

    console.print(
        f"[green]Processed {report.processed} messages:[/green] "
        f"{report.created} created, {report.duplicates} duplicates, {report.failed} failed"
    )


def _import_single(importer: MboxImporter, path: Path, message_id: str) -> None:
    try:
        result = importer.import_message(path, message_id)
    except ValueError as exc:
        error_console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)

    if result is None:
        console.print(f"[yellow]Message not found in {path}[/yellow]")
        raise typer.Exit(1)
    if result.message is None:
        console.print(f"[yellow]Message not imported: {result.reason}[/yellow]")
        raise typer.Exit(1)
    console.print(f"[green]Reimported {result.message.message_id} ({result.outcome.value})[/green]")


__all__ = ["imap_app"]
