"""Command line entry points for listarchive."""

import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from typer import Typer

from ..ingestion.imap.cli import imap_app

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


cli = Typer(help="listarchive command line tools")
cli.add_typer(imap_app, name="imap")


def configure_logging(level: str) -> None:
    """Route log records through rich on stderr."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@cli.callback()
def main(
    ctx: typer.Context,
    log_level: str = typer.Option("INFO", "--log-level", help="DEBUG, INFO, WARNING or ERROR"),
    config: Optional[Path] = typer.Option(
        None, "--config", "-c", help="JSON config file (environment variables override it)"
    ),
) -> None:
    if log_level.upper() not in LOG_LEVELS:
        raise typer.BadParameter(f"must be one of {', '.join(LOG_LEVELS)}", param_hint="--log-level")
    configure_logging(log_level)
    ctx.obj = {"config_path": config}


__all__ = ["cli", "configure_logging", "imap_app"]
