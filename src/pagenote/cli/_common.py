"""Shared utilities for all CLI command modules.

Provides the Rich console instance, logging setup and the helper that
opens a PageNoteService for a home directory.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

import click
from rich.console import Console

from .. import PAGENOTE_HOME
from ..service import PageNoteService

console = Console()
logger = logging.getLogger("pagenote.cli")

home_option = click.option(
    "--home",
    default=PAGENOTE_HOME,
    help="PageNote home directory.",
    type=click.Path(),
)


def setup_logging(verbose: bool = False) -> None:
    """Configure root logging for CLI runs."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(name)s: %(message)s",
    )


def open_service(home: str) -> PageNoteService:
    """Open (and on first use, initialize) the service for ``home``.

    The engine's ``log_level`` applies unless --verbose already asked
    for debug output.
    """
    service = PageNoteService(Path(home))
    if not logging.getLogger().isEnabledFor(logging.DEBUG):
        logging.getLogger("pagenote").setLevel(service.config.log_level.upper())
    service.initialize()
    return service


def format_ms(stamp: int) -> str:
    """Epoch milliseconds as local time."""
    return datetime.fromtimestamp(stamp / 1000).strftime("%Y-%m-%d %H:%M")
