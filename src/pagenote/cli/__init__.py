"""
PageNote CLI — notes and sync from the command line.

Each command group lives in its own module and is registered on the
main Click group here.

Entry point: pagenote.cli:main
"""

from __future__ import annotations

import click

from .. import __version__
from ._common import setup_logging


@click.group()
@click.version_option(version=__version__, prog_name="pagenote")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging.")
def main(verbose: bool):
    """PageNote — encrypted notes on any web page, synced your way."""
    setup_logging(verbose)


# ---------------------------------------------------------------------------
# Register all command groups/commands from modular files
# ---------------------------------------------------------------------------

from .notes import register_note_commands
from .sync_cmd import register_sync_commands
from .config_cmd import register_config_commands

register_note_commands(main)
register_sync_commands(main)
register_config_commands(main)
