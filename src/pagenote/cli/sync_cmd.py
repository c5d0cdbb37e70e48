"""Sync commands: push, pull, status."""

from __future__ import annotations

import sys

import click
from rich.panel import Panel

from ._common import console, home_option, open_service
from ..events import QUOTA_EXCEEDED, Event


def register_sync_commands(main: click.Group) -> None:
    """Register the sync command group."""

    @main.group()
    def sync():
        """Encrypted note sync.

        Push this device's notes to the configured provider, or pull
        and merge the remote copy. Newer edits win, note by note.
        """

    @sync.command("push")
    @home_option
    def sync_push(home: str):
        """Push local notes to the configured provider now."""
        with open_service(home) as svc:
            def warn_quota(event: Event) -> None:
                console.print(f"  [yellow]{event.payload.get('message')}[/]")

            svc.bus.subscribe(QUOTA_EXCEEDED, warn_quota)
            provider = svc.settings.load().sync_provider.value
            console.print(f"\n  Pushing to [cyan]{provider}[/]...", end=" ")
            result = svc.coordinator.force_sync()

        if not result.backends and result.ok:
            console.print("[dim]sync disabled (provider 'none')[/]\n")
            return
        if result.ok:
            console.print("[green]done[/]")
        else:
            console.print("[red]failed[/]")
        for name, ok in result.backends.items():
            mark = "[green]ok[/]" if ok else "[red]failed[/]"
            console.print(f"    {name}: {mark}")
        console.print()
        if not result.ok:
            sys.exit(1)

    @sync.command("pull")
    @home_option
    def sync_pull(home: str):
        """Pull the remote copy and merge it into local notes."""
        with open_service(home) as svc:
            console.print("\n  Pulling...", end=" ")
            result = svc.coordinator.force_pull()

        if not result.ok:
            console.print(f"[red]failed[/] {result.error}\n")
            sys.exit(1)
        if not result.backends:
            console.print("[yellow]no remote data[/]\n")
            return
        console.print(f"[green]merged from {', '.join(result.backends)}[/]\n")

    @sync.command("status")
    @home_option
    def sync_status(home: str):
        """Show provider, backend availability and recent activity."""
        with open_service(home) as svc:
            info = svc.coordinator.status()

        state = info["state"]
        console.print()
        console.print(
            Panel(
                f"Provider: [cyan]{info['provider']}[/]\n"
                f"Phase: {info['phase']}\n"
                f"Last Push: {state['last_push'] or '[dim]never[/]'} "
                f"({', '.join(state['last_push_backends']) or '-'})\n"
                f"Last Pull: {state['last_pull'] or '[dim]never[/]'} "
                f"({state['last_pull_backend'] or '-'})\n"
                f"Pushes: [bold]{state['push_count']}[/]  Pulls: [bold]{state['pull_count']}[/]\n"
                f"Last Error: {state['last_error'] or '[dim]none[/]'}",
                title="PageNote Sync",
                border_style="magenta",
            )
        )
        for b in info["backends"]:
            avail = "[green]ready[/]" if b["available"] else "[yellow]not configured[/]"
            enc = "encrypted" if b["encrypted"] else "[bold yellow]PLAINTEXT[/]"
            console.print(f"  {b['name']}: {avail} ({enc})")
        console.print()
