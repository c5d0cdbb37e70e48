"""Note commands: note add/list/edit/delete, domains, pin, theme, export."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

import click
from rich.table import Table

from ._common import console, format_ms, home_option, open_service
from ..store import get_domain, get_path


def register_note_commands(main: click.Group) -> None:
    """Register note and domain commands on the main CLI group."""

    @main.group()
    def note():
        """Add, list, edit and delete page notes."""

    @note.command("add")
    @click.argument("url")
    @click.argument("text")
    @home_option
    def note_add(url: str, text: str, home: str):
        """Attach a note to the page at URL."""
        domain, path = get_domain(url), get_path(url)
        with open_service(home) as svc:
            created = svc.store.add_note(domain, path, text)
        console.print(f"  [green]Added[/] [bold]{created.id}[/] on {domain}{path}")

    @note.command("list")
    @click.argument("url")
    @home_option
    def note_list(url: str, home: str):
        """List active notes on the page at URL."""
        domain, path = get_domain(url), get_path(url)
        with open_service(home) as svc:
            notes = svc.store.list_notes(domain, path)
            others = svc.store.other_pages(domain, path)

        if not notes:
            console.print(f"  [dim]No notes on {domain}{path}[/]")
        else:
            table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
            table.add_column("ID", style="cyan")
            table.add_column("Note")
            table.add_column("Updated", style="dim")
            for n in notes:
                table.add_row(n.id, n.text, format_ms(n.updated_at))
            console.print(table)

        if others:
            console.print(f"\n  [dim]Also on {domain}:[/]")
            for page in others:
                console.print(f"    {page.path} [dim]({page.count})[/]")

    @note.command("edit")
    @click.argument("url")
    @click.argument("note_id")
    @click.argument("text")
    @home_option
    def note_edit(url: str, note_id: str, text: str, home: str):
        """Replace the text of a note."""
        with open_service(home) as svc:
            updated = svc.store.update_note(get_domain(url), get_path(url), note_id, text)
        if updated is None:
            console.print(f"[bold red]No note {note_id} on that page.[/]")
            sys.exit(1)
        console.print(f"  [green]Updated[/] [bold]{note_id}[/]")

    @note.command("delete")
    @click.argument("url")
    @click.argument("note_id")
    @home_option
    def note_delete(url: str, note_id: str, home: str):
        """Delete a note (kept as a tombstone so other devices see it)."""
        with open_service(home) as svc:
            deleted = svc.store.soft_delete_note(get_domain(url), get_path(url), note_id)
        if deleted is None:
            console.print(f"[bold red]No note {note_id} on that page.[/]")
            sys.exit(1)
        console.print(f"  [green]Deleted[/] [bold]{note_id}[/]")

    @main.command()
    @home_option
    def domains(home: str):
        """List sites with notes, pinned first."""
        with open_service(home) as svc:
            summaries = svc.store.list_domains()

        if not summaries:
            console.print("  [dim]No notes yet.[/]")
            return

        summaries.sort(key=lambda s: (not s.pinned, s.domain))
        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("", width=2)
        table.add_column("Domain", style="cyan")
        table.add_column("Pages", justify="right")
        table.add_column("Notes", justify="right")
        for s in summaries:
            table.add_row("⭐" if s.pinned else "", s.domain, str(s.total_pages), str(s.total_notes))
        console.print(table)

    @main.command()
    @click.argument("domain")
    @home_option
    def pin(domain: str, home: str):
        """Toggle the pinned flag of DOMAIN."""
        with open_service(home) as svc:
            pinned = svc.store.toggle_pin(domain)
        state = "[yellow]pinned[/]" if pinned else "[dim]unpinned[/]"
        console.print(f"  {domain} {state}")

    @main.command()
    @click.argument("url")
    @click.argument("theme_name", required=False)
    @home_option
    def theme(url: str, theme_name: Optional[str], home: str):
        """Show or set the note theme of the page at URL."""
        domain, path = get_domain(url), get_path(url)
        with open_service(home) as svc:
            if theme_name:
                svc.store.set_theme(domain, path, theme_name)
            current = svc.store.get_theme(domain, path)
        console.print(f"  {domain}{path}: [cyan]{current}[/]")

    @main.command()
    @click.option("--output", "-o", type=click.Path(), help="Write to a file instead of stdout.")
    @home_option
    def export(output: Optional[str], home: str):
        """Export all active notes as Markdown."""
        with open_service(home) as svc:
            markdown = svc.export_markdown()
        if output:
            Path(output).expanduser().write_text(markdown, encoding="utf-8")
            console.print(f"  [green]Exported to[/] {output}")
        else:
            click.echo(markdown)
