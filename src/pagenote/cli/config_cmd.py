"""Settings commands: config show, provider, github-token, feishu."""

from __future__ import annotations

from typing import Optional

import click
from rich.table import Table

from ._common import console, home_option, open_service
from ..models import SyncProvider
from ..settings import FeishuConfig


def _mask(secret: Optional[str]) -> str:
    if not secret:
        return "[dim]unset[/]"
    return secret[:4] + "…" if len(secret) > 4 else "…"


def register_config_commands(main: click.Group) -> None:
    """Register the config command group."""

    @main.group()
    def config():
        """View and change sync settings."""

    @config.command("show")
    @home_option
    def config_show(home: str):
        """Show the current settings."""
        with open_service(home) as svc:
            s = svc.settings.load()

        table = Table(show_header=False, box=None, padding=(0, 2))
        table.add_column("Setting", style="bold")
        table.add_column("Value")
        table.add_row("Sync provider", f"[cyan]{s.sync_provider.value}[/]")
        table.add_row("GitHub token", _mask(s.github_token))
        table.add_row("GitHub gist", s.github_gist_id or "[dim]none[/]")
        table.add_row(
            "Feishu table",
            f"{s.feishu_config.app_token}/{s.feishu_config.table_id}"
            if s.feishu_config else "[dim]unset[/]",
        )
        table.add_row("Drive enabled", "yes" if s.drive_enabled else "no")
        table.add_row("Icon position", s.position)
        table.add_row("Display mode", s.display_mode)
        table.add_row("Default theme", s.theme or "sticky")
        console.print(table)

    @config.command("provider")
    @click.argument("name", type=click.Choice([p.value for p in SyncProvider]))
    @home_option
    def config_provider(name: str, home: str):
        """Choose the sync provider."""
        provider = SyncProvider(name)
        with open_service(home) as svc:
            svc.settings.update(
                sync_provider=provider,
                drive_enabled=provider in (SyncProvider.DRIVE, SyncProvider.ALL),
            )
        console.print(f"  Sync provider set to [cyan]{name}[/]")
        if provider in (SyncProvider.FEISHU, SyncProvider.ALL):
            console.print(
                "  [bold yellow]Note:[/] the Feishu table stores notes as "
                "[bold]plain text[/], not encrypted."
            )

    @config.command("github-token")
    @click.argument("token")
    @home_option
    def config_github_token(token: str, home: str):
        """Set the GitHub personal access token (gist scope)."""
        with open_service(home) as svc:
            svc.settings.update(github_token=token, github_gist_id=None)
        console.print("  [green]GitHub token saved[/]")

    @config.command("feishu")
    @click.option("--app-id", required=True)
    @click.option("--app-secret", required=True)
    @click.option("--app-token", required=True, help="Bitable app token.")
    @click.option("--table-id", required=True)
    @home_option
    def config_feishu(app_id: str, app_secret: str, app_token: str, table_id: str, home: str):
        """Set the Feishu Bitable credentials and target table."""
        feishu = FeishuConfig(
            app_id=app_id, app_secret=app_secret, app_token=app_token, table_id=table_id,
        )
        with open_service(home) as svc:
            svc.settings.update(feishu_config=feishu)
        console.print("  [green]Feishu config saved[/]")
        console.print(
            "  [bold yellow]Note:[/] notes pushed to Feishu are stored as plain text."
        )
