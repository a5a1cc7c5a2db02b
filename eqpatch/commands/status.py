"""Slash command for runtime status."""

from __future__ import annotations

from typing import Any, Dict, List

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..configuration import ConfigurationBundle
from ..slash_commands import SlashCommand, SlashCommandContext, render_rich

DIAGNOSTIC_LIMIT = 5


def _status_rows(config: ConfigurationBundle, status: Dict[str, Any]) -> List[tuple]:
    return [
        ("Root", status["root"]),
        ("Config", f"{config.status} ({len(config.files_loaded)} file(s))"),
        ("Log path", str(config.log_path or "(not initialized)")),
        ("Server", f"{status['server']} via {status['transport']}"),
        ("Local record", status["local_record"]),
        ("Tracked files", str(status["tracked_files"])),
        ("Last patch", status["record_generated"] or "(never)"),
        ("Failures", f"{status['on_failure']}, {status['max_workers']} worker(s)"),
    ]


def _print_diagnostics(console: Console, config: ConfigurationBundle, show_all: bool) -> None:
    if not config.diagnostics:
        console.print("[green]Diagnostics: none reported.[/green]")
        return

    shown = config.diagnostics if show_all else config.diagnostics[:DIAGNOSTIC_LIMIT]
    table = Table(title="Diagnostics", box=box.SIMPLE, header_style="bold red", pad_edge=False)
    table.add_column("Level", style="red", no_wrap=True)
    table.add_column("Message", overflow="fold")
    table.add_column("Source", overflow="fold")
    for diag in shown:
        table.add_row(diag.level.upper(), diag.message, str(diag.source or config.root_dir))
    console.print(table)

    hidden = len(config.diagnostics) - len(shown)
    if hidden:
        console.print(f"[dim]{hidden} more; run 'status --all' to list them.[/dim]")


def _handler(context: SlashCommandContext, args: List[str]) -> str:
    show_all = "--all" in args
    status = context.client().get_status()
    config = context.config

    def _render(console: Console) -> None:
        grid = Table.grid(padding=(0, 1))
        grid.add_column(style="bold", no_wrap=True)
        grid.add_column(overflow="fold")
        for label, value in _status_rows(config, status):
            grid.add_row(label, value)
        console.print(Panel(grid, title="Patcher Status", border_style="green"))
        _print_diagnostics(console, config, show_all)

    return render_rich(_render)


COMMAND = SlashCommand(
    name="status",
    description="Show root, server, local record, and configuration diagnostics.",
    handler=_handler,
    usage="status [--all]",
)
