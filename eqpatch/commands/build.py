"""Slash command for building a patch manifest (server side)."""

from __future__ import annotations

from pathlib import Path
from typing import List

from rich.console import Console
from rich.table import Table

from ..slash_commands import SlashCommand, SlashCommandContext, format_size, render_rich


def _handler(context: SlashCommandContext, args: List[str]) -> str:
    directory = Path(args[0]).expanduser() if args else None
    builder = context.client().manifest_builder(directory)
    manifest = builder.build(write=True)
    summary = manifest.summary()

    def _render(console: Console) -> None:
        console.print(f"[bold]Manifest written to[/bold] {builder.manifest_path}")
        console.print(
            f"{summary.total_files} files, {format_size(summary.total_size)} "
            f"(version {summary.version})\n"
        )

        table = Table(show_header=True, header_style="bold cyan")
        table.add_column("Folder", style="cyan")
        table.add_column("Files", justify="right")
        for folder, count in summary.files_by_folder.items():
            table.add_row(folder, str(count))
        console.print(table)

        if builder.warnings:
            console.print("\n[yellow]Warnings:[/yellow]")
            for warning in builder.warnings:
                console.print(f"  ! {warning}")

    return render_rich(_render)


COMMAND = SlashCommand(
    name="build",
    description="Scan a directory and write its manifest.",
    handler=_handler,
    usage="build [dir]",
    requires_ready=True,
)
