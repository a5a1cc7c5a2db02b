"""Slash command for previewing what a patch run would change."""

from __future__ import annotations

from typing import List

from rich.console import Console
from rich.table import Table

from ..slash_commands import SlashCommand, SlashCommandContext, format_size, render_rich
from ..sync.client import CheckResult

QUICK_FLAGS = {"--quick", "-q", "quick"}
MAX_LISTED = 20


def render_check_result(result: CheckResult) -> str:
    plan = result.plan

    def _render(console: Console) -> None:
        if plan.is_empty:
            console.print(f"[green]Up to date.[/green] {len(plan.unchanged)} files verified.")
        else:
            console.print(
                f"[bold]{plan.summary()}[/bold] "
                f"({format_size(plan.fetch_bytes)} to download, {len(plan.unchanged)} unchanged)\n"
            )

        if plan.to_fetch:
            table = Table(show_header=True, header_style="bold blue")
            table.add_column("Path", style="cyan")
            table.add_column("Size", justify="right")
            table.add_column("Reason")
            for entry in plan.to_fetch[:MAX_LISTED]:
                reason = plan.reasons.get(entry.path)
                table.add_row(entry.path, format_size(entry.size), reason.value if reason else "")
            console.print(table)
            if len(plan.to_fetch) > MAX_LISTED:
                console.print(f"  ... and {len(plan.to_fetch) - MAX_LISTED} more")

        if plan.to_delete:
            console.print("\n[red]To remove:[/red]")
            ordered = sorted(plan.to_delete)
            for path in ordered[:MAX_LISTED]:
                console.print(f"  - {path}")
            if len(ordered) > MAX_LISTED:
                console.print(f"  ... and {len(ordered) - MAX_LISTED} more")

        if result.previous is None:
            console.print("\n[dim]No local record yet; obsolete files will not be removed.[/dim]")

        for entry in result.launcher_updates:
            console.print(f"\n[yellow]Launcher update available:[/yellow] {entry.path}")

    return render_rich(_render)


def _handler(context: SlashCommandContext, args: List[str]) -> str:
    quick = any(arg.lower() in QUICK_FLAGS for arg in args)
    result = context.client().check(quick=quick)
    return render_check_result(result)


COMMAND = SlashCommand(
    name="check",
    description="Compare local files with the server manifest without changing anything.",
    handler=_handler,
    usage="check [--quick]",
    requires_ready=True,
)
