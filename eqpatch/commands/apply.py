"""Slash command for applying a patch run."""

from __future__ import annotations

from typing import List

from rich.console import Console

from ..slash_commands import (
    EXIT_PARTIAL_FAILURE,
    SlashCommand,
    SlashCommandContext,
    format_size,
    render_rich,
)
from ..sync.executor import ExecutionReport


def render_report(report: ExecutionReport) -> str:
    def _render(console: Console) -> None:
        style = "green" if report.success else "yellow"
        console.print(f"[{style}]Patch finished:[/{style}] {report.summary()}")
        if report.bytes_fetched:
            console.print(f"Downloaded {format_size(report.bytes_fetched)}")

        if report.failures:
            console.print("\n[red]Failed:[/red]")
            for failure in report.failures:
                console.print(f"  ! {failure.message}")

        if report.warnings:
            console.print("\n[yellow]Warnings:[/yellow]")
            for warning in report.warnings:
                console.print(f"  - {warning}")

    return render_rich(_render)


def _handler(context: SlashCommandContext, _: List[str]) -> str:
    # Checks under the run lock; runs even when nothing changed so the record gains a deletion basis.
    report = context.client().apply()
    if report.is_noop:
        return f"[apply] Up to date. {report.unchanged} files verified."
    if not report.success:
        context.exit_code = EXIT_PARTIAL_FAILURE
    return render_report(report)


COMMAND = SlashCommand(
    name="apply",
    description="Download changed files, remove obsolete ones, and update the local record.",
    handler=_handler,
    aliases=("patch",),
    requires_ready=True,
)
