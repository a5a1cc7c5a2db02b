"""Slash command for inspecting manifests."""

from __future__ import annotations

from typing import List, Optional

from rich.console import Console
from rich.table import Table

from ..slash_commands import EXIT_SETUP_ERROR, SlashCommand, SlashCommandContext, format_size, render_rich
from ..sync.manifest import Manifest

MAX_LISTED = 50
SOURCES = ("local", "remote", "build")


def render_manifest(manifest: Manifest, title: str) -> str:
    summary = manifest.summary()

    def _render(console: Console) -> None:
        generated = summary.generated_at.isoformat() if summary.generated_at else "(unknown)"
        console.print(f"[bold]{title}[/bold] ({summary.total_files} files, {format_size(summary.total_size)})")
        console.print(f"Version {summary.version}, generated {generated}\n")

        table = Table(show_header=True)
        table.add_column("Path", style="cyan")
        table.add_column("Size", justify="right")
        table.add_column("MD5", style="dim", max_width=16)
        for entry in manifest.entries[:MAX_LISTED]:
            table.add_row(entry.path, format_size(entry.size), entry.identity.short_hash + "...")

        if len(manifest) > MAX_LISTED:
            console.print(f"(showing first {MAX_LISTED} of {len(manifest)} files)")

        console.print(table)

    return render_rich(_render)


def _handler(context: SlashCommandContext, args: List[str]) -> str:
    source = args[0].lower() if args else "local"
    if source not in SOURCES:
        context.exit_code = EXIT_SETUP_ERROR
        return f"[manifest] Unknown source '{source}'. Use one of: {', '.join(SOURCES)}."

    client = context.client()
    manifest: Optional[Manifest]
    if source == "remote":
        manifest = client.fetch_target()
        title = f"Server manifest ({client.transport.describe()})"
    elif source == "build":
        # Preview only; nothing is written.
        manifest = client.manifest_builder().build(write=False)
        title = f"Manifest preview for {client.root}"
    else:
        manifest = client.load_record()
        title = f"Local record ({client.store.path})"
        if manifest is None:
            return "[manifest] No local record yet. Run 'apply' to create one."

    return render_manifest(manifest, title)


COMMAND = SlashCommand(
    name="manifest",
    description="Show the local record, the server manifest, or a build preview.",
    handler=_handler,
    usage="manifest [local|remote|build]",
    requires_ready=True,
)
