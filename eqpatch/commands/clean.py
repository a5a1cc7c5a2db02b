"""Slash command for removing leftovers of interrupted downloads."""

from __future__ import annotations

from typing import List

from ..slash_commands import SlashCommand, SlashCommandContext


def _handler(context: SlashCommandContext, _: List[str]) -> str:
    client = context.client()
    removed = client.clean_temp_files()
    if not removed:
        return "[clean] No leftover download files found."
    lines = [f"[clean] Removed {len(removed)} leftover download file(s):"]
    for path in removed:
        try:
            label = path.relative_to(client.root).as_posix()
        except ValueError:
            label = str(path)
        lines.append(f"  - {label}")
    return "\n".join(lines)


COMMAND = SlashCommand(
    name="clean",
    description="Remove partial download files left by an interrupted run.",
    handler=_handler,
)
