"""Slash command for viewing configuration."""

from __future__ import annotations

from typing import Any, List

import yaml
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table
from rich.tree import Tree

from ..configuration import ConfigurationBundle
from ..slash_commands import EXIT_SETUP_ERROR, SlashCommand, SlashCommandContext, render_rich

YAML_FLAGS = {"--yaml", "-y"}
# Never echoed back in full.
SECRET_KEYS = {"password"}
MAX_SCALAR_WIDTH = 60


def _redact(data: Any) -> Any:
    if isinstance(data, dict):
        return {
            key: ("***" if key in SECRET_KEYS and value else _redact(value))
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [_redact(item) for item in data]
    return data


def _format_value(value: Any) -> str:
    if isinstance(value, str):
        if len(value) > MAX_SCALAR_WIDTH:
            value = value[: MAX_SCALAR_WIDTH - 3] + "..."
        return f'"{value}"'
    return repr(value)


def _fill_tree(node: Tree, data: Any) -> None:
    """Add one branch per section and one leaf per setting."""

    for key in sorted(data):
        value = data[key]
        if isinstance(value, dict):
            _fill_tree(node.add(f"[bold]{key}[/]"), value)
        elif isinstance(value, list):
            items = ", ".join(_format_value(item) for item in value) or "[dim]empty[/]"
            node.add(f"[bold]{key}[/]: [{items}]")
        else:
            node.add(f"[bold]{key}[/]: {_format_value(value)}")


def _files_table(bundle: ConfigurationBundle) -> Table:
    table = Table(box=box.SIMPLE, header_style="bold magenta", pad_edge=False)
    table.add_column("#", justify="right", style="magenta", no_wrap=True)
    table.add_column("File", overflow="fold")
    for idx, path in enumerate(bundle.files_loaded, start=1):
        try:
            label = f"<root>/{path.relative_to(bundle.root_dir).as_posix()}"
        except ValueError:
            label = str(path)
        table.add_row(str(idx), label)
    if not bundle.files_loaded:
        table.add_row("-", "[dim]defaults only[/dim]")
    return table


def _render_view(bundle: ConfigurationBundle, show_yaml: bool) -> str:
    merged = _redact(bundle.merged or {})
    tree = Tree("config", guide_style="cyan")
    _fill_tree(tree, merged)

    def _render(console: Console) -> None:
        console.print(Panel(_files_table(bundle), title="Loaded Config Files", border_style="magenta"))
        if show_yaml:
            text = yaml.safe_dump(merged, sort_keys=True, default_flow_style=False).strip()
            console.print(Panel(Syntax(text or "# empty", "yaml", word_wrap=True), title="Merged YAML"))
        else:
            console.print(Panel(tree, title="Merged Configuration", border_style="cyan"))

    return render_rich(_render)


def _lookup(data: Any, dotted: str) -> Any:
    for part in dotted.split("."):
        if not isinstance(data, dict) or part not in data:
            return None
        data = data[part]
    return data


def _handler(context: SlashCommandContext, args: List[str]) -> str:
    if not args or args[0].lower() in YAML_FLAGS:
        return _render_view(context.config, show_yaml=bool(args))

    dotted = ".".join(part.strip() for part in args[0].split(".") if part.strip())
    if not dotted:
        context.exit_code = EXIT_SETUP_ERROR
        return "[config] key path cannot be empty."

    value = _lookup(context.config.merged, dotted)
    if value is None:
        context.exit_code = EXIT_SETUP_ERROR
        return f"[config] {dotted} is not set."
    if dotted.rsplit(".", 1)[-1] in SECRET_KEYS and value:
        value = "***"
    return f"[config] {dotted} = {_format_value(_redact(value))}"


COMMAND = SlashCommand(
    name="config",
    description="Show merged configuration values and their source files.",
    handler=_handler,
    usage="config [key|--yaml]",
)
