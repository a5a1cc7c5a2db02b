"""Shared slash command registry and helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from io import StringIO
import logging
import shutil
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from rich.console import Console
from rich.table import Table

from .configuration import ConfigurationBundle
from .errors import PatcherError
from .sync.client import PatchClient, PatcherSettings

SlashCommandHandler = Callable[["SlashCommandContext", List[str]], str]

EXIT_OK = 0
EXIT_SETUP_ERROR = 1
EXIT_PARTIAL_FAILURE = 2

logger = logging.getLogger("eqpatch.commands")


@dataclass
class SlashCommandContext:
    """Context passed into each slash command handler."""

    config: ConfigurationBundle
    router: "CommandRouter"
    metadata: Dict[str, Any] = field(default_factory=dict)
    exit_code: int = EXIT_OK

    def client(self) -> PatchClient:
        return self.router.client()


@dataclass
class SlashCommand:
    """Metadata about a slash command."""

    name: str
    description: str
    handler: SlashCommandHandler
    usage: str = ""
    aliases: Tuple[str, ...] = ()
    requires_ready: bool = False


class CommandRouter:
    """Registry + dispatcher for slash commands."""

    def __init__(
        self,
        config: ConfigurationBundle,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.config = config
        self._commands: Dict[str, SlashCommand] = {}
        self._aliases: Dict[str, str] = {}
        self.metadata = metadata or {}
        self.last_exit_code = EXIT_OK

    def register(self, command: SlashCommand) -> None:
        name = command.name.lower()
        self._commands[name] = command
        for alias in command.aliases:
            self._aliases[alias.lower()] = name

    def handle(self, command_name: str, args: List[str]) -> str:
        command = self.get(command_name)
        if command is None:
            self.last_exit_code = EXIT_SETUP_ERROR
            return f"[router] Unknown command '{command_name}'. Use 'help' to list commands."
        if command.requires_ready and self.config.status != "ready":
            self.last_exit_code = EXIT_SETUP_ERROR
            return (
                f"[router] '/{command.name}' requires a ready configuration "
                f"(current status: {self.config.status})."
            )
        context = SlashCommandContext(
            config=self.config,
            router=self,
            metadata=self.metadata,
        )
        try:
            result = command.handler(context, args)
        except PatcherError as exc:
            logger.error("/%s failed: %s", command.name, exc)
            self.last_exit_code = EXIT_SETUP_ERROR
            return f"[{command.name}] {type(exc).__name__}: {exc}"
        self.last_exit_code = context.exit_code
        return result

    def client(self) -> PatchClient:
        """Patch client for the configured root, built on first use."""
        client = self.metadata.get("client")
        if client is None:
            settings = PatcherSettings.from_config(self.config.merged)
            client = PatchClient(self.config.root_dir, settings)
            self.metadata["client"] = client
        return client

    def reset_client(self) -> None:
        client = self.metadata.pop("client", None)
        if client is not None:
            client.close()

    @property
    def command_names(self) -> Sequence[str]:
        return sorted(self._commands.keys())

    def commands(self) -> Sequence[SlashCommand]:
        return [self._commands[name] for name in self.command_names]

    def get(self, command_name: str) -> Optional[SlashCommand]:
        name = command_name.lower()
        return self._commands.get(self._aliases.get(name, name))


def render_help_table(commands: Sequence[SlashCommand]) -> str:
    """Render a help table listing slash commands."""

    def _render(console: Console) -> None:
        table = Table(title="Commands", show_header=True, header_style="bold cyan")
        table.add_column("Command", style="green", no_wrap=True)
        table.add_column("Description")
        for cmd in commands:
            label = cmd.usage or cmd.name
            if cmd.aliases:
                label += f" ({', '.join(cmd.aliases)})"
            table.add_row(label, cmd.description)
        console.print(table)

    return render_rich(_render)


def render_rich(render_fn: Callable[[Console], None]) -> str:
    """Render a Rich layout to an ANSI string without printing live."""

    terminal_size = shutil.get_terminal_size(fallback=(80, 24))
    # Clamp to a reasonable minimum so Rich does not choke on ultra-small widths.
    width = max(20, terminal_size.columns)
    height = max(10, terminal_size.lines)

    console = Console(
        record=True,
        force_terminal=True,
        color_system="auto",
        width=width,
        height=height,
        file=StringIO(),
    )
    render_fn(console)
    return console.export_text(clear=False, styles=True)


def format_size(size: int) -> str:
    """Format file size in human-readable form."""
    if size < 1024:
        return f"{size} B"
    elif size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    elif size < 1024 * 1024 * 1024:
        return f"{size / (1024 * 1024):.1f} MB"
    else:
        return f"{size / (1024 * 1024 * 1024):.1f} GB"


__all__ = [
    "CommandRouter",
    "EXIT_OK",
    "EXIT_PARTIAL_FAILURE",
    "EXIT_SETUP_ERROR",
    "SlashCommand",
    "SlashCommandContext",
    "format_size",
    "render_help_table",
    "render_rich",
]
