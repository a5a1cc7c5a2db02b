# eqpatch/app.py
"""
Command-line entry point for the patcher.

``eqpatch <command> [args]`` runs a single command and exits with its status.
Without arguments an interactive prompt accepts ``/command`` lines.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
try:
    import readline
except ImportError:  # pragma: no cover
    readline = None
import sys
from typing import List, Optional, Sequence

from . import __version__
from .commands import COMMANDS
from .configuration import (
    ConfigurationBundle,
    Diagnostic,
    load_runtime_configuration,
    resolve_root_dir,
)
from .logging_utils import FALLBACK_ROOT, resolve_log_level, setup_logging
from .slash_commands import EXIT_OK, EXIT_PARTIAL_FAILURE, CommandRouter

REPO_ROOT = Path(__file__).resolve().parent.parent
logger = logging.getLogger("eqpatch")
TRUE_STRINGS = {"1", "true", "yes", "on"}
FALSE_STRINGS = {"0", "false", "no", "off"}


def print_banner(config: ConfigurationBundle) -> None:
    """Print the runtime header so operators know where the patcher is pointed."""

    print(f"eqpatch {__version__} :: {config.root_dir.resolve()}")
    print("Type /help for commands, /exit to quit.")
    print()


def _parse_env_flag(value: str, *, default: bool = False) -> bool:
    normalized = value.strip().lower()
    if normalized in TRUE_STRINGS:
        return True
    if normalized in FALSE_STRINGS:
        return False
    return default


def _resolve_ui_verbose(config_bundle: ConfigurationBundle) -> bool:
    """Resolve whether log records are echoed to the console."""

    env_value = os.environ.get("PATCHER_UI_VERBOSE")
    if env_value is not None:
        return _parse_env_flag(env_value)
    return bool(config_bundle.get("ui.verbose", False))


def _log_path_within_root(log_path: Path, root_dir: Path) -> bool:
    try:
        log_path.resolve().relative_to(root_dir.resolve())
        return True
    except ValueError:
        return False


def build_router(config: ConfigurationBundle) -> CommandRouter:
    """Register every patcher command."""

    router = CommandRouter(
        config,
        metadata={
            "repo_root": str(REPO_ROOT),
        },
    )
    for command in COMMANDS:
        router.register(command)
    return router


def emit_configuration_report(config: ConfigurationBundle, *, verbose: bool = False) -> None:
    """Print diagnostics so operators can correct issues quickly."""

    relevant = [diag for diag in config.diagnostics if verbose or diag.level != "info"]
    if not relevant:
        if verbose:
            print(f"[config] Loaded {len(config.files_loaded)} file(s).", file=sys.stderr)
        return

    print("[config] Diagnostics:", file=sys.stderr)
    for diag in relevant:
        prefix = diag.source or config.root_dir
        print(f"  - ({diag.level.upper()}) {diag.message} [{prefix}]", file=sys.stderr)


def configure_autocomplete(router: CommandRouter) -> None:
    """Enable readline tab completion for slash commands."""

    if readline is None:
        return

    commands = list(router.command_names)

    def completer(text: str, state: int):
        buffer = readline.get_line_buffer()
        if not buffer.startswith("/"):
            return None
        fragment = text[1:] if text.startswith("/") else text
        matches = [f"/{cmd}" for cmd in commands if cmd.startswith(fragment)]
        if state < len(matches):
            return matches[state]
        return None

    readline.set_completer(completer)
    readline.parse_and_bind("tab: complete")
    readline.set_completer_delims(" \t")


def execute_cli_command(command_line: str, router: CommandRouter) -> int:
    """Run one command line through the router, print its output, return its exit code."""

    parts = command_line.strip().split()
    if not parts:
        return EXIT_OK
    return run_command(parts[0], parts[1:], router)


def run_command(command: str, args: Sequence[str], router: CommandRouter) -> int:
    command = command.lstrip("/")
    logger.info("Executing command: %s %s", command, " ".join(args))
    try:
        result = router.handle(command, list(args))
    except KeyboardInterrupt:
        print("\n[interrupted]")
        logger.warning("Command interrupted: %s", command)
        return EXIT_PARTIAL_FAILURE
    if result:
        print(result)
    return router.last_exit_code


def initialize(root_dir: Optional[Path] = None) -> ConfigurationBundle:
    """Load configuration and start logging."""

    config_bundle = load_runtime_configuration(root_dir or resolve_root_dir())
    ui_verbose = _resolve_ui_verbose(config_bundle)
    level = resolve_log_level(config_bundle.get("logging.level"))

    # Never create a missing root just to hold its logs.
    log_base = config_bundle.root_dir if config_bundle.root_dir.is_dir() else FALLBACK_ROOT
    log_path = setup_logging(
        log_base,
        level,
        structured=bool(config_bundle.get("logging.structured", True)),
        console_level=level if ui_verbose else logging.WARNING,
    )
    config_bundle.log_path = log_path
    if log_base is config_bundle.root_dir and not _log_path_within_root(log_path, config_bundle.root_dir):
        config_bundle.diagnostics.append(
            Diagnostic(
                level="warning",
                message=(
                    "Root log directory is not writable; "
                    f"logging to fallback path '{log_path}'."
                ),
                source=log_path,
            )
        )
    logger.info("Logging initialized at %s", log_path)
    emit_configuration_report(config_bundle, verbose=ui_verbose)
    return config_bundle


def run_interactive(router: CommandRouter) -> int:
    """Prompt loop; returns the exit code of the last command run."""

    configure_autocomplete(router)
    print_banner(router.config)
    exit_code = EXIT_OK

    while True:
        try:
            raw_line = input("> ")
        except (EOFError, KeyboardInterrupt):
            print("\n[Exiting]")
            break

        line = raw_line.strip()
        if not line:
            continue

        if line.lstrip("/").lower() in {"quit", "exit"}:
            print("[Goodbye]")
            break

        if not line.startswith("/"):
            print("[router] Commands start with '/'. Try /help.")
            continue

        exit_code = execute_cli_command(line, router)

    return exit_code


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point for the ``eqpatch`` script and ``python -m eqpatch``."""

    args: List[str] = list(sys.argv[1:] if argv is None else argv)
    config_bundle = initialize()
    router = build_router(config_bundle)
    try:
        if args:
            return run_command(args[0], args[1:], router)
        return run_interactive(router)
    finally:
        router.reset_client()


__all__ = [
    "build_router",
    "emit_configuration_report",
    "execute_cli_command",
    "initialize",
    "main",
    "run_command",
    "run_interactive",
]
