"""Slash command registry."""

from __future__ import annotations

from .apply import COMMAND as APPLY_COMMAND
from .build import COMMAND as BUILD_COMMAND
from .check import COMMAND as CHECK_COMMAND
from .clean import COMMAND as CLEAN_COMMAND
from .config import COMMAND as CONFIG_COMMAND
from .help import COMMAND as HELP_COMMAND
from .manifest import COMMAND as MANIFEST_COMMAND
from .status import COMMAND as STATUS_COMMAND

COMMANDS = [
    STATUS_COMMAND,
    HELP_COMMAND,
    APPLY_COMMAND,
    BUILD_COMMAND,
    CHECK_COMMAND,
    CLEAN_COMMAND,
    CONFIG_COMMAND,
    MANIFEST_COMMAND,
]

__all__ = ["COMMANDS"]
