"""Logging helpers for the patcher runtime."""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
import sys
from typing import Mapping, Optional, Union

LOG_DIR_NAME = ".patcher-logs"
LOG_SUBPATH = Path(LOG_DIR_NAME) / "patcher.log"
STRUCTURED_LOG_SUBPATH = Path(LOG_DIR_NAME) / "patcher.jsonl"
MAX_BYTES = 5 * 1024 * 1024  # 5 MB per log segment
BACKUP_COUNT = 3
TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LEVEL_ENV = "PATCHER_LOG_LEVEL"
REPO_ROOT = Path(__file__).resolve().parent.parent
FALLBACK_ROOT = REPO_ROOT / ".eqpatch_runtime"


class JSONFormatter(logging.Formatter):
    """Format log records as JSON lines for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        # Include any extra fields attached to the record
        if hasattr(record, "extra") and record.extra:
            log_entry["extra"] = record.extra
        return json.dumps(log_entry)


def resolve_log_level(
    configured: Union[str, int, None] = None,
    env: Optional[Mapping[str, str]] = None,
) -> Union[str, int]:
    """``PATCHER_LOG_LEVEL`` wins over the configured level."""
    env_source = env if env is not None else os.environ
    return env_source.get(LEVEL_ENV) or configured or logging.INFO


def setup_logging(
    root_dir: Path,
    level: Union[str, int] = logging.INFO,
    structured: bool = True,
    console_level: Union[str, int] = logging.WARNING,
) -> Path:
    """Configure patcher logging with optional structured JSON output.

    Args:
        root_dir: Patch root; logs go under ``.patcher-logs`` inside it.
        level: Logging level for the log files (string name or int constant).
        structured: Whether to enable structured JSON logging.
        console_level: Minimum level echoed to stderr.

    Returns:
        Path to the primary (text) log file.
    """
    root_dir = Path(root_dir)
    resolved_level = _resolve_level(level)
    text_formatter = logging.Formatter(TEXT_FORMAT)

    log_path = _resolve_log_path(root_dir, LOG_SUBPATH)
    handlers = [_rotating_handler(log_path, text_formatter)]
    if structured:
        json_path = _resolve_log_path(root_dir, STRUCTURED_LOG_SUBPATH)
        handlers.append(_rotating_handler(json_path, JSONFormatter()))

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(text_formatter)
    console_handler.setLevel(max(resolved_level, _resolve_level(console_level)))
    handlers.append(console_handler)

    logger = logging.getLogger("eqpatch")
    _reset_handlers(logger)
    logger.setLevel(resolved_level)
    for handler in handlers:
        logger.addHandler(handler)
    logger.propagate = False

    _silence_third_party()
    return log_path


def _rotating_handler(path: Path, formatter: logging.Formatter) -> RotatingFileHandler:
    handler = RotatingFileHandler(path, maxBytes=MAX_BYTES, backupCount=BACKUP_COUNT, encoding="utf-8")
    handler.setFormatter(formatter)
    return handler


def _resolve_level(level: Union[str, int]) -> int:
    if isinstance(level, str):
        return getattr(logging, level.upper(), logging.INFO)
    return int(level)


def _resolve_log_path(root_dir: Path, subpath: Path) -> Path:
    primary = root_dir / subpath
    try:
        primary.parent.mkdir(parents=True, exist_ok=True)
        if os.access(primary.parent, os.W_OK):
            return primary
    except OSError:
        pass
    fallback = FALLBACK_ROOT / subpath
    fallback.parent.mkdir(parents=True, exist_ok=True)
    print(
        f"[config] Unable to write logs under '{root_dir}'; "
        f"falling back to '{fallback.parent}'.",
        file=sys.stderr,
    )
    return fallback


def _reset_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


def _silence_third_party() -> None:
    # paramiko logs every channel event at INFO.
    logging.getLogger("paramiko").setLevel(logging.WARNING)


__all__ = [
    "FALLBACK_ROOT",
    "JSONFormatter",
    "LEVEL_ENV",
    "LOG_SUBPATH",
    "STRUCTURED_LOG_SUBPATH",
    "resolve_log_level",
    "setup_logging",
]
