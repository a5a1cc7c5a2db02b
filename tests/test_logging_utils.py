"""Tests for logging utilities."""

from __future__ import annotations

import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from eqpatch import logging_utils


def _reset_logger() -> logging.Logger:
    logger = logging.getLogger("eqpatch")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)
    logger.propagate = True
    return logger


def test_setup_logging_creates_rotating_files(tmp_path: Path):
    logger = _reset_logger()
    log_path = logging_utils.setup_logging(tmp_path, level="INFO")

    assert log_path == tmp_path / ".patcher-logs" / "patcher.log"
    assert log_path.exists()

    file_handlers = [
        handler for handler in logger.handlers if isinstance(handler, RotatingFileHandler)
    ]
    assert sorted(Path(handler.baseFilename).name for handler in file_handlers) == [
        "patcher.jsonl",
        "patcher.log",
    ]
    assert logger.propagate is False


def test_setup_logging_without_structured_output(tmp_path: Path):
    logger = _reset_logger()
    logging_utils.setup_logging(tmp_path, level="INFO", structured=False)

    file_handlers = [
        handler for handler in logger.handlers if isinstance(handler, RotatingFileHandler)
    ]
    assert len(file_handlers) == 1
    assert not (tmp_path / ".patcher-logs" / "patcher.jsonl").exists()


def test_setup_logging_is_idempotent(tmp_path: Path):
    logger = _reset_logger()
    logging_utils.setup_logging(tmp_path, level="INFO")
    handler_count = len(logger.handlers)

    logging_utils.setup_logging(tmp_path, level="INFO")
    assert len(logger.handlers) == handler_count


def test_structured_log_lines_are_json(tmp_path: Path):
    _reset_logger()
    logging_utils.setup_logging(tmp_path, level="DEBUG")

    logging.getLogger("eqpatch.sync.executor").info("Fetched %s", "a.txt")
    for handler in logging.getLogger("eqpatch").handlers:
        handler.flush()

    lines = (tmp_path / ".patcher-logs" / "patcher.jsonl").read_text(encoding="utf-8").splitlines()
    record = json.loads(lines[-1])
    assert record["message"] == "Fetched a.txt"
    assert record["logger"] == "eqpatch.sync.executor"
    assert record["level"] == "INFO"


def test_console_level_is_capped(tmp_path: Path):
    logger = _reset_logger()
    logging_utils.setup_logging(tmp_path, level="DEBUG", console_level="WARNING")

    console = [
        handler
        for handler in logger.handlers
        if type(handler) is logging.StreamHandler
    ]
    assert len(console) == 1
    assert console[0].level == logging.WARNING
    assert logger.level == logging.DEBUG


def test_paramiko_is_held_at_warning(tmp_path: Path):
    _reset_logger()
    logging_utils.setup_logging(tmp_path, level="DEBUG")

    assert logging.getLogger("paramiko").level == logging.WARNING


def test_setup_logging_falls_back_when_root_not_writable(tmp_path: Path, monkeypatch):
    _reset_logger()
    root_dir = tmp_path / "client"
    primary_parent = root_dir / ".patcher-logs"
    original_mkdir = Path.mkdir

    def fake_mkdir(self, *args, **kwargs):
        if str(self).startswith(str(primary_parent)):
            raise PermissionError
        return original_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", fake_mkdir)
    fallback_root = tmp_path / "fallback"
    monkeypatch.setattr(logging_utils, "FALLBACK_ROOT", fallback_root)

    log_path = logging_utils.setup_logging(root_dir, level="INFO")
    expected = fallback_root / ".patcher-logs" / "patcher.log"

    assert log_path == expected
    assert expected.exists()


def test_resolve_log_level_prefers_environment():
    assert logging_utils.resolve_log_level("INFO", env={"PATCHER_LOG_LEVEL": "DEBUG"}) == "DEBUG"
    assert logging_utils.resolve_log_level("ERROR", env={}) == "ERROR"
    assert logging_utils.resolve_log_level(None, env={}) == logging.INFO
