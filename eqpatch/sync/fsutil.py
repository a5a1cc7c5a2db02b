"""Small filesystem helpers shared by the builder, store, and executor."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import List

from ..errors import LocalIOError, ParseError

logger = logging.getLogger("eqpatch.sync.fsutil")

TEMP_SUFFIX = ".patcher-tmp"


def temp_path_for(destination: Path) -> Path:
    """Sibling temp path used while a file is being written."""
    return destination.with_name(destination.name + TEMP_SUFFIX)


def atomic_write_bytes(destination: Path, data: bytes) -> None:
    """Write ``data`` to a temp sibling and rename it over ``destination``."""
    destination.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = temp_path_for(destination)
    try:
        with open(tmp_path, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, destination)
    except OSError as exc:
        discard(tmp_path)
        raise LocalIOError(f"Failed to write {destination}: {exc}") from exc


def discard(path: Path) -> None:
    """Remove ``path`` if it exists; failures are only logged."""
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Could not remove temp file %s: %s", path, exc)


def resolve_within(root: Path, rel_path: str) -> Path:
    """Join a manifest path onto ``root`` and refuse anything that escapes it.

    The check is lexical; symlinks inside the root are the operator's business.
    """
    base = os.path.normpath(os.path.abspath(root))
    target = os.path.normpath(os.path.join(base, *rel_path.split("/")))
    if os.path.commonpath([base, target]) != base or target == base:
        raise ParseError(f"Path '{rel_path}' escapes the managed root")
    return Path(target)


def collect_stale_temp_files(root: Path) -> List[Path]:
    """Delete ``*.patcher-tmp`` leftovers from interrupted transfers."""
    removed: List[Path] = []
    if not root.is_dir():
        return removed
    for tmp_path in sorted(root.rglob(f"*{TEMP_SUFFIX}")):
        if not tmp_path.is_file():
            continue
        try:
            tmp_path.unlink()
            removed.append(tmp_path)
        except OSError as exc:
            logger.warning("Could not remove stale temp file %s: %s", tmp_path, exc)
    if removed:
        logger.info("Removed %d stale temp file(s) under %s", len(removed), root)
    return removed


__all__ = [
    "TEMP_SUFFIX",
    "atomic_write_bytes",
    "collect_stale_temp_files",
    "discard",
    "resolve_within",
    "temp_path_for",
]
