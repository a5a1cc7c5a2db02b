"""Persistence for the manifest that was last applied locally."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from ..errors import PatcherError
from .manifest import Manifest, load_manifest_file

logger = logging.getLogger("eqpatch.sync.store")

DEFAULT_LOCAL_RECORD = ".patcher-manifest.json"


class LocalManifestStore:
    """Reads and writes the local record of files this tool placed.

    The record is the only basis for deleting obsolete files, so a record that
    cannot be trusted is treated exactly like a missing one.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    @classmethod
    def for_root(cls, root: Path, record_name: str = DEFAULT_LOCAL_RECORD) -> "LocalManifestStore":
        return cls(Path(root) / record_name)

    def exists(self) -> bool:
        return self.path.is_file()

    def load(self) -> Optional[Manifest]:
        if not self.path.exists():
            return None
        try:
            manifest = load_manifest_file(self.path)
        except PatcherError as e:
            logger.error("Ignoring unreadable local record %s: %s", self.path, e)
            return None
        logger.debug("Loaded local record %s (%d files)", self.path, len(manifest))
        return manifest

    def save(self, manifest: Manifest) -> None:
        manifest.save(self.path)
        logger.info("Saved local record %s (%d files)", self.path, len(manifest))


__all__ = ["DEFAULT_LOCAL_RECORD", "LocalManifestStore"]
