"""Diff engine: turn a target manifest plus observed local state into a plan."""

from __future__ import annotations

import logging
import stat
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from .fsutil import resolve_within
from .identity import ContentIdentity, compute_file_identity
from .manifest import Manifest, ManifestEntry
from .store import DEFAULT_LOCAL_RECORD

logger = logging.getLogger("eqpatch.sync.reconciler")

# Control files that must never be removed as "obsolete".
DEFAULT_PROTECTED_PATHS: Tuple[str, ...] = (
    "LaunchPad.exe",
    "patcher.exe",
    "patcher-config.json",
    "patcher-config.yml",
    "patcher-config.yaml",
    DEFAULT_LOCAL_RECORD,
)
DEFAULT_LAUNCHER_FILES: Tuple[str, ...] = ("LaunchPad.exe", "patcher.exe", "patcher-config.json")


class FileStatus(str, Enum):
    """Why a target entry was (or was not) scheduled for fetching."""

    OK = "ok"
    MISSING = "missing"
    SIZE_MISMATCH = "size_mismatch"
    HASH_MISMATCH = "hash_mismatch"
    UNREADABLE = "unreadable"


class LocalState:
    """Read-only view of what is currently on disk."""

    def size(self, path: str) -> Optional[int]:
        """Byte length of ``path``, or None when it is not a regular file."""
        raise NotImplementedError

    def identity(self, path: str) -> ContentIdentity:
        """Full fingerprint of ``path``; may raise OSError."""
        raise NotImplementedError

    def observe(self, path: str) -> Optional[ContentIdentity]:
        if self.size(path) is None:
            return None
        return self.identity(path)


class LocalObserver(LocalState):
    """Observes a directory on disk: stat first, hash only on demand."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def size(self, path: str) -> Optional[int]:
        try:
            info = resolve_within(self.root, path).stat()
        except FileNotFoundError:
            return None
        except OSError as e:
            # Present but not stat-able still counts as "needs fetching".
            logger.warning("Could not stat %s: %s", path, e)
            return None
        if not stat.S_ISREG(info.st_mode):
            return None
        return info.st_size

    def identity(self, path: str) -> ContentIdentity:
        return compute_file_identity(resolve_within(self.root, path))


class ManifestObserver(LocalState):
    """Trusts a recorded manifest instead of re-hashing files."""

    def __init__(self, manifest: Manifest):
        self.manifest = manifest

    def size(self, path: str) -> Optional[int]:
        entry = self.manifest.find(path)
        return entry.size if entry else None

    def identity(self, path: str) -> ContentIdentity:
        entry = self.manifest.find(path)
        if entry is None:
            raise FileNotFoundError(path)
        return entry.identity


@dataclass(frozen=True)
class ReconciliationPlan:
    """What must change locally to match the target manifest."""

    to_fetch: Tuple[ManifestEntry, ...] = ()
    to_delete: FrozenSet[str] = frozenset()
    unchanged: Tuple[ManifestEntry, ...] = ()
    reasons: Dict[str, FileStatus] = field(default_factory=dict, compare=False)

    @property
    def is_empty(self) -> bool:
        return not self.to_fetch and not self.to_delete

    @property
    def fetch_bytes(self) -> int:
        return sum(entry.size for entry in self.to_fetch)

    @property
    def total_changes(self) -> int:
        return len(self.to_fetch) + len(self.to_delete)

    def summary(self) -> str:
        parts = []
        if self.to_fetch:
            parts.append(f"{len(self.to_fetch)} file(s) to update")
        if self.to_delete:
            parts.append(f"{len(self.to_delete)} file(s) to remove")
        return ", ".join(parts) if parts else "up to date"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "to_fetch": [
                {**entry.to_dict(), "reason": self.reasons.get(entry.path, FileStatus.MISSING).value}
                for entry in self.to_fetch
            ],
            "to_delete": sorted(self.to_delete),
            "unchanged": len(self.unchanged),
        }


class Reconciler:
    """Computes fetch/delete/unchanged sets. Never touches disk or network state."""

    def __init__(self, protected_paths: Optional[Iterable[str]] = None):
        self.protected_paths = frozenset(
            DEFAULT_PROTECTED_PATHS if protected_paths is None else protected_paths
        )

    def classify(self, entry: ManifestEntry, observer: LocalState) -> FileStatus:
        size = observer.size(entry.path)
        if size is None:
            return FileStatus.MISSING
        if size != entry.size:
            return FileStatus.SIZE_MISMATCH
        try:
            local = observer.identity(entry.path)
        except OSError as e:
            logger.warning("Could not hash %s, scheduling re-download: %s", entry.path, e)
            return FileStatus.UNREADABLE
        if not local.matches(entry.identity):
            return FileStatus.HASH_MISMATCH
        return FileStatus.OK

    def plan(
        self,
        target: Manifest,
        observer: LocalState,
        previous: Optional[Manifest] = None,
    ) -> ReconciliationPlan:
        to_fetch: List[ManifestEntry] = []
        unchanged: List[ManifestEntry] = []
        reasons: Dict[str, FileStatus] = {}

        for entry in target.entries:
            status = self.classify(entry, observer)
            if status is FileStatus.OK:
                unchanged.append(entry)
                continue
            reasons[entry.path] = status
            to_fetch.append(entry)
            logger.debug("[%s] %s", status.value.upper(), entry.path)

        to_delete = self.obsolete_paths(target, previous)

        plan = ReconciliationPlan(
            to_fetch=tuple(to_fetch),
            to_delete=to_delete,
            unchanged=tuple(unchanged),
            reasons=reasons,
        )
        logger.info("Reconciliation plan: %s", plan.summary())
        return plan

    def obsolete_paths(self, target: Manifest, previous: Optional[Manifest]) -> FrozenSet[str]:
        """Paths this tool placed earlier that the target no longer lists."""
        if previous is None:
            # No record of what we placed: nothing is known to be unwanted.
            return frozenset()
        target_paths = set(target.paths())
        return frozenset(
            path
            for path in previous.paths()
            if path not in target_paths and path not in self.protected_paths
        )

    def launcher_updates(
        self,
        target: Manifest,
        observer: LocalState,
        launcher_files: Iterable[str] = DEFAULT_LAUNCHER_FILES,
    ) -> List[ManifestEntry]:
        """Launcher entries whose local copy is missing or stale."""
        stale: List[ManifestEntry] = []
        for name in launcher_files:
            entry = target.find(name)
            if entry is not None and self.classify(entry, observer) is not FileStatus.OK:
                stale.append(entry)
        return stale


__all__ = [
    "DEFAULT_LAUNCHER_FILES",
    "DEFAULT_PROTECTED_PATHS",
    "FileStatus",
    "LocalObserver",
    "LocalState",
    "ManifestObserver",
    "ReconciliationPlan",
    "Reconciler",
]
