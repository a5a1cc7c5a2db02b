"""Patch manifest model, JSON codec, and directory builder."""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from ..errors import LocalIOError, ParseError, ValidationError
from .fsutil import TEMP_SUFFIX, atomic_write_bytes
from .identity import ContentIdentity, compute_file_identity

logger = logging.getLogger("eqpatch.sync.manifest")

MANIFEST_VERSION = "1.0"
DEFAULT_MANIFEST_NAME = "manifest.json"
ROOT_FOLDER_LABEL = "(root)"

# Launcher-side files that are never published, plus our own artifacts.
DEFAULT_EXCLUDED_NAMES: Tuple[str, ...] = (
    "manifest.json",
    "update-patches.sh",
    "manifest-builder",
    "README.txt",
    "LaunchPad.exe",
    "patcher.exe",
    "patcher-config.json",
    "manager.exe",
    "news.json",
    "eq-patcher-client.zip",
    ".patcher-manifest.json",
    "patcher-config.yml",
    "patcher-config.yaml",
)
DEFAULT_EXCLUDED_DIRS: Tuple[str, ...] = (".patcher-logs",)

_HEX_DIGEST = re.compile(r"^[0-9a-fA-F]{32}$")
_DRIVE_PREFIX = re.compile(r"^[A-Za-z]:")
_FRACTION_RE = re.compile(r"(?<=:\d\d)\.(\d+)")


def validate_manifest_path(path: Any) -> str:
    """Return ``path`` unchanged if it is a safe, normalized relative path.

    Raises ParseError otherwise; bad paths are never corrected.
    """
    if not isinstance(path, str) or not path:
        raise ParseError(f"Manifest path must be a non-empty string, got {path!r}")
    if "\x00" in path:
        raise ParseError(f"Manifest path {path!r} contains a NUL byte")
    if "\\" in path:
        raise ParseError(f"Manifest path {path!r} must use forward slashes")
    if path.startswith("/") or _DRIVE_PREFIX.match(path):
        raise ParseError(f"Manifest path {path!r} must be relative")
    for segment in path.split("/"):
        if segment == "":
            raise ParseError(f"Manifest path {path!r} has an empty segment")
        if segment == "..":
            raise ParseError(f"Manifest path {path!r} escapes the root")
        if segment == ".":
            raise ParseError(f"Manifest path {path!r} is not normalized")
    return path


@dataclass(frozen=True)
class ManifestEntry:
    """One published file: where it lives and what it should contain."""

    path: str
    identity: ContentIdentity

    @property
    def size(self) -> int:
        return self.identity.size

    @property
    def md5(self) -> str:
        return self.identity.hash

    @property
    def folder(self) -> str:
        head, sep, _ = self.path.partition("/")
        return head if sep else ROOT_FOLDER_LABEL

    def to_dict(self) -> Dict[str, Any]:
        return {"path": self.path, "md5": self.md5, "size": self.size}

    @classmethod
    def from_dict(cls, data: Any) -> "ManifestEntry":
        if not isinstance(data, Mapping):
            raise ParseError(f"Manifest entry must be an object, got {type(data).__name__}")
        for key in ("path", "md5", "size"):
            if key not in data:
                raise ParseError(f"Manifest entry is missing '{key}': {dict(data)!r}")

        path = validate_manifest_path(data["path"])

        digest = data["md5"]
        if not isinstance(digest, str) or not _HEX_DIGEST.match(digest):
            raise ParseError(f"Manifest entry '{path}' has an invalid md5 {digest!r}")

        size = data["size"]
        if isinstance(size, bool) or not isinstance(size, int) or size < 0:
            raise ParseError(f"Manifest entry '{path}' has an invalid size {size!r}")

        return cls(path=path, identity=ContentIdentity(size=size, hash=digest.lower()))


@dataclass
class ManifestSummary:
    """Human-oriented overview of a manifest."""

    version: str
    generated_at: Optional[datetime]
    total_files: int
    total_size: int
    files_by_folder: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "generated": self.generated_at.isoformat() if self.generated_at else None,
            "total_files": self.total_files,
            "total_size": self.total_size,
            "files_by_folder": dict(self.files_by_folder),
        }


@dataclass(frozen=True)
class Manifest:
    """Declared file-tree state. Immutable; a new build replaces it wholesale."""

    entries: Tuple[ManifestEntry, ...] = ()
    version: str = MANIFEST_VERSION
    generated_at: Optional[datetime] = None
    _index: Dict[str, ManifestEntry] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        entries = tuple(self.entries)
        index: Dict[str, ManifestEntry] = {}
        for entry in entries:
            if entry.path in index:
                raise ValidationError(f"Duplicate manifest path '{entry.path}'")
            index[entry.path] = entry
        object.__setattr__(self, "entries", entries)
        object.__setattr__(self, "_index", index)

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[ManifestEntry]:
        return iter(self.entries)

    def __contains__(self, path: object) -> bool:
        return path in self._index

    def paths(self) -> List[str]:
        return [entry.path for entry in self.entries]

    def find(self, path: str) -> Optional[ManifestEntry]:
        return self._index.get(path)

    def entries_in_folder(self, folder: str) -> List[ManifestEntry]:
        """Entries directly or transitively under ``folder``; ``""`` means root-level files."""
        if not folder:
            return [entry for entry in self.entries if "/" not in entry.path]
        prefix = folder.rstrip("/") + "/"
        return [entry for entry in self.entries if entry.path.startswith(prefix)]

    @property
    def total_size(self) -> int:
        return sum(entry.size for entry in self.entries)

    def summary(self) -> ManifestSummary:
        by_folder: Dict[str, int] = {}
        for entry in self.entries:
            by_folder[entry.folder] = by_folder.get(entry.folder, 0) + 1
        return ManifestSummary(
            version=self.version,
            generated_at=self.generated_at,
            total_files=len(self.entries),
            total_size=self.total_size,
            files_by_folder=dict(sorted(by_folder.items())),
        )

    def with_entries(self, entries: Iterable[ManifestEntry]) -> "Manifest":
        return Manifest(entries=tuple(entries), version=self.version, generated_at=self.generated_at)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"version": self.version}
        if self.generated_at is not None:
            data["generated"] = self.generated_at.isoformat()
        data["files"] = [entry.to_dict() for entry in self.entries]
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2) + "\n"

    @classmethod
    def from_dict(cls, data: Any) -> "Manifest":
        if not isinstance(data, Mapping):
            raise ParseError("Manifest must be a JSON object")

        version = data.get("version", MANIFEST_VERSION)
        if not isinstance(version, str):
            raise ParseError(f"Manifest version must be a string, got {version!r}")

        files = data.get("files")
        if not isinstance(files, list):
            raise ParseError("Manifest 'files' must be a list")

        entries = [ManifestEntry.from_dict(item) for item in files]
        return cls(
            entries=tuple(entries),
            version=version,
            generated_at=_parse_timestamp(data.get("generated")),
        )

    def save(self, path: Path) -> None:
        """Write the manifest as JSON, replacing any previous file atomically."""
        atomic_write_bytes(path, self.to_json().encode("utf-8"))
        logger.debug("Saved manifest to %s (%d files)", path, len(self.entries))


def parse_manifest(raw: Union[bytes, str]) -> Manifest:
    """Parse manifest JSON. One bad entry fails the whole manifest."""
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ParseError(f"Manifest is not valid JSON: {exc}") from exc
    return Manifest.from_dict(data)


def load_manifest_file(path: Path) -> Manifest:
    try:
        raw = path.read_bytes()
    except OSError as exc:
        raise LocalIOError(f"Failed to read manifest {path}: {exc}") from exc
    return parse_manifest(raw)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ParseError(f"Manifest 'generated' must be an RFC3339 string, got {value!r}")
    text = value[:-1] + "+00:00" if value.endswith(("Z", "z")) else value
    # fromisoformat before 3.11 only takes 3 or 6 fractional digits.
    text = _FRACTION_RE.sub(lambda m: "." + (m.group(1) + "000000")[:6], text, count=1)
    try:
        return datetime.fromisoformat(text)
    except ValueError as exc:
        raise ParseError(f"Manifest 'generated' is not a valid timestamp: {value!r}") from exc


class ManifestBuilder:
    """Builds a patch manifest by scanning a directory tree."""

    def __init__(
        self,
        root: Path,
        excluded_names: Optional[Sequence[str]] = None,
        excluded_dirs: Optional[Sequence[str]] = None,
        manifest_name: str = DEFAULT_MANIFEST_NAME,
        version: str = MANIFEST_VERSION,
    ):
        self.root = Path(root)
        self.manifest_name = manifest_name
        self.version = version
        names = set(DEFAULT_EXCLUDED_NAMES if excluded_names is None else excluded_names)
        # The manifest being written must never list itself.
        names.add(manifest_name)
        self.excluded_names = frozenset(names)
        self.excluded_dirs = frozenset(DEFAULT_EXCLUDED_DIRS if excluded_dirs is None else excluded_dirs)
        self.warnings: List[str] = []

    @property
    def manifest_path(self) -> Path:
        return self.root / self.manifest_name

    def build(self, write: bool = True) -> Manifest:
        """Scan the root and return its manifest, writing it under the root by default."""
        if not self.root.is_dir():
            raise LocalIOError(f"Directory does not exist: {self.root}")

        self.warnings = []
        entries: List[ManifestEntry] = []
        for rel_path, file_path in self._iter_files():
            try:
                identity = compute_file_identity(file_path)
            except OSError as e:
                self._warn(f"Could not hash {rel_path}: {e}")
                continue
            entries.append(ManifestEntry(path=rel_path, identity=identity))
            logger.debug("Added %s (%d bytes, md5 %s)", rel_path, identity.size, identity.short_hash)

        entries.sort(key=lambda entry: entry.path)
        manifest = Manifest(
            entries=tuple(entries),
            version=self.version,
            generated_at=datetime.now(timezone.utc).replace(microsecond=0),
        )
        logger.info("Built manifest with %d files from %s", len(entries), self.root)

        if write:
            manifest.save(self.manifest_path)
            logger.info("Manifest written to %s", self.manifest_path)
        return manifest

    def _iter_files(self) -> Iterator[Tuple[str, Path]]:
        """Yield (relative posix path, absolute path) for every publishable file."""
        for dirpath, dirnames, filenames in os.walk(self.root):
            dirnames[:] = sorted(d for d in dirnames if d not in self.excluded_dirs)
            for name in sorted(filenames):
                if self._is_excluded(name):
                    continue
                file_path = Path(dirpath) / name
                rel_path = file_path.relative_to(self.root).as_posix()
                if file_path.is_symlink():
                    self._warn(f"Skipped symbolic link {rel_path}")
                    continue
                if not file_path.is_file():
                    continue
                yield rel_path, file_path

    def _warn(self, message: str) -> None:
        self.warnings.append(message)
        logger.warning(message)

    def _is_excluded(self, name: str) -> bool:
        return name in self.excluded_names or name.endswith(TEMP_SUFFIX)


__all__ = [
    "DEFAULT_EXCLUDED_DIRS",
    "DEFAULT_EXCLUDED_NAMES",
    "DEFAULT_MANIFEST_NAME",
    "MANIFEST_VERSION",
    "Manifest",
    "ManifestBuilder",
    "ManifestEntry",
    "ManifestSummary",
    "load_manifest_file",
    "parse_manifest",
    "validate_manifest_path",
]
