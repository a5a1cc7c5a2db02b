"""Shared fixtures for patcher tests."""

from __future__ import annotations

import io
import logging
from pathlib import Path
from typing import Dict, Iterable, Optional, Set

import pytest

from eqpatch.errors import TransportError
from eqpatch.sync.identity import identity_of_bytes
from eqpatch.sync.manifest import Manifest, ManifestEntry
from eqpatch.sync.transport import RemoteStream, Transport


def make_manifest(files: Dict[str, bytes], generated_at=None) -> Manifest:
    entries = [
        ManifestEntry(path=path, identity=identity_of_bytes(data))
        for path, data in sorted(files.items())
    ]
    return Manifest(entries=tuple(entries), generated_at=generated_at)


def write_tree(root: Path, files: Dict[str, bytes]) -> None:
    for rel_path, data in files.items():
        target = root / rel_path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)


class BrokenStream(io.BytesIO):
    """Yields the first ``cut`` bytes, then fails like a dropped connection."""

    def __init__(self, data: bytes, cut: int):
        super().__init__(data)
        self.cut = cut

    def read(self, size: int = -1) -> bytes:
        if self.tell() >= self.cut:
            raise OSError("connection reset by peer")
        limit = self.cut - self.tell()
        if size < 0 or size > limit:
            size = limit
        return super().read(size)


class FakeTransport(Transport):
    """In-memory transport serving a dict of files."""

    def __init__(
        self,
        files: Dict[str, bytes],
        manifest: Optional[Manifest] = None,
        failing: Iterable[str] = (),
        corrupt: Iterable[str] = (),
        interrupted: Iterable[str] = (),
    ):
        self.files = dict(files)
        self.manifest = manifest if manifest is not None else make_manifest(files)
        self.failing: Set[str] = set(failing)
        self.corrupt: Set[str] = set(corrupt)
        self.interrupted: Set[str] = set(interrupted)
        self.requested: list = []
        self.closed = False

    def describe(self) -> str:
        return "fake://patches"

    def fetch_manifest(self) -> Manifest:
        return self.manifest

    def fetch_file(self, path: str) -> RemoteStream:
        self.requested.append(path)
        if path in self.failing:
            raise TransportError(f"Server returned status 404 for {path}")
        data = self.files[path]
        if path in self.corrupt:
            return RemoteStream(io.BytesIO(data[::-1] + b"!"), path)
        if path in self.interrupted:
            return RemoteStream(BrokenStream(data, max(1, len(data) // 2)), path)
        return RemoteStream(io.BytesIO(data), path)

    def close(self) -> None:
        self.closed = True


@pytest.fixture(autouse=True)
def _reset_eqpatch_logger():
    yield
    logger = logging.getLogger("eqpatch")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)
    logger.propagate = True
