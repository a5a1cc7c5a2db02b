"""Content fingerprints for patch files."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Union

CHUNK_SIZE = 64 * 1024  # 64 KiB per read


@dataclass(frozen=True)
class ContentIdentity:
    """Size + MD5 digest of a file's bytes."""

    size: int
    hash: str  # lowercase hex MD5

    def matches(self, other: "ContentIdentity") -> bool:
        # Size first: it is free, the digest is not.
        if self.size != other.size:
            return False
        return self.hash == other.hash

    @property
    def short_hash(self) -> str:
        return self.hash[:8]


class IdentityAccumulator:
    """Incrementally fingerprints bytes as they stream past."""

    def __init__(self) -> None:
        self._hasher = hashlib.md5()
        self._size = 0

    def update(self, chunk: bytes) -> None:
        self._hasher.update(chunk)
        self._size += len(chunk)

    def result(self) -> ContentIdentity:
        return ContentIdentity(size=self._size, hash=self._hasher.hexdigest())


def compute_identity(stream: BinaryIO) -> ContentIdentity:
    """Fingerprint a readable binary stream without buffering it whole."""
    accumulator = IdentityAccumulator()
    for chunk in iter(lambda: stream.read(CHUNK_SIZE), b""):
        accumulator.update(chunk)
    return accumulator.result()


def compute_file_identity(file_path: Union[str, Path]) -> ContentIdentity:
    """Fingerprint a file on disk."""
    with open(file_path, "rb") as f:
        return compute_identity(f)


def identity_of_bytes(data: bytes) -> ContentIdentity:
    accumulator = IdentityAccumulator()
    accumulator.update(data)
    return accumulator.result()


__all__ = [
    "CHUNK_SIZE",
    "ContentIdentity",
    "IdentityAccumulator",
    "compute_file_identity",
    "compute_identity",
    "identity_of_bytes",
]
