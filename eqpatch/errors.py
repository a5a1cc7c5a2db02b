"""Exception types raised by the patcher core.

Convention:
- ``ParseError`` and ``ValidationError`` are fatal for the manifest they concern;
  a manifest with one bad entry is never partially trusted.
- ``TransportError`` and ``LocalIOError`` are raised per operation. The
  executor records them per file and keeps going (or not) according to its
  failure policy.
"""

from __future__ import annotations


class PatcherError(Exception):
    """Base class for every error the patcher raises on purpose."""


class LocalIOError(PatcherError):
    """A local filesystem operation (read, write, stat, delete) failed."""


class TransportError(PatcherError):
    """Downloading the manifest or a file failed."""


class IntegrityError(TransportError):
    """Downloaded bytes do not match the identity declared in the manifest."""


class ParseError(PatcherError):
    """Manifest JSON is malformed or an entry path is not a safe relative path."""


class ValidationError(PatcherError):
    """A business rule was violated (duplicate path, protected path deletion)."""


class RunInProgressError(PatcherError):
    """Another reconciliation run is already active against the same root."""


__all__ = [
    "IntegrityError",
    "LocalIOError",
    "ParseError",
    "PatcherError",
    "RunInProgressError",
    "TransportError",
    "ValidationError",
]
