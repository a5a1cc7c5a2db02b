"""Manifest building, reconciliation and patch application."""

from __future__ import annotations

from .identity import ContentIdentity, compute_file_identity, compute_identity
from .manifest import Manifest, ManifestBuilder, ManifestEntry, parse_manifest, validate_manifest_path
from .store import LocalManifestStore
from .reconciler import FileStatus, LocalObserver, ManifestObserver, ReconciliationPlan, Reconciler
from .executor import ExecutionReport, FailurePolicy, FetchFailure, PlanExecutor
from .transport import HttpTransport, SftpTransport, Transport
from .client import CheckResult, PatchClient, PatcherSettings, build_transport

__all__ = [
    # Identity
    "ContentIdentity",
    "compute_file_identity",
    "compute_identity",
    # Manifest
    "Manifest",
    "ManifestBuilder",
    "ManifestEntry",
    "parse_manifest",
    "validate_manifest_path",
    "LocalManifestStore",
    # Reconciliation
    "FileStatus",
    "LocalObserver",
    "ManifestObserver",
    "ReconciliationPlan",
    "Reconciler",
    # Execution
    "ExecutionReport",
    "FailurePolicy",
    "FetchFailure",
    "PlanExecutor",
    # Transport
    "HttpTransport",
    "SftpTransport",
    "Transport",
    "build_transport",
    # Client
    "CheckResult",
    "PatchClient",
    "PatcherSettings",
]
