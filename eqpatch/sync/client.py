"""Patch client: check the local tree against the server and apply updates."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from ..errors import LocalIOError, RunInProgressError
from .executor import ExecutionReport, FailureHandler, FailurePolicy, PlanExecutor, ProgressCallback
from .fsutil import collect_stale_temp_files
from .manifest import (
    DEFAULT_EXCLUDED_DIRS,
    DEFAULT_EXCLUDED_NAMES,
    DEFAULT_MANIFEST_NAME,
    Manifest,
    ManifestBuilder,
    ManifestEntry,
)
from .reconciler import (
    DEFAULT_LAUNCHER_FILES,
    DEFAULT_PROTECTED_PATHS,
    LocalObserver,
    LocalState,
    ManifestObserver,
    ReconciliationPlan,
    Reconciler,
)
from .store import DEFAULT_LOCAL_RECORD, LocalManifestStore
from .transport import DEFAULT_HTTP_TIMEOUT, DEFAULT_SFTP_TIMEOUT, USER_AGENT, HttpTransport, SftpTransport, Transport

logger = logging.getLogger("eqpatch.sync.client")


@dataclass
class PatcherSettings:
    """Settings for patch operations, taken from the merged configuration."""

    server_url: str = ""
    transport: str = "http"  # http, sftp
    manifest_name: str = DEFAULT_MANIFEST_NAME
    local_record: str = DEFAULT_LOCAL_RECORD
    verify_downloads: bool = True
    http_timeout: float = DEFAULT_HTTP_TIMEOUT
    user_agent: str = USER_AGENT
    sftp_host: str = ""
    sftp_port: int = 22
    sftp_username: str = ""
    sftp_password: str = ""
    sftp_key_path: str = ""
    sftp_remote_path: str = "."
    sftp_timeout: float = DEFAULT_SFTP_TIMEOUT
    on_failure: str = "continue"  # continue, abort
    max_workers: int = 1
    excluded_names: tuple = DEFAULT_EXCLUDED_NAMES
    excluded_dirs: tuple = DEFAULT_EXCLUDED_DIRS
    protected_paths: tuple = DEFAULT_PROTECTED_PATHS
    launcher_files: tuple = DEFAULT_LAUNCHER_FILES

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "PatcherSettings":
        config = config or {}
        patcher = config.get("patcher", {}) or {}
        http = config.get("http", {}) or {}
        sftp = config.get("sftp", {}) or {}
        executor = config.get("executor", {}) or {}
        builder = config.get("builder", {}) or {}
        reconciler = config.get("reconciler", {}) or {}
        return cls(
            server_url=str(patcher.get("server_url", "")),
            transport=str(patcher.get("transport", "http")),
            manifest_name=str(patcher.get("manifest_name", DEFAULT_MANIFEST_NAME)),
            local_record=str(patcher.get("local_record", DEFAULT_LOCAL_RECORD)),
            verify_downloads=bool(patcher.get("verify_downloads", True)),
            http_timeout=float(http.get("timeout", DEFAULT_HTTP_TIMEOUT)),
            user_agent=str(http.get("user_agent") or USER_AGENT),
            sftp_host=str(sftp.get("host", "")),
            sftp_port=int(sftp.get("port", 22)),
            sftp_username=str(sftp.get("username", "")),
            sftp_password=str(sftp.get("password", "")),
            sftp_key_path=str(sftp.get("key_path", "")),
            sftp_remote_path=str(sftp.get("remote_path", ".")),
            sftp_timeout=float(sftp.get("timeout", DEFAULT_SFTP_TIMEOUT)),
            on_failure=str(executor.get("on_failure", "continue")),
            max_workers=int(executor.get("max_workers", 1)),
            excluded_names=tuple(builder.get("excluded_names", DEFAULT_EXCLUDED_NAMES)),
            excluded_dirs=tuple(builder.get("excluded_dirs", DEFAULT_EXCLUDED_DIRS)),
            protected_paths=tuple(reconciler.get("protected_paths", DEFAULT_PROTECTED_PATHS)),
            launcher_files=tuple(reconciler.get("launcher_files", DEFAULT_LAUNCHER_FILES)),
        )

    @property
    def protected(self) -> frozenset:
        # The configured record name is always protected, whatever the list says.
        return frozenset(self.protected_paths) | {self.local_record}


def build_transport(settings: PatcherSettings) -> Transport:
    """Create the one transport implementation the settings ask for."""
    if settings.transport == "sftp":
        return SftpTransport(
            host=settings.sftp_host,
            port=settings.sftp_port,
            username=settings.sftp_username,
            password=settings.sftp_password or None,
            key_path=settings.sftp_key_path or None,
            remote_path=settings.sftp_remote_path,
            manifest_name=settings.manifest_name,
            timeout=settings.sftp_timeout,
        )
    return HttpTransport(
        base_url=settings.server_url,
        manifest_name=settings.manifest_name,
        timeout=settings.http_timeout,
        user_agent=settings.user_agent,
    )


_RUN_LOCKS: Dict[Path, threading.Lock] = {}
_RUN_LOCKS_GUARD = threading.Lock()


@contextmanager
def run_lock(root: Path) -> Iterator[None]:
    """Serialize runs against one root within this process."""
    key = Path(root).resolve()
    with _RUN_LOCKS_GUARD:
        lock = _RUN_LOCKS.setdefault(key, threading.Lock())
    if not lock.acquire(blocking=False):
        raise RunInProgressError(f"A patch run is already active for {key}")
    try:
        yield
    finally:
        lock.release()


@dataclass
class CheckResult:
    """Target manifest, previous record, and the plan derived from them."""

    target: Manifest
    previous: Optional[Manifest]
    plan: ReconciliationPlan
    launcher_updates: List[ManifestEntry] = field(default_factory=list)

    @property
    def up_to_date(self) -> bool:
        return self.plan.is_empty

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_files": len(self.target),
            "has_previous_record": self.previous is not None,
            "plan": self.plan.to_dict(),
            "launcher_updates": [entry.path for entry in self.launcher_updates],
        }


class PatchClient:
    """Client-side check/apply flow against one transport."""

    def __init__(
        self,
        root: Path,
        settings: PatcherSettings,
        transport: Optional[Transport] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ):
        self.root = Path(root)
        self.settings = settings
        self.progress_callback = progress_callback
        self._transport = transport

        self.store = LocalManifestStore.for_root(self.root, settings.local_record)
        self.reconciler = Reconciler(settings.protected)
        self.executor = PlanExecutor(
            root=self.root,
            store=self.store,
            policy=FailurePolicy(settings.on_failure),
            max_workers=settings.max_workers,
            protected_paths=settings.protected,
            verify=settings.verify_downloads,
            progress_callback=progress_callback,
        )

    @property
    def transport(self) -> Transport:
        if self._transport is None:
            self._transport = build_transport(self.settings)
        return self._transport

    def close(self) -> None:
        if self._transport is not None:
            self._transport.close()

    def _require_root(self) -> None:
        if not self.root.is_dir():
            raise LocalIOError(f"Directory does not exist: {self.root}")

    def load_record(self) -> Optional[Manifest]:
        """Load the manifest this client last applied, if any."""
        return self.store.load()

    def fetch_target(self) -> Manifest:
        """Download and validate the server manifest."""
        return self.transport.fetch_manifest()

    def manifest_builder(self, directory: Optional[Path] = None) -> ManifestBuilder:
        return ManifestBuilder(
            Path(directory) if directory is not None else self.root,
            excluded_names=self.settings.excluded_names,
            excluded_dirs=self.settings.excluded_dirs,
            manifest_name=self.settings.manifest_name,
        )

    def build_manifest(self, directory: Optional[Path] = None) -> Manifest:
        """Build and publish the manifest for ``root`` or ``directory`` (server side)."""
        return self.manifest_builder(directory).build(write=True)

    def check(self, quick: bool = False) -> CheckResult:
        """Compare local files to the server manifest without changing anything.

        With ``quick`` the previous record stands in for the disk and nothing is hashed.
        """
        self._require_root()
        target = self.fetch_target()
        previous = self.load_record()

        observer: LocalState
        if quick and previous is not None:
            observer = ManifestObserver(previous)
        else:
            observer = LocalObserver(self.root)

        plan = self.reconciler.plan(target, observer, previous)
        launcher = self.reconciler.launcher_updates(target, observer, self.settings.launcher_files)
        if launcher:
            logger.warning(
                "Launcher update available: %s", ", ".join(entry.path for entry in launcher)
            )
        return CheckResult(target=target, previous=previous, plan=plan, launcher_updates=launcher)

    def apply(
        self,
        check_result: Optional[CheckResult] = None,
        cancel_event: Optional[threading.Event] = None,
        on_failure: Optional[FailureHandler] = None,
    ) -> ExecutionReport:
        """Fetch stale files, remove obsolete ones, and record the result."""
        with run_lock(self.root):
            result = check_result or self.check()
            report = self.executor.apply(
                result.plan,
                fetch=self.transport.fetch_file,
                target=result.target,
                previous=result.previous,
                cancel_event=cancel_event,
                on_failure=on_failure,
            )
        return report

    def clean_temp_files(self) -> List[Path]:
        """Remove leftovers of interrupted downloads."""
        self._require_root()
        with run_lock(self.root):
            return collect_stale_temp_files(self.root)

    def get_status(self) -> Dict[str, Any]:
        record = self.load_record()
        return {
            "root": str(self.root),
            "transport": self.settings.transport,
            "server": self._describe_server(),
            "local_record": str(self.store.path),
            "tracked_files": len(record) if record else 0,
            "record_generated": record.generated_at.isoformat() if record and record.generated_at else None,
            "on_failure": self.settings.on_failure,
            "max_workers": self.settings.max_workers,
        }

    def _describe_server(self) -> str:
        if self.settings.transport == "sftp":
            host = self.settings.sftp_host or "(not configured)"
            return f"{host}:{self.settings.sftp_port}{'/' + self.settings.sftp_remote_path.lstrip('/')}"
        return self.settings.server_url or "(not configured)"


__all__ = [
    "CheckResult",
    "PatchClient",
    "PatcherSettings",
    "build_transport",
    "run_lock",
]
