"""Apply a reconciliation plan: atomic fetches, best-effort deletes, new local record."""

from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, BinaryIO, Callable, ContextManager, Dict, Iterable, List, Optional, Tuple

from ..errors import IntegrityError, LocalIOError, PatcherError, ValidationError
from .fsutil import discard, resolve_within, temp_path_for
from .identity import CHUNK_SIZE, ContentIdentity, IdentityAccumulator
from .manifest import MANIFEST_VERSION, Manifest, ManifestEntry
from .reconciler import DEFAULT_PROTECTED_PATHS, ReconciliationPlan
from .store import LocalManifestStore

logger = logging.getLogger("eqpatch.sync.executor")

FetchFn = Callable[[str], ContextManager[BinaryIO]]
DeleteFn = Callable[[str], None]
ProgressCallback = Callable[[str, int, int], None]


class FailurePolicy(str, Enum):
    """What to do with the remaining fetches after one fails."""

    CONTINUE = "continue"
    ABORT = "abort"


class ItemState(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class FetchFailure:
    """A single file that could not be fetched and committed."""

    entry: ManifestEntry
    error: Exception

    @property
    def path(self) -> str:
        return self.entry.path

    @property
    def message(self) -> str:
        return f"{self.entry.path}: {self.error}"

    def to_dict(self) -> Dict[str, Any]:
        return {"path": self.path, "error": str(self.error), "type": type(self.error).__name__}


FailureHandler = Callable[[FetchFailure], bool]


@dataclass
class ExecutionReport:
    """Outcome of one executor run."""

    unchanged: int = 0
    fetched: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failures: List[FetchFailure] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    states: Dict[str, ItemState] = field(default_factory=dict)
    bytes_fetched: int = 0
    cancelled: bool = False
    aborted: bool = False

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def success(self) -> bool:
        return not self.failures and not self.skipped and not self.cancelled and not self.aborted

    @property
    def is_noop(self) -> bool:
        """True when the plan had nothing to fetch or delete."""
        return not (self.fetched or self.deleted or self.failures or self.skipped or self.warnings)

    def summary(self) -> str:
        text = (
            f"{len(self.fetched)} fetched, {self.unchanged} unchanged, "
            f"{len(self.deleted)} deleted, {self.failed} failed, {len(self.skipped)} skipped"
        )
        if self.cancelled:
            text += " (cancelled)"
        elif self.aborted:
            text += " (aborted)"
        return text

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "unchanged": self.unchanged,
            "fetched": list(self.fetched),
            "deleted": list(self.deleted),
            "skipped": list(self.skipped),
            "failures": [failure.to_dict() for failure in self.failures],
            "warnings": list(self.warnings),
            "bytes_fetched": self.bytes_fetched,
            "cancelled": self.cancelled,
            "aborted": self.aborted,
        }


class PlanExecutor:
    """Carries out a ReconciliationPlan against a root directory."""

    def __init__(
        self,
        root: Path,
        store: LocalManifestStore,
        policy: FailurePolicy = FailurePolicy.CONTINUE,
        max_workers: int = 1,
        protected_paths: Optional[Iterable[str]] = None,
        verify: bool = True,
        progress_callback: Optional[ProgressCallback] = None,
    ):
        self.root = Path(root)
        self.store = store
        self.policy = FailurePolicy(policy)
        self.max_workers = max(1, int(max_workers))
        self.protected_paths = frozenset(
            DEFAULT_PROTECTED_PATHS if protected_paths is None else protected_paths
        )
        self.verify = verify
        self.progress_callback = progress_callback
        self._lock = threading.Lock()

    def apply(
        self,
        plan: ReconciliationPlan,
        fetch: FetchFn,
        delete: Optional[DeleteFn] = None,
        target: Optional[Manifest] = None,
        previous: Optional[Manifest] = None,
        cancel_event: Optional[threading.Event] = None,
        on_failure: Optional[FailureHandler] = None,
    ) -> ExecutionReport:
        """Run the plan and persist the new local record, even after partial failure."""
        self._check_protected(plan)

        cancel_event = cancel_event or threading.Event()
        delete = delete or self._delete_local
        report = ExecutionReport(unchanged=len(plan.unchanged))
        for entry in plan.to_fetch:
            report.states[entry.path] = ItemState.PENDING

        total = plan.total_changes
        try:
            if self.max_workers > 1 and len(plan.to_fetch) > 1:
                self._fetch_parallel(plan, fetch, report, cancel_event, on_failure, total)
            else:
                self._fetch_sequential(plan, fetch, report, cancel_event, on_failure, total)
            self._delete_obsolete(plan, delete, report, cancel_event, total)
        finally:
            self._persist_record(plan, report, target, previous)

        logger.info("Patch run finished: %s", report.summary())
        return report

    # -- fetching -----------------------------------------------------------------

    def _fetch_sequential(
        self,
        plan: ReconciliationPlan,
        fetch: FetchFn,
        report: ExecutionReport,
        cancel_event: threading.Event,
        on_failure: Optional[FailureHandler],
        total: int,
    ) -> None:
        halted = False
        for index, entry in enumerate(plan.to_fetch, start=1):
            if halted or self._should_stop(report, cancel_event):
                self._mark_skipped(report, entry)
                continue
            self._report_progress(f"Downloading {entry.path}", index, total)
            failure = self._fetch_one(entry, fetch, report)
            if failure is not None and not self._keep_going(failure, on_failure):
                report.aborted = True
                halted = True

    def _fetch_parallel(
        self,
        plan: ReconciliationPlan,
        fetch: FetchFn,
        report: ExecutionReport,
        cancel_event: threading.Event,
        on_failure: Optional[FailureHandler],
        total: int,
    ) -> None:
        halt = threading.Event()

        def _worker(entry: ManifestEntry) -> Tuple[ManifestEntry, bool, Optional[FetchFailure]]:
            if halt.is_set() or cancel_event.is_set():
                return entry, False, None
            return entry, True, self._fetch_one(entry, fetch, report)

        done = 0
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = [pool.submit(_worker, entry) for entry in plan.to_fetch]
            for future in as_completed(futures):
                entry, started, failure = future.result()
                done += 1
                if not started:
                    self._mark_skipped(report, entry)
                    continue
                self._report_progress(f"Downloaded {entry.path}", done, total)
                if failure is not None and not halt.is_set() and not self._keep_going(failure, on_failure):
                    report.aborted = True
                    halt.set()
        if cancel_event.is_set():
            report.cancelled = True

    def _fetch_one(
        self,
        entry: ManifestEntry,
        fetch: FetchFn,
        report: ExecutionReport,
    ) -> Optional[FetchFailure]:
        with self._lock:
            report.states[entry.path] = ItemState.IN_PROGRESS
        try:
            received = self._transfer(entry, fetch)
        except (PatcherError, OSError) as e:
            failure = FetchFailure(entry=entry, error=e)
            logger.error("Failed to fetch %s: %s", entry.path, e)
            with self._lock:
                report.states[entry.path] = ItemState.FAILED
                report.failures.append(failure)
            return failure

        with self._lock:
            report.states[entry.path] = ItemState.COMPLETED
            report.fetched.append(entry.path)
            report.bytes_fetched += received.size
        logger.debug("Fetched %s (%d bytes)", entry.path, received.size)
        return None

    def _transfer(self, entry: ManifestEntry, fetch: FetchFn) -> ContentIdentity:
        """Stream one file into a temp sibling and rename it into place."""
        destination = resolve_within(self.root, entry.path)
        tmp_path = temp_path_for(destination)
        committed = False
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            accumulator = IdentityAccumulator()
            with fetch(entry.path) as stream, open(tmp_path, "wb") as out:
                for chunk in iter(lambda: stream.read(CHUNK_SIZE), b""):
                    accumulator.update(chunk)
                    out.write(chunk)
                out.flush()
                os.fsync(out.fileno())
            received = accumulator.result()
            if self.verify and not received.matches(entry.identity):
                raise IntegrityError(
                    f"{entry.path}: expected {entry.size} bytes md5 {entry.md5}, "
                    f"received {received.size} bytes md5 {received.hash}"
                )
            os.replace(tmp_path, destination)
            committed = True
            return received
        except OSError as e:
            raise LocalIOError(f"Failed to write {entry.path}: {e}") from e
        finally:
            if not committed:
                discard(tmp_path)

    def _keep_going(self, failure: FetchFailure, on_failure: Optional[FailureHandler]) -> bool:
        if on_failure is not None:
            return bool(on_failure(failure))
        return self.policy is FailurePolicy.CONTINUE

    def _should_stop(self, report: ExecutionReport, cancel_event: threading.Event) -> bool:
        if cancel_event.is_set():
            report.cancelled = True
            return True
        return False

    def _mark_skipped(self, report: ExecutionReport, entry: ManifestEntry) -> None:
        with self._lock:
            report.states[entry.path] = ItemState.SKIPPED
            report.skipped.append(entry.path)

    # -- deleting -----------------------------------------------------------------

    def _check_protected(self, plan: ReconciliationPlan) -> None:
        protected = sorted(path for path in plan.to_delete if path in self.protected_paths)
        if protected:
            raise ValidationError(f"Refusing to delete protected path(s): {', '.join(protected)}")

    def _delete_obsolete(
        self,
        plan: ReconciliationPlan,
        delete: DeleteFn,
        report: ExecutionReport,
        cancel_event: threading.Event,
        total: int,
    ) -> None:
        step = len(plan.to_fetch)
        for path in sorted(plan.to_delete):
            step += 1
            if self._should_stop(report, cancel_event):
                report.skipped.append(path)
                continue
            self._report_progress(f"Removing {path}", step, total)
            try:
                delete(path)
            except FileNotFoundError:
                report.warnings.append(f"{path}: already removed")
                report.deleted.append(path)
                continue
            except (PatcherError, OSError) as e:
                # Cleanup only; never fails the run.
                message = f"Could not delete {path}: {e}"
                report.warnings.append(message)
                logger.warning(message)
                continue
            report.deleted.append(path)
            logger.debug("Removed obsolete file %s", path)

    def _delete_local(self, path: str) -> None:
        os.remove(resolve_within(self.root, path))

    # -- record -------------------------------------------------------------------

    def _persist_record(
        self,
        plan: ReconciliationPlan,
        report: ExecutionReport,
        target: Optional[Manifest],
        previous: Optional[Manifest],
    ) -> None:
        fetched = set(report.fetched)
        unchanged = {entry.path for entry in plan.unchanged}
        if target is not None:
            candidates: List[ManifestEntry] = list(target.entries)
        else:
            candidates = sorted(plan.unchanged + plan.to_fetch, key=lambda entry: entry.path)
        confirmed = [entry for entry in candidates if entry.path in unchanged or entry.path in fetched]

        # Obsolete files still on disk stay recorded so the next run retries them.
        deleted = set(report.deleted)
        retained: List[ManifestEntry] = []
        if previous is not None:
            retained = [
                entry
                for entry in previous.entries
                if entry.path in plan.to_delete and entry.path not in deleted
            ]

        record = Manifest(
            entries=tuple(confirmed + retained),
            version=target.version if target is not None else MANIFEST_VERSION,
            generated_at=target.generated_at if target is not None else None,
        )
        try:
            self.store.save(record)
        except LocalIOError as e:
            report.warnings.append(f"Could not save local record: {e}")
            logger.error("Could not save local record: %s", e)

    def _report_progress(self, message: str, current: int, total: int) -> None:
        if self.progress_callback:
            self.progress_callback(message, current, total)
        logger.debug("Patch progress: %s (%d/%d)", message, current, total)


__all__ = [
    "ExecutionReport",
    "FailurePolicy",
    "FetchFailure",
    "ItemState",
    "PlanExecutor",
]
