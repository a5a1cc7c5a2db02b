"""Tests for applying reconciliation plans."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from eqpatch.errors import IntegrityError, TransportError, ValidationError
from eqpatch.sync.executor import FailurePolicy, ItemState, PlanExecutor
from eqpatch.sync.fsutil import TEMP_SUFFIX
from eqpatch.sync.reconciler import LocalObserver, ReconciliationPlan, Reconciler
from eqpatch.sync.store import LocalManifestStore

from conftest import FakeTransport, make_manifest, write_tree


def _executor(root: Path, **kwargs) -> PlanExecutor:
    return PlanExecutor(root=root, store=LocalManifestStore.for_root(root), **kwargs)


def _plan(root: Path, target, previous=None) -> ReconciliationPlan:
    return Reconciler().plan(target, LocalObserver(root), previous)


def test_apply_fetches_deletes_and_records(tmp_path: Path):
    server = {"a.txt": b"new-a", "maps/b.txt": b"bee", "c.txt": b"same"}
    write_tree(tmp_path, {"a.txt": b"old-a", "c.txt": b"same", "obsolete.txt": b"x"})
    previous = make_manifest({"a.txt": b"old-a", "c.txt": b"same", "obsolete.txt": b"x"})
    target = make_manifest(server)
    transport = FakeTransport(server, manifest=target)
    executor = _executor(tmp_path)

    report = executor.apply(_plan(tmp_path, target, previous), transport.fetch_file, target=target, previous=previous)

    assert report.success
    assert sorted(report.fetched) == ["a.txt", "maps/b.txt"]
    assert report.deleted == ["obsolete.txt"]
    assert report.unchanged == 1
    assert report.bytes_fetched == len(b"new-a") + len(b"bee")
    assert (tmp_path / "a.txt").read_bytes() == b"new-a"
    assert (tmp_path / "maps" / "b.txt").read_bytes() == b"bee"
    assert not (tmp_path / "obsolete.txt").exists()
    assert executor.store.load().paths() == target.paths()
    assert not list(tmp_path.rglob(f"*{TEMP_SUFFIX}"))


def test_second_run_after_apply_is_empty(tmp_path: Path):
    server = {"a.txt": b"a", "b/c.txt": b"c"}
    target = make_manifest(server)
    transport = FakeTransport(server, manifest=target)
    executor = _executor(tmp_path)

    executor.apply(_plan(tmp_path, target), transport.fetch_file, target=target)
    record = executor.store.load()

    assert _plan(tmp_path, target, record).is_empty


def test_interrupted_transfer_keeps_prior_file(tmp_path: Path):
    write_tree(tmp_path, {"a.txt": b"prior complete contents"})
    server = {"a.txt": b"the replacement contents that never fully arrive"}
    target = make_manifest(server)
    transport = FakeTransport(server, manifest=target, interrupted=["a.txt"])

    report = _executor(tmp_path).apply(_plan(tmp_path, target), transport.fetch_file, target=target)

    assert report.failed == 1
    assert isinstance(report.failures[0].error, TransportError)
    assert (tmp_path / "a.txt").read_bytes() == b"prior complete contents"
    assert not (tmp_path / f"a.txt{TEMP_SUFFIX}").exists()


def test_interrupted_transfer_of_new_file_leaves_nothing(tmp_path: Path):
    server = {"new.bin": b"0123456789" * 10}
    target = make_manifest(server)
    transport = FakeTransport(server, manifest=target, interrupted=["new.bin"])

    _executor(tmp_path).apply(_plan(tmp_path, target), transport.fetch_file, target=target)

    assert not (tmp_path / "new.bin").exists()
    assert not (tmp_path / f"new.bin{TEMP_SUFFIX}").exists()


def test_corrupt_download_fails_integrity_check(tmp_path: Path):
    server = {"a.txt": b"expected"}
    target = make_manifest(server)
    transport = FakeTransport(server, manifest=target, corrupt=["a.txt"])

    report = _executor(tmp_path).apply(_plan(tmp_path, target), transport.fetch_file, target=target)

    assert isinstance(report.failures[0].error, IntegrityError)
    assert not (tmp_path / "a.txt").exists()


def test_unverified_mode_commits_whatever_arrives(tmp_path: Path):
    server = {"a.txt": b"expected"}
    target = make_manifest(server)
    transport = FakeTransport(server, manifest=target, corrupt=["a.txt"])

    report = _executor(tmp_path, verify=False).apply(_plan(tmp_path, target), transport.fetch_file, target=target)

    assert report.success
    assert (tmp_path / "a.txt").exists()


def test_continue_policy_attempts_every_file_and_excludes_failures_from_record(tmp_path: Path):
    server = {"a.txt": b"a", "b.txt": b"b", "c.txt": b"c"}
    target = make_manifest(server)
    transport = FakeTransport(server, manifest=target, failing=["b.txt"])
    executor = _executor(tmp_path, policy=FailurePolicy.CONTINUE)

    report = executor.apply(_plan(tmp_path, target), transport.fetch_file, target=target)

    assert transport.requested == ["a.txt", "b.txt", "c.txt"]
    assert report.fetched == ["a.txt", "c.txt"]
    assert [failure.path for failure in report.failures] == ["b.txt"]
    assert report.states["b.txt"] is ItemState.FAILED
    assert not report.success
    assert executor.store.load().paths() == ["a.txt", "c.txt"]


def test_abort_policy_stops_remaining_fetches(tmp_path: Path):
    server = {"a.txt": b"a", "b.txt": b"b", "c.txt": b"c"}
    target = make_manifest(server)
    transport = FakeTransport(server, manifest=target, failing=["b.txt"])

    report = _executor(tmp_path, policy="abort").apply(_plan(tmp_path, target), transport.fetch_file, target=target)

    assert transport.requested == ["a.txt", "b.txt"]
    assert report.aborted
    assert report.skipped == ["c.txt"]
    assert report.states["c.txt"] is ItemState.SKIPPED
    assert (tmp_path / "a.txt").exists()


def test_on_failure_callback_overrides_policy(tmp_path: Path):
    server = {"a.txt": b"a", "b.txt": b"b", "c.txt": b"c"}
    target = make_manifest(server)
    transport = FakeTransport(server, manifest=target, failing=["a.txt", "b.txt"])
    seen = []

    def _handler(failure) -> bool:
        seen.append(failure.path)
        return len(seen) < 2

    report = _executor(tmp_path, policy=FailurePolicy.CONTINUE).apply(
        _plan(tmp_path, target), transport.fetch_file, target=target, on_failure=_handler
    )

    assert seen == ["a.txt", "b.txt"]
    assert report.aborted
    assert report.skipped == ["c.txt"]


def test_cancel_before_start_skips_everything_and_deletes_nothing(tmp_path: Path):
    write_tree(tmp_path, {"old.txt": b"o"})
    previous = make_manifest({"old.txt": b"o"})
    server = {"a.txt": b"a"}
    target = make_manifest(server)
    transport = FakeTransport(server, manifest=target)
    cancel = threading.Event()
    cancel.set()

    report = _executor(tmp_path).apply(
        _plan(tmp_path, target, previous),
        transport.fetch_file,
        target=target,
        previous=previous,
        cancel_event=cancel,
    )

    assert report.cancelled
    assert transport.requested == []
    assert (tmp_path / "old.txt").exists()
    # Skipped deletion stays recorded so a later run retries it.
    assert "old.txt" in LocalManifestStore.for_root(tmp_path).load()


def test_cancel_between_files(tmp_path: Path):
    server = {"a.txt": b"a", "b.txt": b"b"}
    target = make_manifest(server)
    transport = FakeTransport(server, manifest=target)
    cancel = threading.Event()

    def _progress(message, current, total):
        if current == 1:
            cancel.set()

    executor = _executor(tmp_path, progress_callback=_progress)
    plan = _plan(tmp_path, target)
    original_fetch = transport.fetch_file

    report = executor.apply(plan, original_fetch, target=target, cancel_event=cancel)

    assert report.fetched == ["a.txt"]
    assert report.skipped == ["b.txt"]
    assert report.cancelled


def test_parallel_fetch_reaches_same_state(tmp_path: Path):
    server = {f"dir{i % 3}/file{i}.bin": bytes([i]) * (i + 1) for i in range(12)}
    target = make_manifest(server)
    transport = FakeTransport(server, manifest=target)
    executor = _executor(tmp_path, max_workers=4)

    report = executor.apply(_plan(tmp_path, target), transport.fetch_file, target=target)

    assert report.success
    assert sorted(report.fetched) == sorted(server)
    for rel_path, data in server.items():
        assert (tmp_path / rel_path).read_bytes() == data
    assert executor.store.load().paths() == target.paths()


def test_protected_path_in_plan_is_refused(tmp_path: Path):
    write_tree(tmp_path, {"LaunchPad.exe": b"l"})
    plan = ReconciliationPlan(to_delete=frozenset({"LaunchPad.exe"}))

    with pytest.raises(ValidationError):
        _executor(tmp_path).apply(plan, FakeTransport({}).fetch_file)

    assert (tmp_path / "LaunchPad.exe").exists()


def test_missing_obsolete_file_is_a_warning(tmp_path: Path):
    previous = make_manifest({"gone.txt": b"g"})
    target = make_manifest({})
    executor = _executor(tmp_path)

    report = executor.apply(_plan(tmp_path, target, previous), FakeTransport({}).fetch_file, target=target, previous=previous)

    assert report.success
    assert report.deleted == ["gone.txt"]
    assert report.warnings == ["gone.txt: already removed"]
    assert executor.store.load().paths() == []


def test_failed_delete_is_kept_in_record(tmp_path: Path):
    write_tree(tmp_path, {"stuck.txt": b"s"})
    previous = make_manifest({"stuck.txt": b"s"})
    target = make_manifest({})
    executor = _executor(tmp_path)

    def _refuse(path):
        raise PermissionError("in use")

    report = executor.apply(
        _plan(tmp_path, target, previous),
        FakeTransport({}).fetch_file,
        delete=_refuse,
        target=target,
        previous=previous,
    )

    assert report.success
    assert report.deleted == []
    assert "stuck.txt" in report.warnings[0]
    assert executor.store.load().paths() == ["stuck.txt"]


def test_progress_callback_counts_fetches_and_deletes(tmp_path: Path):
    write_tree(tmp_path, {"old.txt": b"o"})
    previous = make_manifest({"old.txt": b"o"})
    server = {"a.txt": b"a"}
    target = make_manifest(server)
    events = []

    _executor(tmp_path, progress_callback=lambda msg, cur, total: events.append((msg, cur, total))).apply(
        _plan(tmp_path, target, previous),
        FakeTransport(server, manifest=target).fetch_file,
        target=target,
        previous=previous,
    )

    assert events == [("Downloading a.txt", 1, 2), ("Removing old.txt", 2, 2)]
