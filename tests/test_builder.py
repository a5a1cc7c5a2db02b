"""Tests for the server-side manifest builder."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from eqpatch.errors import LocalIOError
from eqpatch.sync import manifest as manifest_module
from eqpatch.sync.identity import identity_of_bytes
from eqpatch.sync.manifest import ManifestBuilder, load_manifest_file

from conftest import write_tree


def test_build_lists_files_sorted_with_identities(tmp_path: Path):
    write_tree(
        tmp_path,
        {
            "eqgame.exe": b"game-binary",
            "maps/zone2.txt": b"two",
            "maps/zone1.txt": b"one",
            "Resources/ui/window.xml": b"<w/>",
        },
    )

    manifest = ManifestBuilder(tmp_path).build(write=False)

    assert manifest.paths() == [
        "Resources/ui/window.xml",
        "eqgame.exe",
        "maps/zone1.txt",
        "maps/zone2.txt",
    ]
    assert manifest.find("maps/zone1.txt").identity == identity_of_bytes(b"one")
    assert manifest.generated_at is not None


def test_build_skips_excluded_names_dirs_and_temp_files(tmp_path: Path):
    write_tree(
        tmp_path,
        {
            "keep.txt": b"k",
            "README.txt": b"r",
            "LaunchPad.exe": b"l",
            ".patcher-manifest.json": b"{}",
            "patcher-config.yml": b"patcher: {}",
            "maps/zone.txt.patcher-tmp": b"partial",
            ".patcher-logs/patcher.log": b"log",
        },
    )

    manifest = ManifestBuilder(tmp_path).build(write=False)

    assert manifest.paths() == ["keep.txt"]


def test_build_respects_configured_exclusions(tmp_path: Path):
    write_tree(tmp_path, {"keep.txt": b"k", "skip.dat": b"s", "cache/x.bin": b"x"})

    builder = ManifestBuilder(tmp_path, excluded_names=["skip.dat"], excluded_dirs=["cache"])
    manifest = builder.build(write=False)

    assert manifest.paths() == ["keep.txt"]


def test_build_writes_manifest_that_does_not_list_itself(tmp_path: Path):
    write_tree(tmp_path, {"a.txt": b"a"})
    builder = ManifestBuilder(tmp_path, manifest_name="patch.json")

    builder.build()
    second = builder.build()

    written = load_manifest_file(tmp_path / "patch.json")
    assert written.paths() == ["a.txt"]
    assert second.paths() == ["a.txt"]
    assert json.loads((tmp_path / "patch.json").read_text())["version"] == "1.0"


def test_build_is_deterministic(tmp_path: Path):
    write_tree(tmp_path, {"b/2.txt": b"2", "a/1.txt": b"1", "c.txt": b"3"})
    builder = ManifestBuilder(tmp_path)

    first = builder.build(write=False)
    second = builder.build(write=False)

    assert first.entries == second.entries


def test_build_missing_root_raises(tmp_path: Path):
    with pytest.raises(LocalIOError):
        ManifestBuilder(tmp_path / "missing").build()


def test_unreadable_file_is_skipped_with_warning(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    write_tree(tmp_path, {"good.txt": b"g", "locked.txt": b"l"})
    original = manifest_module.compute_file_identity

    def fake_identity(path):
        if Path(path).name == "locked.txt":
            raise PermissionError("locked by another process")
        return original(path)

    monkeypatch.setattr(manifest_module, "compute_file_identity", fake_identity)
    builder = ManifestBuilder(tmp_path)

    manifest = builder.build(write=False)

    assert manifest.paths() == ["good.txt"]
    assert len(builder.warnings) == 1
    assert "locked.txt" in builder.warnings[0]


def test_symbolic_links_are_not_published(tmp_path: Path):
    outside = tmp_path / "outside"
    write_tree(outside, {"secret.txt": b"s"})
    root = tmp_path / "patches"
    write_tree(root, {"maps/zone.txt": b"z"})
    try:
        (root / "leak.txt").symlink_to(outside / "secret.txt")
        (root / "linked").symlink_to(outside, target_is_directory=True)
    except (OSError, NotImplementedError):
        pytest.skip("symlinks not supported here")
    builder = ManifestBuilder(root)

    manifest = builder.build(write=False)

    assert manifest.paths() == ["maps/zone.txt"]
    assert any("leak.txt" in warning for warning in builder.warnings)
