"""Tests for the root-aware configuration loader."""

from __future__ import annotations

from pathlib import Path

import pytest

from eqpatch import configuration
from eqpatch.sync.client import PatcherSettings


@pytest.fixture(autouse=True)
def _no_repo_defaults(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(configuration, "DEFAULT_CONFIG_DIR", tmp_path / "no-repo-config")


def _prepare_repo_defaults(tmp_path: Path, content: str) -> Path:
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    (config_dir / "10-default.yml").write_text(content, encoding="utf-8")
    return config_dir


def _write_override(root: Path, content: str, name: str = "patcher-config.yml") -> None:
    root.mkdir(parents=True, exist_ok=True)
    (root / name).write_text(content, encoding="utf-8")


def test_resolve_root_dir_uses_env_expansion(tmp_path: Path):
    env = {"PATCHER_ROOT": str(tmp_path / "client")}
    assert configuration.resolve_root_dir(env=env) == tmp_path / "client"


def test_resolve_root_dir_defaults_to_cwd():
    assert configuration.resolve_root_dir(env={}) == Path(".")


def test_defaults_fill_every_section(tmp_path: Path):
    bundle = configuration.load_runtime_configuration(tmp_path)

    assert bundle.status == "ready"
    assert bundle.files_loaded == []
    assert bundle.get("patcher.transport") == "http"
    assert bundle.get("patcher.local_record") == ".patcher-manifest.json"
    assert bundle.get("executor.on_failure") == "continue"
    assert "LaunchPad.exe" in bundle.get("reconciler.protected_paths")
    assert bundle.get("sftp.port") == 22
    assert bundle.get("missing.key", "fallback") == "fallback"


def test_root_override_merges_over_repo_defaults(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    repo_dir = _prepare_repo_defaults(
        tmp_path,
        "patcher:\n  server_url: http://default.example\n  verify_downloads: false\n",
    )
    monkeypatch.setattr(configuration, "DEFAULT_CONFIG_DIR", repo_dir)
    root = tmp_path / "client"
    _write_override(root, "patcher:\n  server_url: http://patch.example/eq\n")

    bundle = configuration.load_runtime_configuration(root)

    assert bundle.status == "ready"
    assert bundle.get("patcher.server_url") == "http://patch.example/eq"
    assert bundle.get("patcher.verify_downloads") is False
    assert len(bundle.files_loaded) == 2


def test_yaml_and_yml_overrides_both_load(tmp_path: Path):
    _write_override(tmp_path, "executor:\n  max_workers: 4\n")
    _write_override(tmp_path, "executor:\n  on_failure: abort\n", name="patcher-config.yaml")

    bundle = configuration.load_runtime_configuration(tmp_path)

    assert bundle.get("executor.max_workers") == 4
    assert bundle.get("executor.on_failure") == "abort"
    settings = PatcherSettings.from_config(bundle.merged)
    assert settings.max_workers == 4
    assert settings.on_failure == "abort"


def test_missing_root_is_reported(tmp_path: Path):
    bundle = configuration.load_runtime_configuration(tmp_path / "missing")

    assert bundle.status == "missing"
    assert any(diag.level == "error" for diag in bundle.diagnostics)


def test_root_that_is_a_file_is_invalid(tmp_path: Path):
    target = tmp_path / "file"
    target.write_text("x", encoding="utf-8")

    bundle = configuration.load_runtime_configuration(target)

    assert bundle.status == "invalid"


def test_bad_yaml_is_reported(tmp_path: Path):
    _write_override(tmp_path, "patcher: [\n")

    bundle = configuration.load_runtime_configuration(tmp_path)

    assert bundle.status == "invalid"
    assert any("Failed to parse" in diag.message for diag in bundle.diagnostics)


def test_invalid_types_raise_diagnostics(tmp_path: Path):
    _write_override(tmp_path, 'sftp:\n  port: "twenty-two"\nexecutor:\n  max_workers: true\n')

    bundle = configuration.load_runtime_configuration(tmp_path)

    assert bundle.status == "invalid"
    assert any("sftp.port" in diag.message for diag in bundle.diagnostics)
    assert any("max_workers" in diag.message for diag in bundle.diagnostics)
    assert bundle.get("sftp.port") == 22
    assert bundle.get("executor.max_workers") == 1


def test_choices_are_enforced(tmp_path: Path):
    _write_override(tmp_path, "patcher:\n  transport: ftp\n")

    bundle = configuration.load_runtime_configuration(tmp_path)

    assert bundle.status == "invalid"
    assert any("must be one of" in diag.message for diag in bundle.diagnostics)
    assert bundle.get("patcher.transport") == "http"


def test_list_items_are_type_checked(tmp_path: Path):
    _write_override(tmp_path, "builder:\n  excluded_names:\n    - keep.me\n    - 42\n")

    bundle = configuration.load_runtime_configuration(tmp_path)

    assert bundle.get("builder.excluded_names") == ["keep.me"]
    assert bundle.status == "invalid"


def test_unknown_keys_warn(tmp_path: Path):
    _write_override(tmp_path, "mystery:\n  value: 1\n")

    bundle = configuration.load_runtime_configuration(tmp_path)

    assert bundle.status == "ready"
    assert any("Unknown configuration key" in diag.message for diag in bundle.diagnostics)


def test_non_mapping_override_is_ignored(tmp_path: Path):
    _write_override(tmp_path, "- just\n- a list\n")

    bundle = configuration.load_runtime_configuration(tmp_path)

    assert bundle.files_loaded == []
    assert any("does not contain a mapping" in diag.message for diag in bundle.diagnostics)
