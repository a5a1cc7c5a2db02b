"""Root-aware configuration loading for the patcher."""

from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, MutableMapping, Optional, Tuple

import yaml

from .sync.manifest import DEFAULT_EXCLUDED_DIRS, DEFAULT_EXCLUDED_NAMES, DEFAULT_MANIFEST_NAME
from .sync.reconciler import DEFAULT_LAUNCHER_FILES, DEFAULT_PROTECTED_PATHS
from .sync.store import DEFAULT_LOCAL_RECORD

REPO_ROOT = Path(__file__).resolve().parent.parent
DEFAULT_CONFIG_DIR = REPO_ROOT / "config"
ROOT_CONFIG_NAMES: Tuple[str, ...] = ("patcher-config.yml", "patcher-config.yaml")

DiagnosticLevel = Literal["info", "warning", "error"]
ConfigurationStatus = Literal["ready", "missing", "invalid"]


SchemaSpec = Dict[str, Any]


CONFIG_SCHEMA: SchemaSpec = {
    "patcher": {
        "type": dict,
        "schema": {
            "server_url": {"type": str, "default": ""},
            "transport": {"type": str, "default": "http", "choices": ("http", "sftp")},
            "manifest_name": {"type": str, "default": DEFAULT_MANIFEST_NAME},
            "local_record": {"type": str, "default": DEFAULT_LOCAL_RECORD},
            "verify_downloads": {"type": bool, "default": True},
        },
        "default": {},
    },
    "http": {
        "type": dict,
        "schema": {
            "timeout": {"type": (int, float), "default": 30.0},
            "user_agent": {"type": str, "default": ""},
        },
        "default": {},
    },
    "sftp": {
        "type": dict,
        "schema": {
            "host": {"type": str, "default": ""},
            "port": {"type": int, "default": 22},
            "username": {"type": str, "default": ""},
            "password": {"type": str, "default": ""},
            "key_path": {"type": str, "default": ""},
            "remote_path": {"type": str, "default": "."},
            "timeout": {"type": (int, float), "default": 15.0},
        },
        "default": {},
    },
    "executor": {
        "type": dict,
        "schema": {
            "on_failure": {"type": str, "default": "continue", "choices": ("continue", "abort")},
            "max_workers": {"type": int, "default": 1},
        },
        "default": {},
    },
    "builder": {
        "type": dict,
        "schema": {
            "excluded_names": {
                "type": list,
                "item_type": str,
                "default_factory": lambda: list(DEFAULT_EXCLUDED_NAMES),
            },
            "excluded_dirs": {
                "type": list,
                "item_type": str,
                "default_factory": lambda: list(DEFAULT_EXCLUDED_DIRS),
            },
        },
        "default": {},
    },
    "reconciler": {
        "type": dict,
        "schema": {
            "protected_paths": {
                "type": list,
                "item_type": str,
                "default_factory": lambda: list(DEFAULT_PROTECTED_PATHS),
            },
            "launcher_files": {
                "type": list,
                "item_type": str,
                "default_factory": lambda: list(DEFAULT_LAUNCHER_FILES),
            },
        },
        "default": {},
    },
    "logging": {
        "type": dict,
        "schema": {
            "level": {
                "type": str,
                "default": "INFO",
                "choices": ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"),
            },
            "structured": {"type": bool, "default": True},
        },
        "default": {},
    },
    "ui": {
        "type": dict,
        "schema": {
            "verbose": {"type": bool, "default": False},
        },
        "default": {},
    },
}


@dataclass
class Diagnostic:
    """Represents a configuration validation or loading issue."""

    level: DiagnosticLevel
    message: str
    source: Optional[Path] = None


@dataclass
class ConfigurationBundle:
    """All configuration data the patcher needs at runtime."""

    root_dir: Path
    status: ConfigurationStatus
    merged: Dict[str, Any] = field(default_factory=dict)
    repo_defaults: Dict[str, Any] = field(default_factory=dict)
    root_overrides: Dict[str, Any] = field(default_factory=dict)
    files_loaded: List[Path] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    log_path: Optional[Path] = None

    @property
    def ready(self) -> bool:
        return self.status == "ready"

    def get(self, dotted_key: str, default: Any = None) -> Any:
        """Look up ``section.key`` in the merged configuration."""
        node: Any = self.merged
        for part in dotted_key.split("."):
            if not isinstance(node, Mapping) or part not in node:
                return default
            node = node[part]
        return node


def resolve_root_dir(
    env: Optional[Mapping[str, str]] = None,
    default: str = ".",
) -> Path:
    """Resolve the patch root from the environment."""

    env_source = env if env is not None else os.environ
    raw = env_source.get("PATCHER_ROOT") or default
    return Path(raw).expanduser()


def load_runtime_configuration(
    root_dir: Optional[Path] = None,
    defaults_dir: Optional[Path] = None,
) -> ConfigurationBundle:
    """Load configuration defaults and root overrides."""

    resolved_root = Path(root_dir) if root_dir is not None else resolve_root_dir()
    diagnostics: List[Diagnostic] = []
    files_loaded: List[Path] = []

    repo_defaults: Dict[str, Any] = {}
    defaults_dir = defaults_dir or DEFAULT_CONFIG_DIR
    if defaults_dir.exists():
        repo_defaults, repo_files = _load_directory_configs(
            defaults_dir,
            diagnostics,
            label="repo defaults",
        )
        files_loaded.extend(repo_files)

    status: ConfigurationStatus = "ready"
    root_overrides: Dict[str, Any] = {}

    if not resolved_root.exists():
        diagnostics.append(
            Diagnostic(
                level="error",
                message=f"Patch root '{resolved_root}' does not exist.",
            )
        )
        status = "missing"
    elif not resolved_root.is_dir():
        diagnostics.append(
            Diagnostic(
                level="error",
                message=f"Patch root '{resolved_root}' is not a directory.",
            )
        )
        status = "invalid"
    else:
        for name in ROOT_CONFIG_NAMES:
            candidate = resolved_root / name
            if not candidate.is_file():
                continue
            content = _load_yaml_file(candidate, diagnostics)
            if content is not None:
                _deep_merge_dicts(root_overrides, content)
                files_loaded.append(candidate)

    merged = deepcopy(repo_defaults)
    _deep_merge_dicts(merged, root_overrides)

    _validate_schema(merged, diagnostics)

    if status == "ready" and any(diag.level == "error" for diag in diagnostics):
        status = "invalid"

    return ConfigurationBundle(
        root_dir=resolved_root,
        status=status,
        merged=merged,
        repo_defaults=repo_defaults,
        root_overrides=root_overrides,
        files_loaded=files_loaded,
        diagnostics=diagnostics,
    )


def _load_yaml_file(yaml_file: Path, diagnostics: List[Diagnostic]) -> Optional[Dict[str, Any]]:
    """Parse one YAML file into a mapping, recording problems as diagnostics."""

    try:
        content = yaml.safe_load(yaml_file.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        diagnostics.append(
            Diagnostic(
                level="error",
                message=f"Failed to parse '{yaml_file}': {exc}",
                source=yaml_file,
            )
        )
        return None
    except OSError as exc:
        diagnostics.append(
            Diagnostic(
                level="error",
                message=f"Failed to read '{yaml_file}': {exc}",
                source=yaml_file,
            )
        )
        return None

    if content is None:
        return {}

    if not isinstance(content, MutableMapping):
        diagnostics.append(
            Diagnostic(
                level="warning",
                message=f"Ignoring '{yaml_file}' because it does not contain a mapping.",
                source=yaml_file,
            )
        )
        return None

    return dict(content)


def _load_directory_configs(
    directory: Path,
    diagnostics: List[Diagnostic],
    label: str,
) -> Tuple[Dict[str, Any], List[Path]]:
    """Load all YAML files from a directory, merging them in order."""

    data: Dict[str, Any] = {}
    loaded_files: List[Path] = []

    if not directory.is_dir():
        diagnostics.append(
            Diagnostic(
                level="error",
                message=f"Configuration path '{directory}' ({label}) is not a directory.",
                source=directory,
            )
        )
        return data, loaded_files

    yaml_files = sorted(directory.glob("*.yml")) + sorted(directory.glob("*.yaml"))

    for yaml_file in yaml_files:
        content = _load_yaml_file(yaml_file, diagnostics)
        if content is None:
            continue
        _deep_merge_dicts(data, content)
        loaded_files.append(yaml_file)

    if not loaded_files:
        diagnostics.append(
            Diagnostic(
                level="info",
                message=f"No YAML files found under '{directory}' ({label}).",
                source=directory,
            )
        )

    return data, loaded_files


def _deep_merge_dicts(dest: MutableMapping[str, Any], source: Mapping[str, Any]) -> None:
    """Recursively merge mapping values."""

    for key, value in source.items():
        if (
            key in dest
            and isinstance(dest[key], MutableMapping)
            and isinstance(value, Mapping)
        ):
            _deep_merge_dicts(dest[key], value)
        else:
            dest[key] = deepcopy(value)


def _default_from_spec(spec: SchemaSpec) -> Any:
    if "default_factory" in spec and callable(spec["default_factory"]):
        return spec["default_factory"]()
    return deepcopy(spec.get("default"))


def _validate_schema(config: Dict[str, Any], diagnostics: List[Diagnostic]) -> None:
    _validate_section(config, CONFIG_SCHEMA, "config", diagnostics)


def _type_name(expected_type: Any) -> str:
    if isinstance(expected_type, tuple):
        return ", ".join(t.__name__ for t in expected_type)
    return expected_type.__name__


def _validate_section(
    target: Dict[str, Any],
    schema: SchemaSpec,
    path: str,
    diagnostics: List[Diagnostic],
) -> None:
    if not isinstance(target, dict):
        diagnostics.append(
            Diagnostic(
                level="error",
                message=f"Configuration section '{path}' must be a mapping.",
            )
        )
        return

    for key in list(target.keys()):
        if key not in schema:
            diagnostics.append(
                Diagnostic(
                    level="warning",
                    message=f"Unknown configuration key '{path}.{key}'.",
                )
            )

    for key, spec in schema.items():
        child_path = f"{path}.{key}"
        if key not in target:
            if "default" in spec or "default_factory" in spec:
                target[key] = _default_from_spec(spec)
                if spec.get("type") is dict:
                    _validate_section(target[key], spec.get("schema", {}), child_path, diagnostics)
            continue

        value = target[key]
        expected_type = spec.get("type")

        if expected_type is dict:
            if not isinstance(value, dict):
                diagnostics.append(
                    Diagnostic(
                        level="error",
                        message=f"'{child_path}' must be a mapping.",
                    )
                )
                target[key] = _default_from_spec(spec) or {}
                _validate_section(target[key], spec.get("schema", {}), child_path, diagnostics)
                continue
            _validate_section(value, spec.get("schema", {}), child_path, diagnostics)
        elif expected_type is list:
            if not isinstance(value, list):
                diagnostics.append(
                    Diagnostic(
                        level="error",
                        message=f"'{child_path}' must be a list.",
                    )
                )
                target[key] = _default_from_spec(spec) or []
                continue
            item_type = spec.get("item_type")
            if item_type is not None:
                filtered: List[Any] = []
                for idx, item in enumerate(value):
                    if isinstance(item, item_type):
                        filtered.append(item)
                    else:
                        diagnostics.append(
                            Diagnostic(
                                level="error",
                                message=(
                                    f"'{child_path}[{idx}]' must be of type "
                                    f"{item_type.__name__}."
                                ),
                            )
                        )
                target[key] = filtered
        elif expected_type and (
            not isinstance(value, expected_type) or isinstance(value, bool) and expected_type is not bool
        ):
            diagnostics.append(
                Diagnostic(
                    level="error",
                    message=f"'{child_path}' must be of type {_type_name(expected_type)}.",
                )
            )
            target[key] = _default_from_spec(spec)
        elif "choices" in spec and value not in spec["choices"]:
            diagnostics.append(
                Diagnostic(
                    level="error",
                    message=(
                        f"'{child_path}' must be one of {', '.join(spec['choices'])} "
                        f"(got '{value}')."
                    ),
                )
            )
            target[key] = _default_from_spec(spec)


__all__ = [
    "CONFIG_SCHEMA",
    "ConfigurationBundle",
    "ConfigurationStatus",
    "DEFAULT_CONFIG_DIR",
    "Diagnostic",
    "ROOT_CONFIG_NAMES",
    "load_runtime_configuration",
    "resolve_root_dir",
]
