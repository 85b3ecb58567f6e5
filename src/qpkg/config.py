"""Orchestrator configuration loaded from ``qpkg.toml``.

Example::

    [general]
    workspace = "build"
    workers = 4
    fetch_retries = 2
    manifest = "packages.toml"

    [env]
    CC = "gcc"
    CFLAGS = "-O2"

    [variables]
    target = "x86_64-linux-gnu"
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import toml

from qpkg.errors import ConfigError

CONFIG_SEARCH_PATHS = (Path("qpkg.toml"), Path("/etc/qpkg.toml"))

_GENERAL_FIELDS = frozenset({"workspace", "workers", "fetch_retries", "offline", "manifest"})
_SECTIONS = frozenset({"general", "env", "variables"})


@dataclass(frozen=True, slots=True)
class OrchestratorConfig:
    workspace: Path = Path("build")
    workers: int = 0
    fetch_retries: int = 0
    offline: bool = False
    env: Mapping[str, str] = field(default_factory=dict)
    variables: Mapping[str, str] = field(default_factory=dict)
    manifest: Path | None = None

    @property
    def worker_limit(self) -> int:
        """Configured worker count; ``0`` means one worker per CPU."""
        return self.workers or os.cpu_count() or 1

    def with_overrides(self, **changes: Any) -> OrchestratorConfig:
        return replace(self, **{key: value for key, value in changes.items() if value is not None})


def load_config(path: str | Path | None = None) -> OrchestratorConfig:
    if path is not None:
        return _load_file(Path(path))
    for candidate in CONFIG_SEARCH_PATHS:
        if candidate.is_file():
            return _load_file(candidate)
    raise ConfigError(
        "No configuration file found.",
        hint="Create qpkg.toml in the current directory or pass --config.",
        context={"searched": ", ".join(str(candidate) for candidate in CONFIG_SEARCH_PATHS)},
    )


def parse_config(payload: Mapping[str, Any], *, base_dir: Path) -> OrchestratorConfig:
    unknown_sections = sorted(set(payload) - _SECTIONS)
    if unknown_sections:
        raise ConfigError("Unknown configuration sections: " + ", ".join(unknown_sections))

    general = _table(payload, "general")
    unknown = sorted(set(general) - _GENERAL_FIELDS)
    if unknown:
        raise ConfigError("Unknown [general] keys: " + ", ".join(unknown))

    workspace_raw = general.get("workspace", "")
    if not isinstance(workspace_raw, str):
        raise ConfigError("Invalid `workspace` value.")
    # An empty or "." workspace means the directory holding the config file.
    workspace = base_dir if workspace_raw in ("", ".") else base_dir / workspace_raw

    manifest_raw = general.get("manifest")
    if manifest_raw is not None and not isinstance(manifest_raw, str):
        raise ConfigError("Invalid `manifest` value.")

    offline = general.get("offline", False)
    if not isinstance(offline, bool):
        raise ConfigError("Invalid `offline` value.")

    return OrchestratorConfig(
        workspace=workspace.absolute(),
        workers=_non_negative_int(general, "workers"),
        fetch_retries=_non_negative_int(general, "fetch_retries"),
        offline=offline,
        env=_string_table(payload, "env"),
        variables=_string_table(payload, "variables"),
        manifest=(base_dir / manifest_raw).absolute() if manifest_raw else None,
    )


def _load_file(path: Path) -> OrchestratorConfig:
    try:
        payload = toml.load(path)
    except FileNotFoundError as exc:
        raise ConfigError("Configuration file does not exist.", context={"path": str(path)}) from exc
    except toml.TomlDecodeError as exc:
        raise ConfigError(
            "Configuration file is not valid TOML.",
            hint=str(exc),
            context={"path": str(path)},
        ) from exc
    return parse_config(payload, base_dir=path.absolute().parent)


def _table(payload: Mapping[str, Any], key: str) -> dict[str, Any]:
    value = payload.get(key, {})
    if not isinstance(value, dict):
        raise ConfigError(f"Configuration `[{key}]` must be a table.")
    return value


def _string_table(payload: Mapping[str, Any], key: str) -> dict[str, str]:
    table = _table(payload, key)
    if not all(isinstance(value, str) for value in table.values()):
        raise ConfigError(f"Configuration `[{key}]` values must be strings.")
    return dict(table)


def _non_negative_int(general: Mapping[str, Any], key: str) -> int:
    value = general.get(key, 0)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ConfigError(f"Invalid `{key}` value.", hint="Use a non-negative integer.")
    return value


__all__ = ["CONFIG_SEARCH_PATHS", "OrchestratorConfig", "load_config", "parse_config"]
