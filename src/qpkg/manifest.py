"""Package declarations and the TOML manifest format.

A manifest is a list of ``[[package]]`` tables::

    [[package]]
    name = "zlib"
    source = "https://zlib.net/zlib-1.3.1.tar.gz"
    subdir = "zlib-1.3.1"
    build_steps = ["@SRCDIR@/configure --prefix=/usr", "make -j@THREADS@", "make DESTDIR=@DESTDIR@ install"]

    [[package]]
    name = "openssl"
    source = "https://github.com/openssl/openssl.git:openssl-3.3.1"
    dependencies = ["zlib"]
    recurse_submodules = true
    patches = ["patches/openssl-no-docs.patch"]

Patch paths are relative to the manifest's directory. Files named
``*.patch`` or ``*.diff`` under ``<manifest dir>/<name>/patches/`` are
picked up too unless the package sets ``auto_patch = false``.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import toml

from qpkg.errors import ManifestError, ParseError
from qpkg.graph import Package
from qpkg.source import GitSource, parse_source

PATCH_SUFFIXES = frozenset({".patch", ".diff"})

_KNOWN_FIELDS = frozenset(
    {
        "name",
        "source",
        "dependencies",
        "build_steps",
        "env",
        "subdir",
        "recurse_submodules",
        "patches",
        "auto_patch",
    }
)


@dataclass(frozen=True, slots=True)
class PackageDeclaration:
    name: str
    source: str
    dependencies: tuple[str, ...] = ()
    build_steps: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    subdir: str = ""
    recurse_submodules: bool = False
    patches: tuple[Path, ...] = ()


def to_package(declaration: PackageDeclaration) -> Package:
    try:
        source = parse_source(declaration.source)
    except ParseError as exc:
        raise ParseError(
            exc.message,
            hint=exc.hint,
            context={"package": declaration.name, **exc.context},
        ) from exc
    if declaration.recurse_submodules:
        if not isinstance(source, GitSource):
            raise ManifestError(
                "`recurse_submodules` only applies to git sources.",
                context={"package": declaration.name, "source": declaration.source},
            )
        source = replace(source, recurse_submodules=True)
    return Package(
        name=declaration.name,
        source=source,
        dependencies=frozenset(declaration.dependencies),
        build_steps=tuple(declaration.build_steps),
        env=dict(declaration.env),
        subdir=declaration.subdir,
        patches=tuple(declaration.patches),
    )


def to_packages(declarations: Sequence[PackageDeclaration]) -> list[Package]:
    """Parse every declaration's source descriptor; fails on the first malformed one."""
    return [to_package(declaration) for declaration in declarations]


def load_manifest(path: str | Path) -> list[PackageDeclaration]:
    manifest_path = Path(path)
    try:
        payload = toml.load(manifest_path)
    except FileNotFoundError as exc:
        raise ManifestError(
            "Manifest does not exist.",
            context={"path": str(manifest_path)},
        ) from exc
    except toml.TomlDecodeError as exc:
        raise ManifestError(
            "Manifest is not valid TOML.",
            hint=str(exc),
            context={"path": str(manifest_path)},
        ) from exc
    return parse_manifest(payload, origin=str(manifest_path), base_dir=manifest_path.absolute().parent)


def parse_manifest(
    payload: Mapping[str, Any],
    *,
    origin: str = "<memory>",
    base_dir: Path | None = None,
) -> list[PackageDeclaration]:
    """Validate ``payload``; ``base_dir`` anchors patch paths and patch discovery."""
    entries = payload.get("package", [])
    if not isinstance(entries, list):
        raise ManifestError("Manifest `package` must be an array of tables.", context={"path": origin})
    return [
        _parse_entry(entry, position=position, origin=origin, base_dir=base_dir)
        for position, entry in enumerate(entries)
    ]


def discover_patches(base_dir: Path, name: str) -> tuple[Path, ...]:
    """Patch files under ``<base_dir>/<name>/patches``, in file name order."""
    patches_dir = base_dir / name / "patches"
    if not patches_dir.is_dir():
        return ()
    return tuple(
        sorted(
            (path for path in patches_dir.rglob("*") if path.is_file() and path.suffix in PATCH_SUFFIXES),
            key=lambda path: path.relative_to(patches_dir).as_posix(),
        )
    )


def _parse_entry(entry: Any, *, position: int, origin: str, base_dir: Path | None) -> PackageDeclaration:
    context = {"path": origin, "entry": str(position)}
    if not isinstance(entry, dict):
        raise ManifestError("Invalid package entry.", context=context)
    unknown = sorted(set(entry) - _KNOWN_FIELDS)
    if unknown:
        raise ManifestError(
            "Unknown package fields: " + ", ".join(unknown),
            context=context,
        )
    name = entry.get("name")
    if not isinstance(name, str) or not name:
        raise ManifestError("Package entry needs a non-empty `name`.", context=context)
    context["package"] = name
    source = entry.get("source")
    if not isinstance(source, str):
        raise ManifestError("Package entry needs a `source` string.", context=context)
    subdir = entry.get("subdir", "")
    if not isinstance(subdir, str):
        raise ManifestError("Invalid package `subdir` value.", context=context)
    env = entry.get("env", {})
    if not isinstance(env, dict) or not all(
        isinstance(key, str) and isinstance(value, str) for key, value in env.items()
    ):
        raise ManifestError("Invalid package `env` table.", context=context)
    recurse_submodules = _flag(entry, "recurse_submodules", False, context)
    auto_patch = _flag(entry, "auto_patch", True, context)

    anchor = base_dir if base_dir is not None else Path.cwd()
    patches = [anchor / patch for patch in _string_list(entry, "patches", context)]
    if auto_patch and base_dir is not None:
        patches.extend(path for path in discover_patches(base_dir, name) if path not in patches)
    return PackageDeclaration(
        name=name,
        source=source,
        dependencies=_string_list(entry, "dependencies", context),
        build_steps=_string_list(entry, "build_steps", context),
        env=dict(env),
        subdir=subdir,
        recurse_submodules=recurse_submodules,
        patches=tuple(patches),
    )


def _string_list(entry: Mapping[str, Any], key: str, context: Mapping[str, str]) -> tuple[str, ...]:
    value = entry.get(key, [])
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ManifestError(f"Invalid package `{key}` value.", context=context)
    return tuple(value)


def _flag(entry: Mapping[str, Any], key: str, default: bool, context: Mapping[str, str]) -> bool:
    value = entry.get(key, default)
    if not isinstance(value, bool):
        raise ManifestError(f"Package `{key}` must be true or false.", context=context)
    return value


__all__ = [
    "PackageDeclaration",
    "discover_patches",
    "load_manifest",
    "parse_manifest",
    "to_package",
    "to_packages",
]
