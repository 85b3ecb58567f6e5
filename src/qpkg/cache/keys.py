"""Fingerprint derivation."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from qpkg.errors import CacheError
from qpkg.fetch.model import ResolvedSource
from qpkg.graph import Package
from qpkg.source import GitSource

FINGERPRINT_VERSION = 2


@dataclass(frozen=True, slots=True)
class FingerprintInput:
    name: str
    source_kind: str
    source_location: str
    source_identity: str
    build_steps: tuple[str, ...] = ()
    subdir: str = ""
    env: dict[str, str] = field(default_factory=dict)
    dependencies: tuple[tuple[str, str], ...] = ()
    recurse_submodules: bool = False
    patches: tuple[tuple[str, str], ...] = ()


def fingerprint_input(
    package: Package,
    resolved_source: ResolvedSource,
    dep_fingerprints: Mapping[str, str],
) -> FingerprintInput:
    missing = sorted(package.dependencies - dep_fingerprints.keys())
    if missing:
        raise CacheError(
            "Dependency fingerprints are not finalized.",
            hint="Fingerprints can only be computed after every dependency succeeded.",
            context={"package": package.name, "missing": ", ".join(missing)},
        )
    spec = resolved_source.spec
    # The symbolic git reference is left out on purpose: the resolved commit is the identity.
    return FingerprintInput(
        name=package.name,
        source_kind=spec.kind,
        source_location=spec.location,
        source_identity=resolved_source.identity,
        build_steps=tuple(package.build_steps),
        subdir=package.subdir,
        env=dict(package.env),
        dependencies=tuple(
            (name, dep_fingerprints[name]) for name in sorted(package.dependencies)
        ),
        recurse_submodules=isinstance(spec, GitSource) and spec.recurse_submodules,
        patches=tuple((path.name, _patch_digest(path, package=package.name)) for path in package.patches),
    )


def fingerprint(
    package: Package,
    resolved_source: ResolvedSource,
    dep_fingerprints: Mapping[str, str],
) -> str:
    """Return the deterministic fingerprint of a package's build inputs."""
    return input_digest(fingerprint_input(package, resolved_source, dep_fingerprints))


def input_digest(inputs: FingerprintInput) -> str:
    canonical = json.dumps(_to_payload(inputs), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _to_payload(inputs: FingerprintInput) -> dict[str, Any]:
    return {
        "version": FINGERPRINT_VERSION,
        "name": inputs.name,
        "source_kind": inputs.source_kind,
        "source_location": inputs.source_location,
        "source_identity": inputs.source_identity,
        "build_steps": list(inputs.build_steps),
        "subdir": inputs.subdir,
        "env": dict(sorted(inputs.env.items())),
        "dependencies": [list(item) for item in inputs.dependencies],
        "recurse_submodules": inputs.recurse_submodules,
        "patches": [list(item) for item in inputs.patches],
    }


def _patch_digest(path: Path, *, package: str) -> str:
    try:
        return hashlib.sha256(path.read_bytes()).hexdigest()
    except OSError as exc:
        raise CacheError(
            "Patch file could not be read.",
            hint="Check the package's `patches` entries.",
            context={"package": package, "patch": str(path), "error": str(exc)},
        ) from exc
