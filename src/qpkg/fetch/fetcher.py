"""Idempotent source materialization with per-destination exclusion.

A successful fetch writes a marker file next to the destination
(``.<name>.fetched.json``) recording the source descriptor and the
resolved identity. The marker is removed before any fetch starts and
written only after the destination is complete, so an interrupted fetch
never looks successful.
"""

from __future__ import annotations

import json
import os
import shutil
import tempfile
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Protocol

from qpkg.errors import NetworkFailureError, SourceNotFoundError
from qpkg.fetch.git import clone_git, resolve_remote
from qpkg.fetch.http import DEFAULT_TIMEOUT, download_url
from qpkg.fetch.model import ResolvedSource
from qpkg.process import CancelToken, ProcessRunner, SubprocessRunner
from qpkg.source import GitSource, SourceSpec, UrlSource

MARKER_SUFFIX = ".fetched.json"


class Fetcher(Protocol):
    def fetch(
        self,
        spec: SourceSpec,
        dest: Path,
        *,
        cancel: CancelToken | None = None,
    ) -> ResolvedSource:
        """Materialize ``spec`` at ``dest`` and return what was fetched."""


class SourceFetcher:
    def __init__(
        self,
        *,
        runner: ProcessRunner | None = None,
        offline: bool = False,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.runner: ProcessRunner = runner if runner is not None else SubprocessRunner()
        self.offline = offline
        self.timeout = timeout
        self._locks: dict[Path, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def fetch(
        self,
        spec: SourceSpec,
        dest: Path,
        *,
        cancel: CancelToken | None = None,
    ) -> ResolvedSource:
        dest = Path(dest).absolute()
        with self._exclusive(dest):
            cached = self._reuse(spec, dest, cancel=cancel)
            if cached is not None:
                return cached
            if self.offline:
                raise NetworkFailureError(
                    "Source has not been fetched and offline mode forbids network access.",
                    hint="Run once without offline mode to populate the workspace.",
                    context={"operation": "fetch", "source": spec.descriptor},
                )

            invalidate(dest)
            completed = False
            try:
                if isinstance(spec, GitSource):
                    resolved = clone_git(spec, dest, runner=self.runner, cancel=cancel)
                else:
                    resolved = download_url(spec, dest, cancel=cancel, timeout=self.timeout)
                _write_marker(dest, resolved)
                completed = True
            finally:
                if not completed:
                    invalidate(dest)
            return resolved

    def _reuse(
        self,
        spec: SourceSpec,
        dest: Path,
        *,
        cancel: CancelToken | None,
    ) -> ResolvedSource | None:
        marker = read_marker(dest)
        if marker is None or marker.get("descriptor") != spec.descriptor or not dest.is_dir():
            return None
        if bool(marker.get("recurse_submodules", False)) != _recurses(spec):
            return None
        identity = str(marker.get("identity", ""))
        if not identity:
            return None
        etag = marker.get("etag")
        resolved = ResolvedSource(
            spec=spec,
            path=dest,
            identity=identity,
            etag=str(etag) if etag is not None else None,
        )
        if isinstance(spec, UrlSource) or spec.pinned or self.offline:
            return resolved
        # An abbreviated commit id names the same commit forever.
        if spec.matches_commit(identity):
            return resolved
        # A branch tip may have moved since the last fetch.
        try:
            current = resolve_remote(spec, runner=self.runner, cancel=cancel)
        except SourceNotFoundError:
            return None
        return resolved if current == identity else None

    @contextmanager
    def _exclusive(self, dest: Path) -> Iterator[None]:
        with self._locks_guard:
            lock = self._locks.setdefault(dest, threading.Lock())
        with lock:
            yield


def marker_path(dest: Path) -> Path:
    return dest.parent / f".{dest.name}{MARKER_SUFFIX}"


def read_marker(dest: Path) -> dict[str, Any] | None:
    path = marker_path(dest)
    try:
        parsed = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except json.JSONDecodeError:
        # A torn marker is treated the same as a missing one.
        return None
    return parsed if isinstance(parsed, dict) else None


def invalidate(dest: Path) -> None:
    """Mark ``dest`` as not fetched and remove whatever is there."""
    marker_path(dest).unlink(missing_ok=True)
    if dest.is_symlink() or dest.is_file():
        dest.unlink()
    elif dest.exists():
        shutil.rmtree(dest)


def _recurses(spec: SourceSpec) -> bool:
    return isinstance(spec, GitSource) and spec.recurse_submodules


def _write_marker(dest: Path, resolved: ResolvedSource) -> None:
    payload = {
        "descriptor": resolved.spec.descriptor,
        "identity": resolved.identity,
        "etag": resolved.etag,
        "recurse_submodules": _recurses(resolved.spec),
    }
    path = marker_path(dest)
    fd, temp_name = tempfile.mkstemp(prefix=f".{dest.name}-marker-", dir=str(dest.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, indent=2, sort_keys=True) + "\n")
        os.replace(temp_name, path)
    finally:
        if os.path.exists(temp_name):
            os.unlink(temp_name)


__all__ = [
    "Fetcher",
    "SourceFetcher",
    "invalidate",
    "marker_path",
    "read_marker",
]
