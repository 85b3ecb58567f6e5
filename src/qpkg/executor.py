"""Concurrent, cache-aware build execution over a :class:`PackageGraph`.

Each package moves through::

    pending -> fetching -> (cache_hit | building) -> (success | failed)

A package is dispatched only after every dependency reached ``success``;
its fingerprint is therefore computed from finalized dependency
fingerprints. A failure marks every transitive dependent as skipped and
never touches unrelated parts of the graph.
"""

from __future__ import annotations

import heapq
import os
import re
import shutil
from collections.abc import Iterable, Mapping
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from qpkg.cache import BuildRecordStore, RecordStatus, fingerprint
from qpkg.errors import (
    BuildStepError,
    CacheError,
    CommandCancelledError,
    ConfigError,
    FetchError,
    QpkgError,
)
from qpkg.fetch import Fetcher, ResolvedSource
from qpkg.graph import Package, PackageGraph, dependency_env_name
from qpkg.observability import StructuredLogger
from qpkg.process import CancelToken, ProcessRunner
from qpkg.workspace import Workspace

SHELL = "/bin/sh"
PATCH_COMMAND = ("patch", "-Np1", "-i")
PATCHED_SOURCE_DIR = "source"
DEFAULT_POLL_INTERVAL = 0.2

_PLACEHOLDER = re.compile(r"@([A-Z][A-Z0-9_]*)@")


class PackageState(StrEnum):
    PENDING = "pending"
    FETCHING = "fetching"
    CACHE_HIT = "cache_hit"
    BUILDING = "building"
    SUCCESS = "success"
    FAILED = "failed"


class OutcomeStatus(StrEnum):
    BUILT = "built"
    CACHED = "cached"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class PackageOutcome:
    name: str
    status: OutcomeStatus
    fingerprint: str | None = None
    artifact_location: Path | None = None
    reason: str | None = None
    error: QpkgError | None = field(default=None, compare=False, repr=False)

    @property
    def succeeded(self) -> bool:
        return self.status in (OutcomeStatus.BUILT, OutcomeStatus.CACHED)

    def describe(self) -> str:
        if self.status is OutcomeStatus.BUILT:
            return "Success (built)"
        if self.status is OutcomeStatus.CACHED:
            return "Success (cached)"
        if self.status is OutcomeStatus.FAILED:
            return f"Failed: {self.reason or 'unknown error'}"
        if self.status is OutcomeStatus.SKIPPED:
            return "Skipped (dependency failed)"
        return "Cancelled"


@dataclass(slots=True)
class RunReport:
    outcomes: dict[str, PackageOutcome] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return all(outcome.succeeded for outcome in self.outcomes.values())

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1

    def names_with(self, status: OutcomeStatus) -> list[str]:
        return [name for name, outcome in self.outcomes.items() if outcome.status is status]

    def __getitem__(self, name: str) -> PackageOutcome:
        return self.outcomes[name]


def expand_placeholders(text: str, values: Mapping[str, str]) -> str:
    """Replace ``@NAME@`` tokens in a single pass; unknown tokens are kept."""
    return _PLACEHOLDER.sub(lambda match: values.get(match.group(1), match.group(0)), text)


class BuildExecutor:
    def __init__(
        self,
        *,
        workspace: Workspace,
        store: BuildRecordStore,
        fetcher: Fetcher,
        runner: ProcessRunner,
        workers: int = 1,
        fetch_retries: int = 0,
        env: Mapping[str, str] | None = None,
        variables: Mapping[str, str] | None = None,
        threads: int | None = None,
        force: Iterable[str] = (),
        logger: StructuredLogger | None = None,
        cancel: CancelToken | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        if workers < 1:
            raise ConfigError("Worker limit must be at least 1.", context={"workers": str(workers)})
        if fetch_retries < 0:
            raise ConfigError(
                "Fetch retries must not be negative.",
                context={"fetch_retries": str(fetch_retries)},
            )
        self.workspace = workspace
        self.store = store
        self.fetcher = fetcher
        self.runner = runner
        self.workers = workers
        self.fetch_retries = fetch_retries
        self.env = dict(env or {})
        self.variables = {key.upper(): value for key, value in (variables or {}).items()}
        self.threads = threads or os.cpu_count() or 1
        self.force = frozenset(force)
        self.logger = logger if logger is not None else StructuredLogger()
        self.cancel = cancel if cancel is not None else CancelToken()
        self.poll_interval = poll_interval

    def run(self, graph: PackageGraph) -> RunReport:
        outcomes: dict[str, PackageOutcome] = {}
        fingerprints: dict[str, str] = {}
        artifacts: dict[str, Path] = {}
        remaining = {pkg.name: len(pkg.dependencies) for pkg in graph.packages}
        ready = [name for name, count in remaining.items() if count == 0]
        heapq.heapify(ready)
        for name in graph.order:
            self._transition(name, PackageState.PENDING, "waiting for dependencies")

        in_flight: dict[Future[PackageOutcome], str] = {}
        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="qpkg-worker") as pool:
            while ready or in_flight:
                while ready and len(in_flight) < self.workers and not self.cancel.cancelled:
                    name = heapq.heappop(ready)
                    package = graph.package(name)
                    future = pool.submit(
                        self._process,
                        package,
                        {dep: fingerprints[dep] for dep in package.dependencies},
                        {dep: artifacts[dep] for dep in package.dependencies},
                    )
                    in_flight[future] = name

                if self.cancel.cancelled and ready:
                    for name in ready:
                        outcomes[name] = PackageOutcome(name=name, status=OutcomeStatus.CANCELLED)
                        self._log_cancelled(name)
                    ready.clear()
                if not in_flight:
                    break

                done, _ = wait(in_flight, timeout=self.poll_interval, return_when=FIRST_COMPLETED)
                for future in done:
                    name = in_flight.pop(future)
                    outcome = future.result()
                    outcomes[name] = outcome
                    if outcome.succeeded:
                        if outcome.fingerprint is None or outcome.artifact_location is None:
                            raise CacheError(
                                "Successful outcome carries no fingerprint or artifact location.",
                                context={"package": name},
                            )
                        fingerprints[name] = outcome.fingerprint
                        artifacts[name] = outcome.artifact_location
                        for dependent in graph.dependents_of(name):
                            remaining[dependent] -= 1
                            if remaining[dependent] == 0:
                                heapq.heappush(ready, dependent)
                    else:
                        self._propagate_failure(graph, outcome, outcomes)

        for name in graph.order:
            if name not in outcomes:
                outcomes[name] = PackageOutcome(name=name, status=OutcomeStatus.CANCELLED)
                self._log_cancelled(name)

        self.logger.to_json_lines(self.workspace.run_log_path)
        return RunReport(
            outcomes={name: outcomes[name] for name in graph.order},
            cancelled=self.cancel.cancelled,
        )

    def _propagate_failure(
        self,
        graph: PackageGraph,
        failed: PackageOutcome,
        outcomes: dict[str, PackageOutcome],
    ) -> None:
        cancelled = failed.status is OutcomeStatus.CANCELLED
        for dependent in sorted(graph.transitive_dependents(failed.name)):
            if dependent in outcomes:
                continue
            if cancelled:
                outcomes[dependent] = PackageOutcome(name=dependent, status=OutcomeStatus.CANCELLED)
                self._log_cancelled(dependent)
                continue
            outcomes[dependent] = PackageOutcome(
                name=dependent,
                status=OutcomeStatus.SKIPPED,
                reason=f"dependency `{failed.name}` failed",
            )
            self._transition(
                dependent,
                PackageState.FAILED,
                f"skipped because dependency `{failed.name}` failed",
            )

    def _process(
        self,
        package: Package,
        dep_fingerprints: Mapping[str, str],
        dep_artifacts: Mapping[str, Path],
    ) -> PackageOutcome:
        name = package.name
        if self.cancel.cancelled:
            self._log_cancelled(name)
            return PackageOutcome(name=name, status=OutcomeStatus.CANCELLED)

        self._transition(name, PackageState.FETCHING, package.source.descriptor)
        try:
            resolved = self._fetch(package)
        except FetchError as exc:
            if self.cancel.cancelled:
                self._log_cancelled(name)
                return PackageOutcome(name=name, status=OutcomeStatus.CANCELLED, error=exc)
            return self._failed(name, None, f"fetch failed: {exc.message}", exc)
        except OSError as exc:
            return self._failed(name, None, f"fetch failed: {exc}", None)

        try:
            package_fingerprint = fingerprint(package, resolved, dep_fingerprints)
        except CacheError as exc:
            return self._failed(name, None, exc.message, exc)
        cached = name not in self.force and self.store.is_cached(name, package_fingerprint)
        record = self.store.get(name) if cached else None
        if record is not None:
            self._transition(name, PackageState.CACHE_HIT, package_fingerprint)
            self._transition(name, PackageState.SUCCESS, "reused cached artifact")
            return PackageOutcome(
                name=name,
                status=OutcomeStatus.CACHED,
                fingerprint=package_fingerprint,
                artifact_location=Path(record.artifact_location),
            )

        self._transition(name, PackageState.BUILDING, package_fingerprint)
        artifact_dir = self.workspace.artifact_dir(name)
        try:
            self._build(package, resolved, dep_artifacts)
        except CommandCancelledError as exc:
            self.store.record(name, package_fingerprint, artifact_dir, RecordStatus.FAILED)
            self._log_cancelled(name)
            return PackageOutcome(
                name=name,
                status=OutcomeStatus.CANCELLED,
                fingerprint=package_fingerprint,
                error=exc,
            )
        except BuildStepError as exc:
            self.store.record(name, package_fingerprint, artifact_dir, RecordStatus.FAILED)
            return self._failed(name, package_fingerprint, exc.message, exc)
        except OSError as exc:
            self.store.record(name, package_fingerprint, artifact_dir, RecordStatus.FAILED)
            return self._failed(name, package_fingerprint, f"workspace error: {exc}", None)

        self.store.record(name, package_fingerprint, artifact_dir, RecordStatus.SUCCESS)
        self._transition(name, PackageState.SUCCESS, str(artifact_dir))
        return PackageOutcome(
            name=name,
            status=OutcomeStatus.BUILT,
            fingerprint=package_fingerprint,
            artifact_location=artifact_dir,
        )

    def _fetch(self, package: Package) -> ResolvedSource:
        dest = self.workspace.source_dir(package.name)
        attempt = 1
        while True:
            try:
                resolved = self.fetcher.fetch(package.source, dest, cancel=self.cancel)
                break
            except FetchError as exc:
                if not exc.retryable or attempt > self.fetch_retries or self.cancel.cancelled:
                    raise
                self.logger.log(
                    operation="fetch_retry",
                    package=package.name,
                    state=PackageState.FETCHING.value,
                    message=exc.message,
                    level="warning",
                    extra={"attempt": attempt, "code": exc.code},
                )
                attempt += 1
        if package.subdir and not resolved.root(package.subdir).is_dir():
            raise FetchError(
                "Source subdirectory does not exist in the fetched source.",
                hint="Check the package's `subdir` against the unpacked layout.",
                context={"package": package.name, "subdir": package.subdir},
            )
        return resolved

    def _build(
        self,
        package: Package,
        resolved: ResolvedSource,
        dep_artifacts: Mapping[str, Path],
    ) -> Path:
        name = package.name
        build_dir, artifact_dir = self.workspace.reset_build(name)
        src_dir = resolved.root(package.subdir)
        if package.patches:
            # The fetched tree is shared across runs; patch a copy.
            patched = build_dir / PATCHED_SOURCE_DIR
            shutil.copytree(src_dir, patched, symlinks=True)
            src_dir = patched
        values = {
            **self.variables,
            "NAME": name,
            "SRCDIR": str(src_dir),
            "BUILDDIR": str(build_dir),
            "DESTDIR": str(artifact_dir),
            "WORKSPACE": str(self.workspace.root),
            "THREADS": str(self.threads),
        }
        env = self._step_env(package, values, dep_artifacts)

        with self.workspace.log_path(name).open("a", encoding="utf-8") as log:
            for patch in package.patches:
                argv = [*PATCH_COMMAND, str(patch)]
                result = self.runner.run(argv, cwd=src_dir, env=env, cancel=self.cancel)
                log.write(f"$ {' '.join(argv)}\n{result.stdout}{result.stderr}")
                if not result.ok:
                    raise BuildStepError(
                        f"patch {patch.name} did not apply (status {result.returncode})",
                        step=" ".join(argv),
                        returncode=result.returncode,
                        hint=f"See {self.workspace.log_path(name)} for the patch output.",
                        context={"package": name},
                    )
            for index, step in enumerate(package.build_steps, start=1):
                command = expand_placeholders(step, values)
                result = self.runner.run([SHELL, "-c", command], cwd=build_dir, env=env, cancel=self.cancel)
                log.write(f"$ {command}\n{result.stdout}{result.stderr}")
                if not result.ok:
                    raise BuildStepError(
                        f"build step {index} exited with status {result.returncode}",
                        step=command,
                        returncode=result.returncode,
                        hint=f"See {self.workspace.log_path(name)} for the step output.",
                        context={"package": name},
                    )
        return artifact_dir

    def _step_env(
        self,
        package: Package,
        values: Mapping[str, str],
        dep_artifacts: Mapping[str, Path],
    ) -> dict[str, str]:
        env = dict(os.environ)
        env["LC_ALL"] = "C"
        for key, value in (*self.env.items(), *package.env.items()):
            env[key] = expand_placeholders(value, values)
        env["QPKG_SRCDIR"] = values["SRCDIR"]
        env["QPKG_BUILDDIR"] = values["BUILDDIR"]
        env["QPKG_DESTDIR"] = values["DESTDIR"]
        env["QPKG_DEPS"] = os.pathsep.join(str(dep_artifacts[dep]) for dep in sorted(dep_artifacts))
        for dep, location in dep_artifacts.items():
            env[dependency_env_name(dep)] = str(location)
        return env

    def _failed(
        self,
        name: str,
        package_fingerprint: str | None,
        reason: str,
        error: QpkgError | None,
    ) -> PackageOutcome:
        self._transition(name, PackageState.FAILED, reason, level="error")
        return PackageOutcome(
            name=name,
            status=OutcomeStatus.FAILED,
            fingerprint=package_fingerprint,
            reason=reason,
            error=error,
        )

    def _transition(self, name: str, state: PackageState, message: str, *, level: str = "info") -> None:
        self.logger.log(
            operation="transition",
            package=name,
            state=state.value,
            message=message,
            level=level,
        )

    def _log_cancelled(self, name: str) -> None:
        self.logger.log(
            operation="cancel",
            package=name,
            state=None,
            message="cancelled before completion",
            level="warning",
        )


__all__ = [
    "BuildExecutor",
    "OutcomeStatus",
    "PackageOutcome",
    "PackageState",
    "RunReport",
    "dependency_env_name",
    "expand_placeholders",
]
