"""Shared test fixtures."""

from __future__ import annotations

import subprocess
import threading
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from qpkg.cache import BuildRecordStore
from qpkg.errors import FetchError
from qpkg.executor import BuildExecutor
from qpkg.fetch import ResolvedSource
from qpkg.graph import Package
from qpkg.process import CancelToken, CommandResult
from qpkg.source import SourceSpec, parse_source
from qpkg.workspace import Workspace


@dataclass
class FakeRunner:
    """Records build-step invocations instead of running them.

    A step whose text contains one of ``fail_markers`` exits with status 1.
    """

    fail_markers: tuple[str, ...] = ("exit 1",)
    calls: list[tuple[str, Path | None, dict[str, str]]] = field(default_factory=list)
    on_run: Callable[[str, CancelToken | None], None] | None = None
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        cancel: CancelToken | None = None,
    ) -> CommandResult:
        command = argv[-1]
        with self._lock:
            self.calls.append((command, cwd, dict(env or {})))
        if self.on_run is not None:
            self.on_run(command, cancel)
        returncode = 1 if any(marker in command for marker in self.fail_markers) else 0
        return CommandResult(argv=tuple(argv), returncode=returncode, stdout=f"ran {command}\n")

    @property
    def commands(self) -> list[str]:
        with self._lock:
            return [command for command, _, _ in self.calls]


@dataclass
class FakeFetcher:
    """Materializes a placeholder tree; identities can be changed between runs."""

    identities: dict[str, str] = field(default_factory=dict)
    errors: dict[str, list[FetchError]] = field(default_factory=dict)
    fetched: list[str] = field(default_factory=list)

    def fetch(
        self,
        spec: SourceSpec,
        dest: Path,
        *,
        cancel: CancelToken | None = None,
    ) -> ResolvedSource:
        self.fetched.append(spec.descriptor)
        pending = self.errors.get(spec.descriptor)
        if pending:
            raise pending.pop(0)
        dest.mkdir(parents=True, exist_ok=True)
        (dest / "SOURCE").write_text(spec.descriptor, encoding="utf-8")
        identity = self.identities.get(spec.descriptor, "rev-1")
        return ResolvedSource(spec=spec, path=dest, identity=identity)


def make_package(
    name: str,
    *dependencies: str,
    steps: tuple[str, ...] | None = None,
    source: str | None = None,
) -> Package:
    return Package(
        name=name,
        source=parse_source(source or f"https://example.invalid/{name}.tar.gz"),
        dependencies=frozenset(dependencies),
        build_steps=steps if steps is not None else (f"make {name}",),
    )


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def fake_fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def workspace(tmp_path: Path) -> Workspace:
    return Workspace.create(tmp_path / "ws")


@pytest.fixture
def make_executor(
    workspace: Workspace,
    fake_runner: FakeRunner,
    fake_fetcher: FakeFetcher,
) -> Callable[..., BuildExecutor]:
    def factory(**overrides: object) -> BuildExecutor:
        options: dict[str, object] = {
            "workspace": workspace,
            "store": BuildRecordStore(workspace.records_path),
            "fetcher": fake_fetcher,
            "runner": fake_runner,
            "workers": 1,
            "poll_interval": 0.05,
        }
        options.update(overrides)
        return BuildExecutor(**options)  # type: ignore[arg-type]

    return factory


@pytest.fixture
def git_repo(tmp_path: Path) -> Callable[[str], Path]:
    """Create a local repository named ``<name>.git`` with one commit on ``main``."""

    def factory(name: str = "repo") -> Path:
        path = tmp_path / "remotes" / f"{name}.git"
        path.mkdir(parents=True)
        run_git(["init", "--quiet"], cwd=path)
        run_git(["checkout", "--quiet", "-b", "main"], cwd=path)
        run_git(["config", "user.email", "qpkg@example.com"], cwd=path)
        run_git(["config", "user.name", "qpkg test"], cwd=path)
        commit_file(path, "README.md", "hello repo\n")
        return path

    return factory


def commit_file(repo: Path, name: str, content: str, *, message: str | None = None) -> str:
    (repo / name).write_text(content, encoding="utf-8")
    run_git(["add", name], cwd=repo)
    run_git(["commit", "--quiet", "-m", message or f"update {name}"], cwd=repo)
    return run_git(["rev-parse", "HEAD"], cwd=repo)


def run_git(argv: list[str], *, cwd: Path) -> str:
    completed = subprocess.run(
        ["git", *argv],
        cwd=cwd,
        check=False,
        text=True,
        capture_output=True,
    )
    if completed.returncode != 0:
        raise RuntimeError(f"git {' '.join(argv)} failed: {completed.stderr.strip()}")
    return completed.stdout.strip()
