"""Git fetch: shallow or full clones resolved to a concrete commit."""

from __future__ import annotations

from pathlib import Path

from qpkg.errors import (
    CommandCancelledError,
    FetchError,
    FetchInterruptedError,
    NetworkFailureError,
    SourceNotFoundError,
)
from qpkg.fetch.model import ResolvedSource
from qpkg.process import CancelToken, CommandResult, ProcessRunner
from qpkg.source import GitSource

NOT_FOUND_MARKERS = (
    "not found",
    "does not exist",
    "does not appear to be a git repository",
    "could not find remote branch",
    "couldn't find remote ref",
    "did not match any file(s) known to git",
    "unknown revision",
    "invalid reference",
)


def clone_git(
    spec: GitSource,
    dest: Path,
    *,
    runner: ProcessRunner,
    cancel: CancelToken | None = None,
) -> ResolvedSource:
    """Clone ``spec`` into ``dest`` (which must not exist) and return the checked-out commit."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    if spec.shallow and spec.pinned:
        # A bare commit id cannot be passed to `clone --branch`; fetch it directly.
        dest.mkdir()
        _run_git(["init", "--quiet"], spec=spec, runner=runner, cwd=dest, cancel=cancel)
        _run_git(
            ["remote", "add", "origin", spec.location],
            spec=spec,
            runner=runner,
            cwd=dest,
            cancel=cancel,
        )
        _run_git(
            ["fetch", "--quiet", "--depth=1", "origin", str(spec.reference)],
            spec=spec,
            runner=runner,
            cwd=dest,
            cancel=cancel,
        )
        _run_git(
            ["checkout", "--quiet", "--detach", "FETCH_HEAD"],
            spec=spec,
            runner=runner,
            cwd=dest,
            cancel=cancel,
        )
    elif spec.shallow:
        argv = ["clone", "--quiet", "--depth=1"]
        if spec.reference is not None:
            argv.extend(["--branch", spec.reference])
        argv.extend([spec.location, str(dest)])
        _run_git(argv, spec=spec, runner=runner, cancel=cancel)
    else:
        _run_git(["clone", "--quiet", spec.location, str(dest)], spec=spec, runner=runner, cancel=cancel)
        if spec.reference is not None:
            _run_git(
                ["checkout", "--quiet", spec.reference],
                spec=spec,
                runner=runner,
                cwd=dest,
                cancel=cancel,
            )

    if spec.recurse_submodules:
        argv = ["submodule", "update", "--init", "--recursive", "--quiet"]
        if spec.shallow:
            argv.append("--depth=1")
        _run_git(argv, spec=spec, runner=runner, cwd=dest, cancel=cancel)

    commit = _run_git(["rev-parse", "HEAD"], spec=spec, runner=runner, cwd=dest, cancel=cancel)
    return ResolvedSource(spec=spec, path=dest, identity=commit)


def resolve_remote(
    spec: GitSource,
    *,
    runner: ProcessRunner,
    cancel: CancelToken | None = None,
) -> str:
    """Return the commit ``spec`` currently points at on the remote."""
    if spec.pinned:
        return str(spec.reference)
    ref = spec.reference or "HEAD"
    output = _run_git(["ls-remote", spec.location, ref], spec=spec, runner=runner, cancel=cancel)
    refs: dict[str, str] = {}
    for line in output.splitlines():
        parts = line.split()
        if len(parts) == 2:
            refs[parts[1]] = parts[0]
    for candidate in (f"refs/tags/{ref}^{{}}", f"refs/heads/{ref}", f"refs/tags/{ref}", ref):
        if candidate in refs:
            return refs[candidate]
    if refs:
        return next(iter(refs.values()))
    raise SourceNotFoundError(
        "Unable to resolve git ref on the remote.",
        hint="Ensure the repository and ref are valid and reachable.",
        context={"operation": "fetch_git", "repo": spec.location, "ref": ref},
    )


def _run_git(
    argv: list[str],
    *,
    spec: GitSource,
    runner: ProcessRunner,
    cwd: Path | None = None,
    cancel: CancelToken | None = None,
) -> str:
    command = ["git", "-c", "advice.detachedHead=false", *argv]
    try:
        completed = runner.run(command, cwd=cwd, cancel=cancel)
    except CommandCancelledError as exc:
        raise FetchInterruptedError(
            "Git fetch cancelled.",
            context={"operation": "fetch_git", "repo": spec.location},
        ) from exc
    except FileNotFoundError as exc:
        raise FetchError(
            "The `git` executable is not available.",
            hint="Install git and ensure it is on PATH.",
            context={"operation": "fetch_git"},
        ) from exc
    if not completed.ok:
        raise _classify_failure(completed, spec=spec)
    return completed.stdout.strip()


def _classify_failure(completed: CommandResult, *, spec: GitSource) -> FetchError:
    stderr = completed.stderr.strip()
    context = {
        "operation": "fetch_git",
        "repo": spec.location,
        "ref": spec.reference or "",
        "argv": " ".join(completed.argv),
        "returncode": str(completed.returncode),
        "stderr": stderr[:2000],
    }
    lowered = stderr.lower()
    if any(marker in lowered for marker in NOT_FOUND_MARKERS):
        return SourceNotFoundError(
            "Git repository or reference does not exist.",
            hint="Check the repository location and the branch, tag or commit name.",
            context=context,
        )
    return NetworkFailureError(
        "Git command failed.",
        hint="Retry the build once the repository is reachable.",
        context=context,
    )


__all__ = ["clone_git", "resolve_remote"]
