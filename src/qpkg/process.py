"""External process execution with cooperative cancellation.

Every git invocation and build step goes through a :class:`ProcessRunner`
so the executor can be driven by a fake runner in tests.
"""

from __future__ import annotations

import os
import signal
import subprocess
import tempfile
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from qpkg.errors import CommandCancelledError

DEFAULT_POLL_INTERVAL = 0.1
DEFAULT_TERMINATE_GRACE = 5.0


class CancelToken:
    """Thread-safe cancellation flag shared by the executor and its workers."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    def raise_if_cancelled(self, operation: str) -> None:
        if self._event.is_set():
            raise CommandCancelledError(context={"operation": operation})


@dataclass(frozen=True, slots=True)
class CommandResult:
    argv: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class ProcessRunner(Protocol):
    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        cancel: CancelToken | None = None,
    ) -> CommandResult:
        """Run ``argv`` to completion and return its exit status and output."""


@dataclass(slots=True)
class SubprocessRunner:
    """Runs commands with :mod:`subprocess`, polling for cancellation."""

    poll_interval: float = DEFAULT_POLL_INTERVAL
    terminate_grace: float = DEFAULT_TERMINATE_GRACE

    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        cancel: CancelToken | None = None,
    ) -> CommandResult:
        command = tuple(argv)
        if cancel is not None:
            cancel.raise_if_cancelled(command[0] if command else "run")

        # Output goes to temporary files so a chatty child can never block on a full pipe.
        with tempfile.TemporaryFile() as out_f, tempfile.TemporaryFile() as err_f:
            proc = subprocess.Popen(
                list(command),
                cwd=str(cwd) if cwd is not None else None,
                env=dict(env) if env is not None else None,
                stdin=subprocess.DEVNULL,
                stdout=out_f,
                stderr=err_f,
                # Own process group, so cancellation reaches grandchildren too.
                start_new_session=True,
            )
            while True:
                try:
                    returncode = proc.wait(timeout=self.poll_interval)
                    break
                except subprocess.TimeoutExpired:
                    if cancel is not None and cancel.cancelled:
                        self._terminate(proc)
                        raise CommandCancelledError(
                            "Command cancelled.",
                            context={"argv": " ".join(command)},
                        ) from None

            out_f.seek(0)
            err_f.seek(0)
            stdout = out_f.read().decode("utf-8", errors="replace")
            stderr = err_f.read().decode("utf-8", errors="replace")

        return CommandResult(argv=command, returncode=returncode, stdout=stdout, stderr=stderr)

    def _terminate(self, proc: subprocess.Popen[bytes]) -> None:
        _signal_group(proc.pid, signal.SIGTERM)
        try:
            proc.wait(timeout=self.terminate_grace)
        except subprocess.TimeoutExpired:
            pass
        # Descendants that ignored SIGTERM or outlived the leader.
        _signal_group(proc.pid, signal.SIGKILL)
        proc.wait()


def _signal_group(pgid: int, signum: signal.Signals) -> None:
    try:
        os.killpg(pgid, signum)
    except ProcessLookupError:
        pass


__all__ = [
    "CancelToken",
    "CommandResult",
    "ProcessRunner",
    "SubprocessRunner",
]
