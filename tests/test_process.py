import os
import threading
import time
from pathlib import Path

import pytest

from qpkg.errors import CommandCancelledError
from qpkg.process import CancelToken, SubprocessRunner


def test_runner_captures_output_and_exit_status(tmp_path: Path) -> None:
    result = SubprocessRunner().run(
        ["/bin/sh", "-c", "echo out; echo err >&2; pwd; exit 3"],
        cwd=tmp_path,
    )

    assert result.returncode == 3
    assert result.ok is False
    assert result.stdout.splitlines() == ["out", str(tmp_path)]
    assert result.stderr.strip() == "err"


def test_runner_passes_environment() -> None:
    env = {**os.environ, "QPKG_TEST_VALUE": "forty-two"}

    result = SubprocessRunner().run(["/bin/sh", "-c", 'printf %s "$QPKG_TEST_VALUE"'], env=env)

    assert result.ok
    assert result.stdout == "forty-two"


def test_runner_does_not_start_when_already_cancelled() -> None:
    cancel = CancelToken()
    cancel.cancel()

    with pytest.raises(CommandCancelledError) as excinfo:
        SubprocessRunner().run(["/bin/sh", "-c", "exit 0"], cancel=cancel)

    assert excinfo.value.code == "E_CANCELLED"


def test_cancellation_terminates_running_command() -> None:
    cancel = CancelToken()
    timer = threading.Timer(0.3, cancel.cancel)
    runner = SubprocessRunner(poll_interval=0.05, terminate_grace=2.0)

    started = time.monotonic()
    timer.start()
    try:
        with pytest.raises(CommandCancelledError):
            runner.run(["sleep", "30"], cancel=cancel)
    finally:
        timer.cancel()

    assert time.monotonic() - started < 10


def test_cancellation_reaches_background_grandchildren(tmp_path: Path) -> None:
    pid_file = tmp_path / "grandchild.pid"
    cancel = CancelToken()
    runner = SubprocessRunner(poll_interval=0.05, terminate_grace=2.0)

    def cancel_once_started() -> None:
        deadline = time.monotonic() + 10
        while not pid_file.exists() and time.monotonic() < deadline:
            time.sleep(0.02)
        time.sleep(0.2)
        cancel.cancel()

    watcher = threading.Thread(target=cancel_once_started)
    watcher.start()
    try:
        with pytest.raises(CommandCancelledError):
            runner.run(["/bin/sh", "-c", f"sleep 30 & echo $! > {pid_file}; wait"], cancel=cancel)
    finally:
        cancel.cancel()
        watcher.join()

    grandchild = int(pid_file.read_text(encoding="utf-8").strip())
    assert _wait_until_gone(grandchild, timeout=5.0)


def test_cancel_token_wait_reports_state() -> None:
    cancel = CancelToken()

    assert cancel.wait(0.01) is False
    cancel.cancel()
    assert cancel.wait(0.01) is True
    assert cancel.cancelled is True


def _wait_until_gone(pid: int, *, timeout: float) -> bool:
    # An orphan nobody reaps lingers as a zombie; that still counts as gone.
    stat = Path(f"/proc/{pid}/stat")
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            state = stat.read_text(encoding="utf-8").rsplit(")", 1)[1].split()[0]
        except (FileNotFoundError, ProcessLookupError):
            return True
        if state in ("Z", "X"):
            return True
        time.sleep(0.05)
    return False
