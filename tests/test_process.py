from __future__ import annotations

import shutil
import stat
import subprocess
import threading
import time
from pathlib import Path

import pytest

from script_exporter import CancelToken, Cancelled, ExecutionFailed, ExecutionResult, TimedOut, run_command

needs_bash = pytest.mark.skipif(shutil.which("bash") is None, reason="bash not installed")


def _write_script(directory: Path, name: str, body: str) -> Path:
    path = directory / name
    path.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


def run_command_unsafe(token: CancelToken, script: str, *args: str) -> ExecutionResult:
    """Simplified runner that kills the child on cancel, then reads both pipes to EOF.

    Shows why `run_command` pumps the streams itself: a grandchild that keeps
    the pipes open holds this variant hostage until it exits.
    """
    proc = subprocess.Popen([script, *args], stdout=subprocess.PIPE, stderr=subprocess.PIPE)

    def _watch() -> None:
        token.wait()
        if proc.poll() is None:
            proc.kill()

    threading.Thread(target=_watch, daemon=True).start()
    out, _ = proc.communicate()
    if proc.returncode != 0:
        return ExecutionResult(output=out.decode(), error=ExecutionFailed(f"exit {proc.returncode}"))
    return ExecutionResult(output=out.decode())


def test_zero_exit_without_output() -> None:
    result = run_command(CancelToken(), "true")
    assert result.ok is True
    assert result.output == ""


def test_nonzero_exit_is_execution_failure() -> None:
    result = run_command(CancelToken(), "false")
    assert isinstance(result.error, ExecutionFailed)
    assert result.output == ""


def test_stdout_is_captured() -> None:
    result = run_command(CancelToken(), "echo", "test")
    assert result.ok is True
    assert result.output == "test\n"


def test_stderr_on_zero_exit_is_execution_failure() -> None:
    result = run_command(CancelToken(), "sh", "-c", "echo err 1>&2")
    assert isinstance(result.error, ExecutionFailed)
    assert "got stderr output: err" in str(result.error)


def test_nonzero_exit_fails_even_with_stdout() -> None:
    result = run_command(CancelToken(), "sh", "-c", "echo partial; exit 3")
    assert isinstance(result.error, ExecutionFailed)
    assert "exit status 3" in str(result.error)
    assert result.output == "partial\n"


def test_signal_termination_is_execution_failure() -> None:
    result = run_command(CancelToken(), "sh", "-c", "kill -TERM $$")
    assert isinstance(result.error, ExecutionFailed)
    assert "signal: SIGTERM" in str(result.error)


def test_missing_executable_fails_to_start(tmp_path: Path) -> None:
    result = run_command(CancelToken(), str(tmp_path / "does-not-exist"))
    assert isinstance(result.error, ExecutionFailed)
    assert "failed to start child" in str(result.error)


def test_unspawnable_path_is_an_execution_failure(tmp_path: Path) -> None:
    result = run_command(CancelToken(), str(tmp_path / "a\x00b"))
    assert isinstance(result.error, ExecutionFailed)
    assert "embedded null byte" in str(result.error)


def test_hello_script_and_failing_script(tmp_path: Path) -> None:
    hello = _write_script(tmp_path, "hello.sh", "echo hello\n")
    failing = _write_script(tmp_path, "fail.sh", "exit 1\n")

    ok = run_command(CancelToken.with_timeout(10), hello)
    assert ok.output == "hello\n"
    assert ok.error is None

    bad = run_command(CancelToken.with_timeout(10), failing)
    assert bad.output == ""
    assert isinstance(bad.error, ExecutionFailed)


def test_large_output_does_not_deadlock() -> None:
    result = run_command(CancelToken.with_timeout(10), "sh", "-c", "head -c 1000000 /dev/zero | tr '\\0' 'x'")
    assert result.ok is True
    assert len(result.output) == 1_000_000


@needs_bash
def test_deadline_kills_shell_script_promptly(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    result = run_command(CancelToken(), "bash", "-c", "touch 1; sleep 1; touch 2")
    assert result.ok is True
    (tmp_path / "1").unlink()
    (tmp_path / "2").unlink()

    start = time.monotonic()
    result = run_command(CancelToken.with_timeout(0.5), "bash", "-c", "touch 1; sleep 5; touch 2")
    elapsed = time.monotonic() - start

    assert isinstance(result.error, TimedOut)
    assert result.timed_out is True
    assert (tmp_path / "1").exists()
    assert not (tmp_path / "2").exists()
    assert elapsed < 1.5


def test_explicit_cancel_is_not_a_timeout() -> None:
    token = CancelToken.with_timeout(30)
    threading.Timer(0.2, token.cancel).start()

    result = run_command(token, "sleep", "5")

    assert isinstance(result.error, Cancelled)
    assert not isinstance(result.error, TimedOut)
    assert result.cancelled is True
    assert result.timed_out is False


def test_cancel_returns_partial_stdout() -> None:
    result = run_command(CancelToken.with_timeout(0.5), "sh", "-c", "echo first; sleep 5; echo second")
    assert isinstance(result.error, TimedOut)
    assert result.output == "first\n"


def test_cancelled_before_start_never_succeeds() -> None:
    token = CancelToken()
    token.cancel()
    result = run_command(token, "echo", "hello")
    assert isinstance(result.error, Cancelled)


@needs_bash
def test_background_job_outlives_direct_child_kill(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    start = time.monotonic()
    result = run_command(CancelToken.with_timeout(0.5), "bash", "-c", "(sleep 1; touch 2) & wait")
    elapsed = time.monotonic() - start

    assert isinstance(result.error, TimedOut)
    assert elapsed < 1.0
    time.sleep(1.5)
    assert (tmp_path / "2").exists()


@needs_bash
def test_kill_process_group_stops_background_jobs(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    start = time.monotonic()
    result = run_command(
        CancelToken.with_timeout(0.5),
        "bash",
        "-c",
        "(sleep 1; touch 2) & wait",
        kill_process_group=True,
    )
    elapsed = time.monotonic() - start

    assert isinstance(result.error, TimedOut)
    assert elapsed < 1.0
    time.sleep(1.5)
    assert not (tmp_path / "2").exists()


@needs_bash
def test_unsafe_variant_waits_for_grandchildren(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    # Killing bash leaves `sleep` holding the pipes, so reading them to EOF
    # only returns once the sleep is over. Not every shell behaves this way.
    monkeypatch.chdir(tmp_path)
    start = time.monotonic()
    result = run_command_unsafe(CancelToken.with_timeout(0.5), "bash", "-c", "touch 1; sleep 2; touch 2")
    elapsed = time.monotonic() - start

    assert result.ok is False
    assert (tmp_path / "1").exists()
    assert not (tmp_path / "2").exists()
    assert elapsed >= 1.5
