from __future__ import annotations

import logging
import os
import queue
import signal
import subprocess
import threading
from pathlib import Path
from typing import IO

from ..errors import Cancelled, ExecutionFailed
from .types import CancelToken, ExecutionResult

logger = logging.getLogger(__name__)

_POLL_INTERVAL_SECONDS = 0.05
_READ_CHUNK_BYTES = 64 * 1024


def _drain_stream(stream: IO[bytes], chunks: list[bytes], done: queue.Queue[str], name: str) -> None:
    """Copy one child stream into `chunks` and post `name` on `done` at EOF.

    The stream is closed by this thread, so a grandchild holding the pipe open
    only keeps this daemon thread alive, never the caller.

    Example:
        ```python
        threading.Thread(target=_drain_stream, args=(proc.stdout, out, done, "stdout"), daemon=True).start()
        ```
    """
    try:
        while True:
            chunk = stream.read1(_READ_CHUNK_BYTES)  # type: ignore[attr-defined]
            if not chunk:
                break
            chunks.append(chunk)
    except (OSError, ValueError):
        pass
    finally:
        try:
            stream.close()
        except OSError:
            pass
        done.put(name)


def _poll_timeout(token: CancelToken) -> float:
    """Return how long to block before checking the token again.

    Example:
        ```python
        timeout = _poll_timeout(CancelToken.with_timeout(0.01))  # <= 0.01
        ```
    """
    remaining = token.remaining()
    if remaining is None:
        return _POLL_INTERVAL_SECONDS
    return min(_POLL_INTERVAL_SECONDS, remaining)


def _kill(proc: subprocess.Popen[bytes], process_group: bool) -> None:
    """Kill the direct child, or its whole process group when requested.

    Example:
        ```python
        _kill(proc, process_group=False)
        ```
    """
    try:
        if process_group:
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        pass


def _exit_description(returncode: int) -> str:
    """Describe a nonzero return code the way a shell would.

    Example:
        ```python
        _exit_description(-9)  # "signal: SIGKILL"
        ```
    """
    if returncode < 0:
        try:
            return f"signal: {signal.Signals(-returncode).name}"
        except ValueError:
            return f"signal: {-returncode}"
    return f"exit status {returncode}"


def _decode(chunks: list[bytes]) -> str:
    """Join captured chunks into text, replacing invalid UTF-8.

    Example:
        ```python
        _decode([b"hel", b"lo\\n"])  # "hello\\n"
        ```
    """
    return b"".join(chunks).decode("utf-8", errors="replace")


def run_command(
    token: CancelToken,
    script: str | Path,
    *args: str,
    kill_process_group: bool = False,
) -> ExecutionResult:
    """Run `script` with `args` until it finishes or `token` fires.

    stdout and stderr are pumped by two reader threads into separate buffers.
    The caller waits for both streams to close or for the token, whichever
    comes first. A fired token always wins the classification and returns
    whatever stdout was captured so far. Otherwise a nonzero exit, a signal,
    or any stderr output on a zero exit is an `ExecutionFailed`.

    Only the direct child is killed on cancellation unless
    `kill_process_group` is set. Grandchildren of a shell script may then
    outlive the run and hold the pipes open. That delays cleanup of the
    reader threads but not the return of this call.

    Example:
        ```python
        result = run_command(CancelToken.with_timeout(5), "echo", "hello")
        assert result.output == "hello\\n"
        ```
    """
    argv = [str(script), *args]
    try:
        proc = subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=kill_process_group,
        )
    except (OSError, ValueError) as exc:
        return ExecutionResult(error=ExecutionFailed(f"failed to start child: {exc}"))

    stdout_chunks: list[bytes] = []
    stderr_chunks: list[bytes] = []
    done: queue.Queue[str] = queue.Queue()
    for stream, chunks, name in (
        (proc.stdout, stdout_chunks, "stdout"),
        (proc.stderr, stderr_chunks, "stderr"),
    ):
        threading.Thread(
            target=_drain_stream,
            args=(stream, chunks, done, name),
            name=f"drain-{name}-{proc.pid}",
            daemon=True,
        ).start()

    cancelled: Cancelled | None = None
    closed = 0
    while closed < 2:
        cancelled = token.error()
        if cancelled is not None:
            break
        try:
            done.get(timeout=_poll_timeout(token))
        except queue.Empty:
            continue
        closed += 1

    if cancelled is not None:
        _kill(proc, kill_process_group)
    while True:
        try:
            proc.wait(timeout=_POLL_INTERVAL_SECONDS if cancelled is not None else _poll_timeout(token))
            break
        except subprocess.TimeoutExpired:
            if cancelled is None:
                cancelled = token.error()
                if cancelled is not None:
                    _kill(proc, kill_process_group)

    output = _decode(stdout_chunks)
    if cancelled is not None:
        logger.debug("pid %d for %s stopped early: %s", proc.pid, argv[0], cancelled)
        return ExecutionResult(output=output, error=cancelled)
    if proc.returncode != 0:
        return ExecutionResult(output=output, error=ExecutionFailed(_exit_description(proc.returncode)))
    stderr = _decode(stderr_chunks)
    if stderr:
        return ExecutionResult(output=output, error=ExecutionFailed(f"got stderr output: {stderr}"))
    return ExecutionResult(output=output)
