from __future__ import annotations

import logging
import os
import queue
import threading
import time
from concurrent.futures import InvalidStateError
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from ..errors import AdmissionRejected, ExporterError, InvalidScript, TimedOut
from .process import run_command
from .types import CancelToken, ExecutionRequest, ExecutionResult

if TYPE_CHECKING:
    from ..metrics import ExporterMetrics

logger = logging.getLogger(__name__)


class CommandRunner(Protocol):
    def __call__(
        self,
        token: CancelToken,
        script: str | Path,
        *args: str,
        kill_process_group: bool = False,
    ) -> ExecutionResult:
        """Run one script under `token` and classify the outcome.

        Example:
            ```python
            result = runner(CancelToken.with_timeout(5), "/scripts/probe.sh")
            ```
        """
        ...


class Dispatcher:
    """Admit script runs one at a time and execute them in parallel.

    A single admission loop takes requests off a rendezvous queue in arrival
    order. It checks the per-script in-flight count, rejects the request when
    the ceiling is reached, and otherwise hands it to a fresh execution
    thread. Only the count bookkeeping is serialized, never the run itself.

    Example:
        ```python
        dispatcher = Dispatcher("/opt/scripts", metrics=ExporterMetrics(), max_per_script=2)
        dispatcher.start()
        result = dispatcher.submit("probe.sh", CancelToken.with_timeout(30))
        dispatcher.close()
        ```
    """

    def __init__(
        self,
        script_path: str | Path,
        *,
        metrics: ExporterMetrics,
        max_per_script: int = 1,
        runner: CommandRunner = run_command,
        kill_process_group: bool = False,
    ) -> None:
        """Initialize an idle dispatcher with an empty concurrency table.

        Example:
            ```python
            dispatcher = Dispatcher(".", metrics=ExporterMetrics())
            ```
        """
        if max_per_script < 1:
            raise ValueError("max_per_script must be >= 1")
        self._script_path = Path(script_path or ".").resolve()
        self._metrics = metrics
        self._max_per_script = max_per_script
        self._runner = runner
        self._kill_process_group = kill_process_group
        self._requests: queue.Queue[ExecutionRequest | None] = queue.Queue(maxsize=1)
        self._lock = threading.Lock()
        self._in_flight: dict[str, int] = {}
        self._loop_thread: threading.Thread | None = None

    @property
    def script_path(self) -> Path:
        """Return the resolved directory scripts are looked up in.

        Example:
            ```python
            print(dispatcher.script_path)
            ```
        """
        return self._script_path

    def resolve(self, script: str) -> Path:
        """Map a script identifier to a path inside the script directory.

        Example:
            ```python
            path = dispatcher.resolve("probes/disk.sh")
            ```
        """
        name = script.strip("/")
        if not name:
            raise InvalidScript("empty script name")
        if "\x00" in name:
            raise InvalidScript(f"script name {script!r} contains a NUL byte")
        candidate = Path(os.path.normpath(self._script_path / name))
        if self._script_path not in candidate.parents:
            raise InvalidScript(f"script '{script}' is outside {self._script_path}")
        return candidate

    def in_flight(self, script: str) -> int:
        """Return the number of running executions of `script`.

        Example:
            ```python
            busy = dispatcher.in_flight("probe.sh") > 0
            ```
        """
        with self._lock:
            return self._in_flight.get(script, 0)

    def start(self) -> None:
        """Run the admission loop on a daemon thread.

        Example:
            ```python
            dispatcher.start()
            ```
        """
        if self._loop_thread is not None:
            return
        self._loop_thread = threading.Thread(
            target=self.serve_forever,
            name="script-dispatcher",
            daemon=True,
        )
        self._loop_thread.start()

    def close(self, timeout: float | None = 5.0) -> None:
        """Stop the admission loop; runs already admitted finish on their own.

        Example:
            ```python
            dispatcher.close()
            ```
        """
        if self._loop_thread is None:
            return
        self._requests.put(None)
        self._loop_thread.join(timeout)
        self._loop_thread = None

    def submit(self, script: str, token: CancelToken) -> ExecutionResult:
        """Queue one run of `script` and block until its single result arrives.

        Example:
            ```python
            result = dispatcher.submit("probe.sh", CancelToken.with_timeout(60))
            ```
        """
        self.resolve(script)
        request = ExecutionRequest(script=script, token=token)
        self._requests.put(request)
        return request.result.result()

    def serve_forever(self) -> None:
        """Admit queued requests until `close()` posts the stop sentinel.

        Example:
            ```python
            threading.Thread(target=dispatcher.serve_forever, daemon=True).start()
            ```
        """
        while True:
            request = self._requests.get()
            if request is None:
                return
            self._admit(request)

    def _admit(self, request: ExecutionRequest) -> None:
        """Reject `request` at the ceiling, else count it and start its run.

        Example:
            ```python
            dispatcher._admit(ExecutionRequest(script="probe.sh", token=CancelToken()))
            ```
        """
        script = request.script
        with self._lock:
            current = self._in_flight.get(script, 0)
            admitted = current < self._max_per_script
            if admitted:
                self._in_flight[script] = current + 1

        if not admitted:
            self._metrics.concurrency_exceeds.labels(script_name=script).inc()
            error = AdmissionRejected(
                f"can't spawn a new instance of script '{script}': already have {current} running"
            )
            logger.warning("%s", error)
            self._deliver(request, ExecutionResult(error=error))
            return

        self._metrics.running.labels(script_name=script).inc()
        threading.Thread(
            target=self._execute,
            args=(request,),
            name=f"script-run-{script}",
            daemon=True,
        ).start()

    def _execute(self, request: ExecutionRequest) -> None:
        """Run one admitted request, record metrics and deliver its result.

        Example:
            ```python
            dispatcher._execute(request)
            ```
        """
        script = request.script
        self._metrics.runs.labels(script_name=script).inc()
        start = time.monotonic()
        try:
            result = self._runner(
                request.token,
                self.resolve(script),
                kill_process_group=self._kill_process_group,
            )
        except ExporterError as exc:
            result = ExecutionResult(error=exc)
        except Exception as exc:
            request.result.set_exception(exc)
            raise
        finally:
            elapsed = time.monotonic() - start
            self._metrics.duration.labels(script_name=script).inc(elapsed)
            with self._lock:
                remaining = self._in_flight.get(script, 0) - 1
                if remaining > 0:
                    self._in_flight[script] = remaining
                else:
                    self._in_flight.pop(script, None)
            self._metrics.running.labels(script_name=script).dec()

        if result.error is not None:
            self._metrics.errors.labels(script_name=script).inc()
            if isinstance(result.error, TimedOut):
                self._metrics.timeouts.labels(script_name=script).inc()
        self._deliver(request, result)

    @staticmethod
    def _deliver(request: ExecutionRequest, result: ExecutionResult) -> None:
        """Write the request's result slot exactly once.

        Example:
            ```python
            Dispatcher._deliver(request, ExecutionResult(output=""))
            ```
        """
        try:
            request.result.set_result(result)
        except InvalidStateError:
            logger.error("result for script '%s' was already delivered", request.script)
            raise
