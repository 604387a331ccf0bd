from __future__ import annotations

import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field

from ..errors import Cancelled, ExporterError, TimedOut


class CancelToken:
    """Cancellation and deadline token shared between a request and its run.

    The token fires once, either through `cancel()` or when its deadline
    passes, and remembers which of the two happened first.

    Example:
        ```python
        token = CancelToken.with_timeout(5)
        if token.done():
            raise token.error()
        ```
    """

    def __init__(self, deadline: float | None = None) -> None:
        """Create a token with an optional absolute `time.monotonic()` deadline.

        Example:
            ```python
            token = CancelToken(deadline=time.monotonic() + 1.5)
            ```
        """
        self._deadline = deadline
        self._lock = threading.Lock()
        self._event = threading.Event()
        self._error: Cancelled | None = None

    @classmethod
    def with_timeout(cls, seconds: float) -> "CancelToken":
        """Create a token that times out `seconds` from now.

        Example:
            ```python
            token = CancelToken.with_timeout(0.5)
            ```
        """
        return cls(deadline=time.monotonic() + seconds)

    @property
    def deadline(self) -> float | None:
        """Return the absolute monotonic deadline, if any.

        Example:
            ```python
            print(CancelToken().deadline)  # None
            ```
        """
        return self._deadline

    def cancel(self) -> None:
        """Fire the token as cancelled unless it already fired.

        Example:
            ```python
            token.cancel()
            assert isinstance(token.error(), Cancelled)
            ```
        """
        self._fire(Cancelled("execution cancelled"))

    def error(self) -> Cancelled | None:
        """Return why the token fired, or None while it is still live.

        Example:
            ```python
            err = token.error()
            timed_out = isinstance(err, TimedOut)
            ```
        """
        if not self._event.is_set() and self._deadline is not None:
            if time.monotonic() >= self._deadline:
                self._fire(TimedOut("deadline exceeded"))
        return self._error

    def done(self) -> bool:
        """Return True once the token has fired.

        Example:
            ```python
            while not token.done():
                ...
            ```
        """
        return self.error() is not None

    def remaining(self) -> float | None:
        """Return seconds left until the deadline, or None without one.

        Example:
            ```python
            left = token.remaining()
            ```
        """
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def wait(self, timeout: float | None = None) -> bool:
        """Block up to `timeout` seconds for the token to fire.

        Example:
            ```python
            fired = token.wait(0.05)
            ```
        """
        left = self.remaining()
        if left is not None and (timeout is None or left < timeout):
            timeout = left
        self._event.wait(timeout)
        return self.done()

    def _fire(self, error: Cancelled) -> None:
        """Record the first cause and release waiters.

        Example:
            ```python
            token._fire(Cancelled("stop"))
            ```
        """
        with self._lock:
            if self._error is None:
                self._error = error
                self._event.set()


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Captured stdout of one script run and its error classification.

    Example:
        ```python
        res = ExecutionResult(output="hello\\n")
        assert res.ok
        ```
    """

    output: str = ""
    error: ExporterError | None = None

    @property
    def ok(self) -> bool:
        """Return True when the run succeeded.

        Example:
            ```python
            ExecutionResult(output="x").ok  # True
            ```
        """
        return self.error is None

    @property
    def timed_out(self) -> bool:
        """Return True when the run was killed by its deadline.

        Example:
            ```python
            ExecutionResult(error=TimedOut("deadline exceeded")).timed_out  # True
            ```
        """
        return isinstance(self.error, TimedOut)

    @property
    def cancelled(self) -> bool:
        """Return True when the run was cancelled or timed out.

        Example:
            ```python
            ExecutionResult(error=Cancelled("execution cancelled")).cancelled  # True
            ```
        """
        return isinstance(self.error, Cancelled)


@dataclass(slots=True)
class ExecutionRequest:
    """One request to run a script, with its token and single-use result slot.

    Example:
        ```python
        req = ExecutionRequest(script="probe.sh", token=CancelToken.with_timeout(10))
        result = req.result.result()
        ```
    """

    script: str
    token: CancelToken
    result: Future[ExecutionResult] = field(default_factory=Future)
