from __future__ import annotations


class ExporterError(Exception):
    """Base class for every error the exporter reports about a script run.

    Example:
        ```python
        try:
            raise ExporterError("boom")
        except ExporterError as exc:
            print(exc)
        ```
    """


class InvalidScript(ExporterError):
    """Script identifier is empty or resolves outside the script directory."""


class AdmissionRejected(ExporterError):
    """Per-script concurrency ceiling reached; no process was started."""


class ExecutionFailed(ExporterError):
    """Script exited nonzero, died by signal, wrote to stderr or failed to start."""


class Cancelled(ExporterError):
    """The run was cancelled before the script finished."""


class TimedOut(Cancelled):
    """The run's deadline expired before the script finished."""


class ParseError(ExporterError):
    """Script output could not be interpreted as metrics.

    Example:
        ```python
        err = ParseError("bad value: x", line=3)
        assert err.line == 3
        ```
    """

    def __init__(self, message: str, *, line: int | None = None) -> None:
        """Store the message and the optional 1-based offending line number.

        Example:
            ```python
            ParseError("bad line: a.b", line=1)
            ```
        """
        super().__init__(message)
        self.line = line


class ServeError(ExporterError):
    """Rendering the exposition response failed."""
