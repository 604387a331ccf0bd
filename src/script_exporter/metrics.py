from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Gauge

SCRIPT_LABEL = "script_name"


class ExporterMetrics:
    """Operational counters of the exporter, bound to one explicit registry.

    Built once at startup and handed to the dispatcher and the HTTP layer.
    Nothing is registered on the process-wide default registry.

    Example:
        ```python
        metrics = ExporterMetrics()
        metrics.runs.labels(script_name="probe.sh").inc()
        ```
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        """Create every counter and gauge on `registry` (a fresh one by default).

        Example:
            ```python
            metrics = ExporterMetrics(CollectorRegistry())
            ```
        """
        self.registry = registry if registry is not None else CollectorRegistry()
        self.duration = Counter(
            "script_duration_seconds_total",
            "time elapsed executing script",
            [SCRIPT_LABEL],
            registry=self.registry,
        )
        self.concurrency_exceeds = Counter(
            "script_concurrency_exceeds_total",
            "number of times script was not executed because there were already too many executions ongoing",
            [SCRIPT_LABEL],
            registry=self.registry,
        )
        self.runs = Counter(
            "script_runs_total",
            "number of times script execution attempted",
            [SCRIPT_LABEL],
            registry=self.registry,
        )
        self.errors = Counter(
            "script_errors_total",
            "number of script executions that ended with an error",
            [SCRIPT_LABEL],
            registry=self.registry,
        )
        self.parse_errors = Counter(
            "script_parse_errors_total",
            "number of script executions that ended without error but produced unparseable output",
            [SCRIPT_LABEL],
            registry=self.registry,
        )
        self.timeouts = Counter(
            "script_timeouts_total",
            "number of script executions that were killed due to timeout",
            [SCRIPT_LABEL],
            registry=self.registry,
        )
        self.running = Gauge(
            "script_running",
            "number of executions ongoing",
            [SCRIPT_LABEL],
            registry=self.registry,
        )

    def sample(self, name: str, script: str) -> float:
        """Return the current value of one labeled sample, 0.0 when absent.

        Example:
            ```python
            runs = metrics.sample("script_runs_total", "probe.sh")
            ```
        """
        value = self.registry.get_sample_value(name, {SCRIPT_LABEL: script})
        return 0.0 if value is None else value
