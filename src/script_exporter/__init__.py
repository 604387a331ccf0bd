from .errors import (
    AdmissionRejected,
    Cancelled,
    ExecutionFailed,
    ExporterError,
    InvalidScript,
    ParseError,
    ServeError,
    TimedOut,
)
from .execution import CancelToken, Dispatcher, ExecutionRequest, ExecutionResult, run_command
from .metrics import ExporterMetrics
from .server import ExporterServer
from .settings import ExporterSettings
from .translate import TranslatedMetric, translate_opentsdb

__all__ = [
    "AdmissionRejected",
    "CancelToken",
    "Cancelled",
    "Dispatcher",
    "ExecutionFailed",
    "ExecutionRequest",
    "ExecutionResult",
    "ExporterError",
    "ExporterMetrics",
    "ExporterServer",
    "ExporterSettings",
    "InvalidScript",
    "ParseError",
    "ServeError",
    "TimedOut",
    "TranslatedMetric",
    "run_command",
    "translate_opentsdb",
]
