from .dispatcher import CommandRunner, Dispatcher
from .process import run_command
from .types import CancelToken, ExecutionRequest, ExecutionResult

__all__ = [
    "CancelToken",
    "CommandRunner",
    "Dispatcher",
    "ExecutionRequest",
    "ExecutionResult",
    "run_command",
]
