"""Execution engine primitives: ordered stage runs, recorder hooks, timeouts."""

from stagekit.engine.executor import ExecutionEngine, RunReport, StageOutcome, describe_failure
from stagekit.engine.recorder import DefaultStageRecorder, NullStageRecorder, StageRecorder
from stagekit.engine.timeouts import CallTimedOut, CancelToken, call_with_timeout

__all__ = [
    "CallTimedOut",
    "CancelToken",
    "DefaultStageRecorder",
    "ExecutionEngine",
    "NullStageRecorder",
    "RunReport",
    "StageOutcome",
    "StageRecorder",
    "call_with_timeout",
    "describe_failure",
]
