"""Reusable staged-deployment kernel (stage model, registry, engines, diagnostics).

This package is intentionally independent of `stack_provisioner.*`. Anything that
knows about shells, config files or the command line must live in the consuming
application.
"""

from stagekit.diagnostics import (
    DiagnosticBoard,
    DiagnosticSession,
    Inconclusive,
    RootCauseConfirmed,
    SessionState,
    default_command_policy,
)
from stagekit.engine import (
    CancelToken,
    DefaultStageRecorder,
    ExecutionEngine,
    NullStageRecorder,
    RunReport,
    StageRecorder,
)
from stagekit.env_store import EnvironmentStore, EnvSnapshot, SecretRef
from stagekit.errors import ExitCode, StageKitError
from stagekit.records import RunLog, RunRecord, RunStatus
from stagekit.rollback import RollbackManager, RollbackOutcome
from stagekit.stage_registry import StageRegistry
from stagekit.stage_types import CallableAction, Check, CheckOutcome, Stage, StageAction
from stagekit.verification import VerificationEngine, VerificationResult

__all__ = [
    "CallableAction",
    "CancelToken",
    "Check",
    "CheckOutcome",
    "DefaultStageRecorder",
    "DiagnosticBoard",
    "DiagnosticSession",
    "EnvSnapshot",
    "EnvironmentStore",
    "ExecutionEngine",
    "ExitCode",
    "Inconclusive",
    "NullStageRecorder",
    "RollbackManager",
    "RollbackOutcome",
    "RootCauseConfirmed",
    "RunLog",
    "RunRecord",
    "RunReport",
    "RunStatus",
    "SecretRef",
    "SessionState",
    "Stage",
    "StageAction",
    "StageKitError",
    "StageRecorder",
    "StageRegistry",
    "VerificationEngine",
    "VerificationResult",
    "default_command_policy",
]
