"""Error taxonomy for the stage kernel.

Every error carries enough structure (stage id, failure kind, evidence) for a
caller to report it without parsing the message. Exit codes live here so the
command surface and the kernel agree on them.
"""

from __future__ import annotations

from enum import IntEnum
from typing import Any, Iterable


class ExitCode(IntEnum):
    OK = 0
    UNEXPECTED = 1
    USAGE = 2
    VERIFICATION_FAILED = 3
    ACTION_FAILED = 4
    DEPENDENCY_CYCLE = 5
    MISSING_CONFIG_KEY = 6
    IRREVERSIBLE_STAGE = 7
    DRIFT_DETECTED = 8
    REGISTRATION_ERROR = 9
    CANCELLED = 10
    PRECONDITION_FAILED = 11


class StageKitError(Exception):
    exit_code: ExitCode = ExitCode.UNEXPECTED


# Registration -------------------------------------------------------------


class RegistrationError(StageKitError, ValueError):
    """Invalid stage catalog. Fatal at load, never retried."""

    exit_code = ExitCode.REGISTRATION_ERROR


class DuplicateStageId(RegistrationError):
    def __init__(self, stage_id: str):
        super().__init__(f"Duplicate stage id: {stage_id}")
        self.stage_id = stage_id


class InvalidDependency(RegistrationError):
    def __init__(self, stage_id: str, message: str):
        super().__init__(f"Invalid dependency for stage {stage_id}: {message}")
        self.stage_id = stage_id


class DependencyCycle(InvalidDependency):
    exit_code = ExitCode.DEPENDENCY_CYCLE

    def __init__(self, cycle: Iterable[str]):
        self.cycle = tuple(cycle)
        super().__init__(self.cycle[0], "cycle " + " -> ".join(self.cycle))


class MutatingCheckRejected(RegistrationError):
    def __init__(self, stage_id: str, check_id: str):
        super().__init__(
            f"Stage {stage_id} declares mutating verification check {check_id}; "
            "checks must be read-only"
        )
        self.stage_id = stage_id
        self.check_id = check_id


class RegistryFrozen(RegistrationError):
    def __init__(self, stage_id: str):
        super().__init__(f"Cannot change stage {stage_id} while a run is in progress")
        self.stage_id = stage_id


# Configuration ------------------------------------------------------------


class MissingConfigKey(StageKitError, KeyError):
    exit_code = ExitCode.MISSING_CONFIG_KEY

    def __init__(self, keys: Iterable[str], *, stage_ids: Iterable[str] = ()):
        self.keys = tuple(sorted(set(keys)))
        self.stage_ids = tuple(stage_ids)
        message = "Missing config key(s): " + ", ".join(self.keys)
        if self.stage_ids:
            message += f" (required by: {', '.join(self.stage_ids)})"
        super().__init__(message)

    def __str__(self) -> str:
        # KeyError.__str__ would repr() the message.
        return str(self.args[0])


class DriftDetected(StageKitError):
    exit_code = ExitCode.DRIFT_DETECTED

    def __init__(self, stage_id: str, message: str, *, recorded_revision: int, current_revision: int):
        super().__init__(
            f"Drift detected for stage {stage_id}: {message} "
            f"(recorded revision={recorded_revision}, current revision={current_revision})"
        )
        self.stage_id = stage_id
        self.recorded_revision = recorded_revision
        self.current_revision = current_revision


class UnmetDependency(StageKitError):
    exit_code = ExitCode.PRECONDITION_FAILED

    def __init__(self, stage_id: str, missing: Iterable[str]):
        self.stage_id = stage_id
        self.missing = tuple(sorted(missing))
        super().__init__(
            f"Stage {stage_id} depends on stage(s) not yet Verified: {', '.join(self.missing)}"
        )


# Run failures -------------------------------------------------------------


class StageFailure(StageKitError):
    """A stage failed during a run; the run stopped at this stage."""

    kind: str = "StageFailed"

    def __init__(self, stage_id: str, message: str, *, evidence: str = "", record: Any = None):
        super().__init__(f"Stage {stage_id} failed ({self.kind}): {message}")
        self.stage_id = stage_id
        self.evidence = evidence
        self.record = record


class ActionError(StageFailure):
    exit_code = ExitCode.ACTION_FAILED
    kind = "ActionFailed"


class ActionTimeout(ActionError):
    kind = "Timeout"


class VerificationError(StageFailure):
    exit_code = ExitCode.VERIFICATION_FAILED
    kind = "VerificationFailed"

    def __init__(
        self,
        stage_id: str,
        message: str,
        *,
        check_id: str | None = None,
        evidence: str = "",
        record: Any = None,
    ):
        super().__init__(stage_id, message, evidence=evidence, record=record)
        self.check_id = check_id


class RunCancelled(StageFailure):
    exit_code = ExitCode.CANCELLED
    kind = "Cancelled"


# Rollback -----------------------------------------------------------------


class IrreversibleStage(StageKitError):
    exit_code = ExitCode.IRREVERSIBLE_STAGE

    def __init__(self, stage_ids: Iterable[str]):
        self.stage_ids = tuple(stage_ids)
        super().__init__(
            f"Refusing to roll back irreversible stage(s): {', '.join(self.stage_ids)} "
            "(pass the irreversible override to force)"
        )


class RollbackNotAllowed(StageKitError):
    exit_code = ExitCode.PRECONDITION_FAILED

    def __init__(self, stage_id: str, message: str):
        super().__init__(f"Cannot roll back stage {stage_id}: {message}")
        self.stage_id = stage_id


class RollbackFailed(ActionError):
    kind = "RollbackFailed"


# Diagnostics --------------------------------------------------------------


class DiagnosticError(StageKitError):
    exit_code = ExitCode.PRECONDITION_FAILED


class DiagnosticStateError(DiagnosticError):
    """Operation not valid in the session's current state."""


class DiagnosticGuardError(DiagnosticError):
    """Stage definition change attempted without a confirmed root cause."""

    def __init__(self, stage_id: str, message: str):
        super().__init__(f"Stage {stage_id} cannot be changed: {message}")
        self.stage_id = stage_id


class EvidenceCommandRejected(DiagnosticError):
    def __init__(self, command: str, reason: str):
        super().__init__(f"Evidence command rejected ({reason}): {command}")
        self.command = command
        self.reason = reason
