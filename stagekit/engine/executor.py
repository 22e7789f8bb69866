"""Execution engine: ordered, fast-failing application of registered stages.

This module is intentionally app-agnostic and must not import `stack_provisioner.*`.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Literal

from stagekit.diagnostics import DiagnosticBoard
from stagekit.engine.recorder import DefaultStageRecorder, StageRecorder
from stagekit.engine.timeouts import CallTimedOut, CancelToken, call_with_timeout
from stagekit.env_store import EnvironmentStore, EnvSnapshot
from stagekit.errors import (
    ActionError,
    ActionTimeout,
    DriftDetected,
    MissingConfigKey,
    RunCancelled,
    StageFailure,
    StageKitError,
    UnmetDependency,
    VerificationError,
)
from stagekit.records import (
    TAG_CANCELLED,
    TAG_INTERRUPTED,
    TAG_TIMEOUT,
    RunLog,
    RunRecord,
    RunStatus,
    new_run_id,
    render_evidence,
)
from stagekit.stage_registry import StageRegistry
from stagekit.stage_types import Stage
from stagekit.verification import VerificationEngine, VerificationResult

StageOutcomeKind = Literal["applied", "skipped", "would_apply", "would_skip"]


@dataclass(frozen=True)
class StageOutcome:
    stage_id: str
    outcome: StageOutcomeKind
    reason: str
    record: RunRecord | None = None
    verification: VerificationResult | None = None


@dataclass
class RunReport:
    run_id: str
    revision: int
    dry_run: bool = False
    outcomes: list[StageOutcome] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._lock = threading.Lock()

    def add(self, outcome: StageOutcome) -> None:
        with self._lock:
            self.outcomes.append(outcome)

    def ids(self, kind: StageOutcomeKind) -> list[str]:
        return [item.stage_id for item in self.outcomes if item.outcome == kind]

    @property
    def applied(self) -> list[str]:
        return self.ids("applied")

    @property
    def skipped(self) -> list[str]:
        return self.ids("skipped")

    @property
    def would_apply(self) -> list[str]:
        return self.ids("would_apply")


@dataclass(frozen=True)
class _Decision:
    apply: bool
    reason: str
    drifted: bool = False


class ExecutionEngine:
    def __init__(
        self,
        registry: StageRegistry,
        store: EnvironmentStore,
        run_log: RunLog,
        *,
        verifier: VerificationEngine | None = None,
        board: DiagnosticBoard | None = None,
        recorder: StageRecorder | None = None,
        logger: logging.Logger | None = None,
        timeout_seconds: float | None = None,
        max_workers: int = 1,
    ):
        if isinstance(max_workers, bool) or not isinstance(max_workers, int) or max_workers < 1:
            raise ValueError("max_workers must be an int >= 1")
        if timeout_seconds is not None and timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self._registry = registry
        self._store = store
        self._log = run_log
        self._logger = logger or logging.getLogger(__name__)
        self._timeout_seconds = timeout_seconds
        self._verifier = verifier or VerificationEngine(timeout_seconds=timeout_seconds, log=self._logger)
        self._board = board
        self._recorder = recorder or DefaultStageRecorder(self._logger)
        self._max_workers = max_workers
        self._validate_recorder(self._recorder)

    def _validate_recorder(self, recorder: StageRecorder) -> None:
        for name in ("on_stage_start", "on_stage_end", "on_stage_error"):
            method = getattr(recorder, name, None)
            if method is None or not callable(method):
                raise TypeError(f"Stage recorder missing required method: {name}")

    # Public API -----------------------------------------------------------

    def run(
        self,
        from_id: str | None = None,
        to_id: str | None = None,
        *,
        dry_run: bool = False,
        cancel: CancelToken | None = None,
        reapply_drifted: bool = False,
    ) -> RunReport:
        run_id = new_run_id()
        with self._registry.frozen():
            selected = self._registry.select_range(from_id, to_id)
            snapshot = self._store.snapshot()
            report = RunReport(run_id=run_id, revision=snapshot.revision, dry_run=dry_run)
            self._logger.info(
                "Run %s: %d stage(s) %s..%s at revision %d%s",
                run_id,
                len(selected),
                selected[0].id if selected else "-",
                selected[-1].id if selected else "-",
                snapshot.revision,
                " (dry run)" if dry_run else "",
            )
            try:
                self._preflight(selected, snapshot)
                if dry_run:
                    self._dry_run(selected, snapshot, report)
                elif self._max_workers == 1:
                    for stage in selected:
                        self._run_stage(stage, snapshot, report, cancel=cancel, reapply_drifted=reapply_drifted)
                else:
                    self._run_grouped(selected, snapshot, report, cancel=cancel, reapply_drifted=reapply_drifted)
            except StageKitError as exc:
                self._attach_run_context(exc, report)
                raise
        self._logger.info(
            "Run %s finished: applied=%d skipped=%d",
            run_id,
            len(report.applied),
            len(report.skipped),
        )
        return report

    # Preflight ------------------------------------------------------------

    def _preflight(self, selected: list[Stage], snapshot: EnvSnapshot) -> None:
        missing: set[str] = set()
        needing: list[str] = []
        for stage in selected:
            absent = snapshot.missing(stage.requires)
            if absent:
                missing.update(absent)
                needing.append(stage.id)
        if missing:
            raise MissingConfigKey(missing, stage_ids=needing)

        selected_ids = {stage.id for stage in selected}
        for stage in selected:
            outside = [dep for dep in stage.depends_on if dep not in selected_ids]
            unmet = [dep for dep in outside if not self._is_verified(dep)]
            if unmet:
                raise UnmetDependency(stage.id, unmet)

        if self._board is not None:
            for stage in selected:
                latest = self._log.latest(stage.id)
                if (
                    latest is not None
                    and latest.status == RunStatus.FAILED
                    and latest.fingerprint != stage.fingerprint()
                ):
                    self._board.authorize_edit(stage.id)

    def _is_verified(self, stage_id: str) -> bool:
        latest = self._log.latest(stage_id)
        return latest is not None and latest.status == RunStatus.VERIFIED

    def _decide(self, stage: Stage, snapshot: EnvSnapshot, *, reapply_drifted: bool, strict: bool) -> _Decision:
        latest = self._log.latest(stage.id)
        if latest is None:
            return _Decision(True, "never applied")
        if latest.status == RunStatus.VERIFIED:
            if latest.revision == snapshot.revision:
                return _Decision(False, f"verified at revision {latest.revision}")
            if latest.idempotency_key == stage.idempotency_key(snapshot.values):
                return _Decision(False, f"verified at revision {latest.revision}; inputs unchanged")
            if strict and not reapply_drifted:
                raise DriftDetected(
                    stage.id,
                    "inputs changed since the stage was verified",
                    recorded_revision=latest.revision,
                    current_revision=snapshot.revision,
                )
            return _Decision(True, f"inputs drifted since revision {latest.revision}", drifted=True)
        if latest.status == RunStatus.RUNNING:
            return _Decision(True, f"attempt {latest.attempt} was interrupted")
        return _Decision(True, f"latest attempt {latest.attempt} is {latest.status.value}")

    # Execution ------------------------------------------------------------

    def _run_grouped(
        self,
        selected: list[Stage],
        snapshot: EnvSnapshot,
        report: RunReport,
        *,
        cancel: CancelToken | None,
        reapply_drifted: bool,
    ) -> None:
        selected_ids = {stage.id for stage in selected}
        groups = [
            tuple(stage for stage in group if stage.id in selected_ids)
            for group in self._registry.independent_groups()
        ]
        with ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="stagekit") as pool:
            for index, group in enumerate(g for g in groups if g):
                futures = {
                    pool.submit(
                        self._run_stage,
                        stage,
                        snapshot,
                        report,
                        cancel=cancel,
                        reapply_drifted=reapply_drifted,
                        group=index,
                    ): stage
                    for stage in group
                }
                failures: list[tuple[Stage, StageKitError]] = []
                for future in as_completed(futures):
                    try:
                        future.result()
                    except StageKitError as exc:
                        failures.append((futures[future], exc))
                if failures:
                    # The whole group has drained; later groups never start.
                    _stage, first = min(failures, key=lambda item: (item[0].rank, item[0].id))
                    raise first

    def _run_stage(
        self,
        stage: Stage,
        snapshot: EnvSnapshot,
        report: RunReport,
        *,
        cancel: CancelToken | None,
        reapply_drifted: bool,
        group: int | None = None,
    ) -> None:
        decision = self._decide(stage, snapshot, reapply_drifted=reapply_drifted, strict=True)
        if not decision.apply:
            self._logger.info("Skipping stage %s (%s)", stage.id, decision.reason)
            report.add(StageOutcome(stage.id, "skipped", decision.reason, record=self._log.latest(stage.id)))
            return

        current_revision = self._store.revision
        if current_revision != snapshot.revision:
            raise DriftDetected(
                stage.id,
                "environment changed while the run was in progress",
                recorded_revision=snapshot.revision,
                current_revision=current_revision,
            )

        previous = self._log.latest(stage.id)
        if previous is not None and previous.status == RunStatus.RUNNING:
            self._log.transition(
                previous,
                RunStatus.FAILED,
                failure_kind="Interrupted",
                tags=(TAG_INTERRUPTED,),
            )

        config = snapshot.values
        record = self._log.open(
            stage.id,
            run_id=report.run_id,
            revision=snapshot.revision,
            idempotency_key=stage.idempotency_key(config),
            fingerprint=stage.fingerprint(),
        )

        if cancel is not None and cancel.cancelled:
            reason = cancel.reason or "run cancelled"
            record = self._log.transition(
                record,
                RunStatus.FAILED,
                failure_kind=RunCancelled.kind,
                tags=(TAG_CANCELLED,),
                output=reason,
            )
            exc = RunCancelled(stage.id, reason, evidence=reason, record=record)
            self._recorder.on_stage_error(stage, record, exc)
            raise exc

        self._recorder.on_stage_start(stage, record, group=group, reason=decision.reason)
        timeout = stage.timeout_seconds or self._timeout_seconds

        try:
            evidence = call_with_timeout(
                stage.action.apply,
                config,
                timeout_seconds=timeout,
                label=f"{stage.id}/apply",
            )
        except CallTimedOut as exc:
            record = self._log.transition(
                record,
                RunStatus.FAILED,
                failure_kind=ActionTimeout.kind,
                tags=(TAG_TIMEOUT,),
                output=str(exc),
            )
            raise self._fail(stage, ActionTimeout(stage.id, str(exc), evidence=str(exc), record=record)) from exc
        except Exception as exc:  # noqa: BLE001 - external collaborator failure
            output = render_evidence(getattr(exc, "evidence", None) or f"{type(exc).__name__}: {exc}")
            record = self._log.transition(
                record,
                RunStatus.FAILED,
                failure_kind=ActionError.kind,
                output=output,
            )
            raise self._fail(stage, ActionError(stage.id, str(exc), evidence=output, record=record)) from exc

        output = render_evidence(evidence)
        result = self._verifier.verify(stage, config)
        if not result.passed:
            failure_evidence = f"[{result.failed_check}] {result.evidence}".rstrip()
            record = self._log.transition(
                record,
                RunStatus.FAILED,
                failure_kind=VerificationError.kind,
                failed_check=result.failed_check,
                tags=result.tags,
                output="\n".join(part for part in (output, failure_evidence) if part),
            )
            raise self._fail(
                stage,
                VerificationError(
                    stage.id,
                    f"check {result.failed_check} did not pass",
                    check_id=result.failed_check,
                    evidence=failure_evidence,
                    record=record,
                ),
            )

        record = self._log.transition(record, RunStatus.VERIFIED, output=output)
        self._recorder.on_stage_end(stage, record)
        report.add(StageOutcome(stage.id, "applied", decision.reason, record=record, verification=result))

    def _fail(self, stage: Stage, exc: StageFailure) -> StageFailure:
        try:
            self._recorder.on_stage_error(stage, exc.record, exc)
        except Exception:
            self._logger.exception("Stage recorder failed during error handling for %s", stage.id)
        if self._board is not None and exc.record is not None:
            session = self._board.open_or_get(exc.record)
            exc.diagnostic_session_id = session.session_id  # type: ignore[attr-defined]
        return exc

    def _dry_run(self, selected: list[Stage], snapshot: EnvSnapshot, report: RunReport) -> None:
        for stage in selected:
            decision = self._decide(stage, snapshot, reapply_drifted=False, strict=False)
            result = self._verifier.verify(stage, snapshot.values)
            kind: StageOutcomeKind = "would_apply" if decision.apply else "would_skip"
            reason = decision.reason
            if decision.drifted:
                reason += " (run needs --reapply-drifted)"
            self._logger.info(
                "Dry run: %s %s (%s; verification %s)",
                stage.id,
                kind,
                reason,
                "passes" if result.passed else f"fails at {result.failed_check}",
            )
            report.add(
                StageOutcome(
                    stage.id,
                    kind,
                    reason,
                    record=self._log.latest(stage.id),
                    verification=result,
                )
            )

    def _attach_run_context(self, exc: Exception, report: RunReport) -> None:
        for name, value in (("run_report", report), ("run_id", report.run_id)):
            if not hasattr(exc, name):
                setattr(exc, name, value)


def describe_failure(exc: BaseException) -> dict[str, Any]:
    """Stage id, failure kind and evidence of a run failure, for reporting."""

    return {
        "stage_id": getattr(exc, "stage_id", None),
        "kind": getattr(exc, "kind", type(exc).__name__),
        "message": str(exc),
        "evidence": getattr(exc, "evidence", ""),
        "diagnostic_session_id": getattr(exc, "diagnostic_session_id", None),
    }
