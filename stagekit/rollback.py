"""Rollback manager: reverse a stage, or a range of stages, without stranding dependents."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from stagekit.engine.timeouts import CallTimedOut, call_with_timeout
from stagekit.env_store import EnvironmentStore
from stagekit.errors import (
    IrreversibleStage,
    RollbackFailed,
    RollbackNotAllowed,
    StageKitError,
    VerificationError,
)
from stagekit.records import (
    TAG_IRREVERSIBLE_OVERRIDE,
    TAG_PRIOR_VERIFICATION_FAILED,
    RunLog,
    RunRecord,
    RunStatus,
    render_evidence,
)
from stagekit.stage_registry import StageRegistry
from stagekit.stage_types import Stage
from stagekit.verification import VerificationEngine, VerificationResult

_ROLLBACK_FROM = (RunStatus.VERIFIED, RunStatus.FAILED)


@dataclass(frozen=True)
class RollbackOutcome:
    stage_id: str
    record: RunRecord
    override: bool = False
    prior_checks: tuple[VerificationResult, ...] = ()


class RollbackManager:
    def __init__(
        self,
        registry: StageRegistry,
        store: EnvironmentStore,
        run_log: RunLog,
        *,
        verifier: VerificationEngine | None = None,
        logger: logging.Logger | None = None,
        timeout_seconds: float | None = None,
    ):
        self._registry = registry
        self._store = store
        self._log = run_log
        self._logger = logger or logging.getLogger(__name__)
        self._timeout_seconds = timeout_seconds
        self._verifier = verifier or VerificationEngine(timeout_seconds=timeout_seconds, log=self._logger)

    def rollback(self, stage_id: str, *, force_irreversible: bool = False) -> RollbackOutcome:
        with self._registry.frozen():
            stage = self._registry.resolve(stage_id)
            self._require_reversible([stage], force_irreversible)
            return self._rollback_one(stage)

    def rollback_range(
        self,
        from_id: str | None = None,
        to_id: str | None = None,
        *,
        force_irreversible: bool = False,
    ) -> list[RollbackOutcome]:
        """Roll back every applied stage in the inclusive range, descendants first.

        The irreversible check covers the whole range before any stage is touched.
        """

        with self._registry.frozen():
            selected = self._registry.select_range(from_id, to_id)
            candidates = [stage for stage in selected if self._status(stage.id) in _ROLLBACK_FROM]
            self._require_reversible(candidates, force_irreversible)
            self._logger.info(
                "Rolling back %d stage(s): %s",
                len(candidates),
                ", ".join(stage.id for stage in reversed(candidates)) or "-",
            )
            outcomes: list[RollbackOutcome] = []
            for stage in reversed(candidates):
                try:
                    outcomes.append(self._rollback_one(stage))
                except StageKitError as exc:
                    if not hasattr(exc, "rolled_back"):
                        setattr(exc, "rolled_back", tuple(item.stage_id for item in outcomes))
                    raise
            return outcomes

    def _status(self, stage_id: str) -> RunStatus | None:
        latest = self._log.latest(stage_id)
        return latest.status if latest is not None else None

    def _require_reversible(self, stages: Iterable[Stage], force_irreversible: bool) -> None:
        irreversible = [stage.id for stage in stages if stage.irreversible]
        if irreversible and not force_irreversible:
            raise IrreversibleStage(irreversible)

    def _rollback_one(self, stage: Stage) -> RollbackOutcome:
        latest = self._log.latest(stage.id)
        if latest is None or latest.status not in _ROLLBACK_FROM:
            state = latest.status.value if latest is not None else "never applied"
            raise RollbackNotAllowed(stage.id, f"latest record is {state} (needs Verified or Failed)")

        stranded = [dep for dep in self._registry.dependents(stage.id) if self._status(dep) == RunStatus.VERIFIED]
        if stranded:
            raise RollbackNotAllowed(
                stage.id,
                f"dependent stage(s) still Verified: {', '.join(stranded)}; roll those back first",
            )

        override = stage.irreversible
        if override:
            self._logger.warning(
                "Irreversible override: rolling back %s (attempt %s)", stage.id, latest.attempt
            )

        config = self._store.snapshot().values
        if stage.rollback is None:
            output = "no rollback action; marked RolledBack under the irreversible override"
        else:
            timeout = stage.timeout_seconds or self._timeout_seconds
            try:
                evidence = call_with_timeout(
                    stage.rollback.apply,
                    config,
                    timeout_seconds=timeout,
                    label=f"{stage.id}/rollback",
                )
            except CallTimedOut as exc:
                raise RollbackFailed(stage.id, str(exc), evidence=str(exc), record=latest) from exc
            except Exception as exc:  # noqa: BLE001 - external collaborator failure
                output = render_evidence(getattr(exc, "evidence", None) or f"{type(exc).__name__}: {exc}")
                self._logger.error("Rollback failed: %s\n%s", stage.id, output)
                raise RollbackFailed(stage.id, str(exc), evidence=output, record=latest) from exc
            output = render_evidence(evidence)

        prior_checks: list[VerificationResult] = []
        failed: VerificationResult | None = None
        for dep in sorted(stage.depends_on):
            if self._status(dep) != RunStatus.VERIFIED:
                continue
            result = self._verifier.verify(self._registry.get(dep), config)
            prior_checks.append(result)
            if not result.passed and failed is None:
                failed = result

        tags: list[str] = []
        if override:
            tags.append(TAG_IRREVERSIBLE_OVERRIDE)
        if failed is not None:
            tags.append(TAG_PRIOR_VERIFICATION_FAILED)
        record = self._log.transition(
            latest,
            RunStatus.ROLLED_BACK,
            output=output,
            override=override,
            tags=tuple(tags),
        )
        self._logger.info("Rolled back stage %s (attempt %s)", stage.id, record.attempt)

        if failed is not None:
            raise VerificationError(
                stage.id,
                f"prior stage {failed.stage_id} failed check {failed.failed_check} after rollback",
                check_id=failed.failed_check,
                evidence=failed.evidence,
                record=record,
            )
        return RollbackOutcome(stage.id, record, override=override, prior_checks=tuple(prior_checks))
