from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from stagekit.engine.timeouts import CallTimedOut, call_with_timeout
from stagekit.records import TAG_TIMEOUT, render_evidence
from stagekit.stage_types import Check, Stage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckResult:
    check_id: str
    passed: bool
    evidence: str = ""
    tags: tuple[str, ...] = ()


@dataclass(frozen=True)
class VerificationResult:
    stage_id: str
    passed: bool
    failed_check: str | None = None
    evidence: str = ""
    tags: tuple[str, ...] = ()
    checks: tuple[CheckResult, ...] = field(default_factory=tuple)

    def summary(self) -> str:
        if self.passed:
            return f"{self.stage_id}: Pass ({len(self.checks)} check(s))"
        return f"{self.stage_id}: Fail at {self.failed_check}"


class VerificationEngine:
    """Turns a stage's ordered checks into a single pass/fail gate."""

    def __init__(self, *, timeout_seconds: float | None = None, log: logging.Logger | None = None):
        self._timeout_seconds = timeout_seconds
        self._logger = log or logger

    def verify(self, stage: Stage, config: Mapping[str, Any]) -> VerificationResult:
        timeout = stage.timeout_seconds or self._timeout_seconds
        results: list[CheckResult] = []
        for check in stage.verification:
            result = self._run_check(stage, check, config, timeout)
            results.append(result)
            if not result.passed:
                self._logger.info(
                    "Verification failed: stage=%s check=%s", stage.id, check.id
                )
                return VerificationResult(
                    stage_id=stage.id,
                    passed=False,
                    failed_check=check.id,
                    evidence=result.evidence,
                    tags=result.tags,
                    checks=tuple(results),
                )
            self._logger.debug("Check passed: stage=%s check=%s", stage.id, check.id)
        return VerificationResult(stage_id=stage.id, passed=True, checks=tuple(results))

    def _run_check(
        self,
        stage: Stage,
        check: Check,
        config: Mapping[str, Any],
        timeout: float | None,
    ) -> CheckResult:
        try:
            outcome = call_with_timeout(
                check.evaluate,
                config,
                timeout_seconds=timeout,
                label=f"{stage.id}/{check.id}",
            )
        except CallTimedOut as exc:
            return CheckResult(check.id, passed=False, evidence=str(exc), tags=(TAG_TIMEOUT,))
        except Exception as exc:  # noqa: BLE001 - an erroring check is a failing check
            self._logger.debug("Check raised: stage=%s check=%s", stage.id, check.id, exc_info=True)
            return CheckResult(
                check.id,
                passed=False,
                evidence=f"check raised {type(exc).__name__}: {exc}",
            )
        return CheckResult(check.id, passed=outcome.passed, evidence=render_evidence(outcome.evidence))
