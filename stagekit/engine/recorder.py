from __future__ import annotations

import json
import logging
from typing import Any, Protocol

from stagekit.records import RunRecord
from stagekit.stage_types import Stage


class StageRecorder(Protocol):
    def on_stage_start(self, stage: Stage, record: RunRecord, **metrics: Any) -> None:
        ...

    def on_stage_end(self, stage: Stage, record: RunRecord) -> None:
        ...

    def on_stage_error(self, stage: Stage, record: RunRecord | None, exc: Exception) -> None:
        ...


class DefaultStageRecorder:
    def __init__(self, logger: logging.Logger):
        self._logger = logger

    def on_stage_start(self, stage: Stage, record: RunRecord, **metrics: Any) -> None:
        tokens: list[str] = [f"attempt={record.attempt}", f"revision={record.revision}"]
        if stage.depends_on:
            tokens.append(f"depends_on={','.join(sorted(stage.depends_on))}")
        group = metrics.get("group")
        if isinstance(group, int):
            tokens.append(f"group={group}")
        if stage.description:
            tokens.append(f"doc={json.dumps(stage.description, ensure_ascii=False)}")
        self._logger.info("Stage: %s (%s)", stage.id, ", ".join(tokens))

    def on_stage_end(self, stage: Stage, record: RunRecord) -> None:
        self._logger.info(
            "Completed stage %s (status=%s, attempt=%s)",
            stage.id,
            record.status.value,
            record.attempt,
        )

    def on_stage_error(self, stage: Stage, record: RunRecord | None, exc: Exception) -> None:
        kind = getattr(exc, "kind", type(exc).__name__)
        self._logger.error("Stage failed: %s (%s: %s)", stage.id, kind, exc)
        evidence = getattr(exc, "evidence", "")
        if evidence:
            self._logger.error("Evidence for %s:\n%s", stage.id, evidence)


class NullStageRecorder:
    def on_stage_start(self, stage: Stage, record: RunRecord, **metrics: Any) -> None:
        return

    def on_stage_end(self, stage: Stage, record: RunRecord) -> None:
        return

    def on_stage_error(self, stage: Stage, record: RunRecord | None, exc: Exception) -> None:
        return
