from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from stack_provisioner.foundation.config_io import load_env_file
from stack_provisioner.framework.config import EnvironmentConfig, ProvisionerConfig
from stack_provisioner.framework.pipeline_file import load_pipeline
from stagekit.diagnostics import DiagnosticBoard
from stagekit.engine import ExecutionEngine
from stagekit.env_store import EnvironmentStore, SecretRef
from stagekit.records import RunLog, RunStatus
from stagekit.rollback import RollbackManager
from stagekit.stage_registry import StageRegistry
from stagekit.stage_types import Stage


def collect_environment(env_cfg: EnvironmentConfig) -> dict[str, Any]:
    """Merge env files (in order), then `values`, then secret references."""

    merged: dict[str, Any] = {}
    for path in env_cfg.env_files:
        merged.update(load_env_file(path, defaults=merged))
    merged.update(env_cfg.values)
    for key, name in env_cfg.secrets.items():
        merged[key] = SecretRef(name)
    return merged


@dataclass
class Deployment:
    cfg: ProvisionerConfig
    logger: logging.Logger
    store: EnvironmentStore
    registry: StageRegistry
    run_log: RunLog
    board: DiagnosticBoard
    engine: ExecutionEngine
    rollbacks: RollbackManager
    changed_keys: tuple[str, ...] = ()
    warnings: list[str] = field(default_factory=list)

    @classmethod
    def open(
        cls,
        cfg: ProvisionerConfig,
        *,
        logger: logging.Logger | None = None,
        stages: Iterable[Stage] | None = None,
        max_workers: int | None = None,
    ) -> "Deployment":
        logger = logger or logging.getLogger("stack_provisioner")

        store = EnvironmentStore.load(cfg.environment_path)
        before = store.revision
        changed = store.sync(collect_environment(cfg.environment))
        if changed:
            store.save(cfg.environment_path)
            logger.info(
                "Environment revision %d -> %d (changed: %s)",
                before,
                store.revision,
                ", ".join(changed),
            )
        else:
            logger.debug("Environment unchanged at revision %d", store.revision)

        run_log = RunLog(cfg.run_log_path)
        board = DiagnosticBoard(path=cfg.diagnostics_path, run_log=run_log, log=logger)

        if stages is None:
            stages = load_pipeline(
                cfg.pipeline_path,
                shell=cfg.engine.shell,
                timeout_seconds=cfg.engine.timeout_seconds,
            )
        registry = StageRegistry(edit_guard=board)
        registry.register_all(stages)

        engine = ExecutionEngine(
            registry,
            store,
            run_log,
            board=board,
            logger=logger,
            timeout_seconds=cfg.engine.timeout_seconds,
            max_workers=max_workers or cfg.engine.max_workers,
        )
        rollbacks = RollbackManager(
            registry,
            store,
            run_log,
            logger=logger,
            timeout_seconds=cfg.engine.timeout_seconds,
        )

        deployment = cls(
            cfg=cfg,
            logger=logger,
            store=store,
            registry=registry,
            run_log=run_log,
            board=board,
            engine=engine,
            rollbacks=rollbacks,
            changed_keys=changed,
        )
        deployment.warnings.extend(deployment._definition_warnings())
        return deployment

    def _definition_warnings(self) -> list[str]:
        warnings: list[str] = []
        for stage in self.registry.stages():
            latest = self.run_log.latest(stage.id)
            if latest is None or latest.fingerprint == stage.fingerprint():
                continue
            if latest.status == RunStatus.FAILED:
                warnings.append(
                    f"Stage {stage.id} definition changed since failed attempt {latest.attempt}; "
                    "the next run needs a confirmed root cause"
                )
            elif latest.status == RunStatus.VERIFIED:
                warnings.append(
                    f"Stage {stage.id} definition changed since it was verified; "
                    "roll it back and re-run to apply the new definition"
                )
        for session in self.board.open_sessions():
            warnings.append(
                f"Stage {session.stage_id} has open diagnostic session {session.session_id} "
                f"({session.state.value})"
            )
        return warnings

    def next_stage(self) -> Stage | None:
        for stage in self.registry.resolve_order():
            latest = self.run_log.latest(stage.id)
            if latest is None or latest.status != RunStatus.VERIFIED:
                return stage
        return None

    def next_hint(self) -> str:
        stage = self.next_stage()
        if stage is None:
            return "All stages verified."
        latest = self.run_log.latest(stage.id)
        if latest is not None and latest.status == RunStatus.FAILED:
            session = self.board.open_session(stage.id)
            if session is not None:
                return f"Next: diagnose {stage.id} (session {session.session_id} is {session.state.value})"
        return f"Next: run --from {stage.id}"
