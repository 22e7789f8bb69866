import logging

import pytest

from stagekit.diagnostics import DiagnosticBoard
from stagekit.engine import ExecutionEngine
from stagekit.errors import DiagnosticGuardError, VerificationError
from stagekit.env_store import EnvironmentStore
from stagekit.records import RunLog, RunStatus
from stagekit.rollback import RollbackManager
from stagekit.stage_registry import StageRegistry
from stagekit.stage_types import CallableAction, Check, Stage


def _linear_stages(applied, undone):
    def make(stage_id, deps):
        return Stage(
            id=stage_id,
            rank=int(stage_id),
            action=CallableAction(lambda config: applied.append(stage_id), label=f"apply:{stage_id}"),
            depends_on=frozenset(deps),
            verification=(Check("always", lambda config: True),),
            rollback=CallableAction(lambda config: undone.append(stage_id), label=f"undo:{stage_id}"),
            description=f"stage {stage_id}",
        )

    return [make("3", ["2"]), make("1", []), make("2", ["1"])]


def test_linear_pipeline_run_rerun_and_partial_rollback(tmp_path):
    logger = logging.getLogger("test.e2e")
    logger.handlers.clear()
    logger.addHandler(logging.NullHandler())
    logger.propagate = False

    applied, undone = [], []
    log = RunLog(str(tmp_path / "run_records.jsonl"))
    store = EnvironmentStore({"CONTROLLER_IP": "192.168.2.9"})
    board = DiagnosticBoard(path=str(tmp_path / "diagnostics.jsonl"), run_log=log)
    registry = StageRegistry(_linear_stages(applied, undone), edit_guard=board)
    engine = ExecutionEngine(registry, store, log, board=board, logger=logger)
    rollbacks = RollbackManager(registry, store, log, logger=logger)

    engine.run()

    verified = [r for r in log.transitions() if r.status == RunStatus.VERIFIED]
    assert [(r.stage_id, r.attempt) for r in verified] == [("1", 1), ("2", 1), ("3", 1)]
    assert applied == ["1", "2", "3"]

    lines_before = (tmp_path / "run_records.jsonl").read_text(encoding="utf-8")
    engine.run()
    assert (tmp_path / "run_records.jsonl").read_text(encoding="utf-8") == lines_before
    assert applied == ["1", "2", "3"]

    rollbacks.rollback_range("2", "3")

    rolled = [r for r in log.transitions() if r.status == RunStatus.ROLLED_BACK]
    assert [r.stage_id for r in rolled] == ["3", "2"]
    assert undone == ["3", "2"]
    assert log.latest("1").status == RunStatus.VERIFIED

    reloaded = RunLog(str(tmp_path / "run_records.jsonl"))
    assert {sid: rec.status for sid, rec in reloaded.latest_by_stage().items()} == {
        "1": RunStatus.VERIFIED,
        "2": RunStatus.ROLLED_BACK,
        "3": RunStatus.ROLLED_BACK,
    }


def _gated_setup():
    log = RunLog()
    board = DiagnosticBoard(run_log=log)
    store = EnvironmentStore()

    def make(label, passes):
        return Stage(
            id="keystone-install",
            action=CallableAction(lambda config: "installed", label=label),
            verification=(Check("token-issue", lambda config: passes),),
            rollback=CallableAction(lambda config: None, label="purge"),
        )

    return log, board, store, make


def test_definition_change_is_gated_by_the_diagnostic_session():
    log, board, store, make = _gated_setup()
    registry = StageRegistry([make("install-v1", False)], edit_guard=board)
    engine = ExecutionEngine(registry, store, log, board=board)

    with pytest.raises(VerificationError) as excinfo:
        engine.run()
    session = board.get(excinfo.value.diagnostic_session_id)

    with pytest.raises(DiagnosticGuardError):
        registry.update(make("install-v2", True))

    session.propose_hypothesis("bootstrap ran before apache2 was up")
    session.request_evidence(["systemctl status apache2"])
    session.submit_evidence("inactive (dead)")
    session.conclude(root_cause="apache2 must be restarted before bootstrap")

    registry.update(make("install-v2", True))
    report = engine.run()

    assert report.applied == ["keystone-install"]
    assert log.latest("keystone-install").status == RunStatus.VERIFIED


def test_changed_definition_of_failed_stage_is_rejected_at_run_start():
    log, board, store, make = _gated_setup()
    first = ExecutionEngine(StageRegistry([make("install-v1", False)]), store, log, board=board)
    with pytest.raises(VerificationError):
        first.run()

    edited = ExecutionEngine(StageRegistry([make("install-v2", True)]), store, log, board=board)
    with pytest.raises(DiagnosticGuardError):
        edited.run()

    assert len(log.records("keystone-install")) == 1
