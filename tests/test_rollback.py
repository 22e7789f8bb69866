import logging

import pytest

from stagekit.engine import ExecutionEngine, NullStageRecorder
from stagekit.env_store import EnvironmentStore
from stagekit.errors import (
    ExitCode,
    IrreversibleStage,
    RollbackFailed,
    RollbackNotAllowed,
    VerificationError,
)
from stagekit.records import RunLog, RunStatus
from stagekit.rollback import RollbackManager
from stagekit.stage_registry import StageRegistry
from stagekit.stage_types import CallableAction, Check, Stage


def _stage(stage_id, undone, *deps, irreversible=False, healthy=None, undo=None):
    def rollback(config):
        undone.append(stage_id)
        if undo is not None:
            return undo(config)
        return f"removed {stage_id}"

    state = healthy if healthy is not None else {stage_id: True}
    return Stage(
        id=stage_id,
        action=CallableAction(lambda config: f"applied {stage_id}", label=f"apply:{stage_id}"),
        depends_on=frozenset(deps),
        verification=(Check(f"{stage_id}-up", lambda config: state[stage_id]),),
        rollback=None if irreversible else CallableAction(rollback, label=f"undo:{stage_id}"),
        irreversible=irreversible,
    )


def _deploy(stages, logger_name="test.rollback"):
    logger = logging.getLogger(logger_name)
    registry = StageRegistry(stages)
    store = EnvironmentStore()
    log = RunLog()
    engine = ExecutionEngine(registry, store, log, recorder=NullStageRecorder(), logger=logger)
    manager = RollbackManager(registry, store, log, logger=logger)
    engine.run()
    return engine, manager, log


def test_rollback_range_runs_descendants_first():
    undone = []
    _engine, manager, log = _deploy([_stage("a", undone), _stage("b", undone, "a"), _stage("c", undone, "b")])

    outcomes = manager.rollback_range()

    assert undone == ["c", "b", "a"]
    assert [o.stage_id for o in outcomes] == ["c", "b", "a"]
    assert all(log.latest(s).status == RunStatus.ROLLED_BACK for s in "abc")


def test_rollback_refuses_to_strand_a_verified_dependent():
    undone = []
    _engine, manager, log = _deploy([_stage("a", undone), _stage("b", undone, "a")])

    with pytest.raises(RollbackNotAllowed, match=r"dependent stage\(s\) still Verified: b") as excinfo:
        manager.rollback("a")

    assert excinfo.value.exit_code == ExitCode.PRECONDITION_FAILED
    assert undone == []
    assert log.latest("a").status == RunStatus.VERIFIED


def test_rollback_requires_a_verified_or_failed_record():
    undone = []
    _engine, manager, _log = _deploy([_stage("a", undone)])
    manager.rollback("a")

    with pytest.raises(RollbackNotAllowed, match=r"latest record is RolledBack"):
        manager.rollback("a")


def test_irreversible_stage_blocks_the_whole_range_without_override():
    undone = []
    _engine, manager, log = _deploy(
        [_stage("a", undone, irreversible=True), _stage("b", undone, "a"), _stage("c", undone, "b")]
    )

    with pytest.raises(IrreversibleStage) as excinfo:
        manager.rollback_range("a", "c")

    assert excinfo.value.stage_ids == ("a",)
    assert excinfo.value.exit_code == ExitCode.IRREVERSIBLE_STAGE
    assert undone == []
    assert all(log.latest(s).status == RunStatus.VERIFIED for s in "abc")


def test_irreversible_override_is_tagged_and_logged(caplog):
    undone = []
    _engine, manager, log = _deploy([_stage("a", undone, irreversible=True)], "test.rollback.override")
    caplog.set_level(logging.WARNING, logger="test.rollback.override")

    outcome = manager.rollback("a", force_irreversible=True)

    assert outcome.override is True
    record = log.latest("a")
    assert record.status == RunStatus.ROLLED_BACK
    assert record.override is True
    assert "IrreversibleOverride" in record.tags
    assert "Irreversible override" in caplog.text


def test_prior_stage_is_reverified_after_rollback():
    undone = []
    healthy = {"a": True, "b": True}

    def break_a(config):
        healthy["a"] = False
        return "took a down with it"

    _engine, manager, log = _deploy(
        [_stage("a", undone, healthy=healthy), _stage("b", undone, "a", healthy=healthy, undo=break_a)]
    )

    with pytest.raises(VerificationError) as excinfo:
        manager.rollback("b")

    assert excinfo.value.check_id == "a-up"
    record = log.latest("b")
    assert record.status == RunStatus.ROLLED_BACK
    assert "PriorVerificationFailed" in record.tags


def test_failed_rollback_leaves_the_record_untouched():
    undone = []

    def fail(config):
        raise RuntimeError("cleanup script exited 1")

    _engine, manager, log = _deploy([_stage("a", undone, undo=fail)])

    with pytest.raises(RollbackFailed) as excinfo:
        manager.rollback("a")

    assert "cleanup script exited 1" in excinfo.value.evidence
    assert log.latest("a").status == RunStatus.VERIFIED


def test_rolled_back_stage_is_reapplied_by_the_next_run():
    undone = []
    engine, manager, log = _deploy([_stage("a", undone)])
    manager.rollback("a")

    report = engine.run()

    assert report.applied == ["a"]
    assert log.latest("a").attempt == 2
