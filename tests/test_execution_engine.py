import logging
import threading

import pytest

from stagekit.diagnostics import DiagnosticBoard
from stagekit.engine import CancelToken, ExecutionEngine, NullStageRecorder
from stagekit.env_store import EnvironmentStore
from stagekit.errors import (
    ActionError,
    ActionTimeout,
    DriftDetected,
    ExitCode,
    MissingConfigKey,
    RegistryFrozen,
    RunCancelled,
    UnmetDependency,
    VerificationError,
)
from stagekit.records import RunLog, RunStatus
from stagekit.stage_registry import StageRegistry
from stagekit.stage_types import CallableAction, Check, CheckOutcome, Stage


def _logger(name: str = "test.engine") -> logging.Logger:
    logger = logging.getLogger(name)
    logger.handlers.clear()
    logger.addHandler(logging.NullHandler())
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    return logger


def _stage(stage_id, calls, *deps, rank=0, requires=(), passes=True, fn=None):
    def apply(config):
        calls.append(stage_id)
        if fn is not None:
            return fn(config)
        return f"applied {stage_id}"

    return Stage(
        id=stage_id,
        action=CallableAction(apply, label=f"apply:{stage_id}"),
        rank=rank,
        depends_on=frozenset(deps),
        verification=(
            Check(f"{stage_id}-ok", lambda config: CheckOutcome(passes, f"{stage_id} probe")),
        ),
        rollback=CallableAction(lambda config: None, label=f"undo:{stage_id}"),
        requires=tuple(requires),
    )


def _engine(stages, store=None, *, board=None, **kwargs):
    registry = StageRegistry(stages)
    store = store if store is not None else EnvironmentStore()
    log = RunLog()
    engine = ExecutionEngine(
        registry,
        store,
        log,
        board=board,
        recorder=NullStageRecorder(),
        logger=_logger(),
        **kwargs,
    )
    return engine, registry, store, log


def test_stages_run_in_dependency_order_and_end_verified():
    calls = []
    engine, _registry, _store, log = _engine(
        [_stage("c", calls, "b", rank=0), _stage("b", calls, "a", rank=1), _stage("a", calls, rank=2)]
    )

    report = engine.run()

    assert calls == ["a", "b", "c"]
    assert report.applied == ["a", "b", "c"]
    assert [log.latest(s).status for s in "abc"] == [RunStatus.VERIFIED] * 3


def test_record_transitions_follow_the_resolved_order():
    calls = []
    engine, _registry, _store, log = _engine([_stage("b", calls, "a"), _stage("a", calls)])

    engine.run()

    transitions = [(r.stage_id, r.status) for r in log.transitions()]
    assert transitions == [
        ("a", RunStatus.RUNNING),
        ("a", RunStatus.VERIFIED),
        ("b", RunStatus.RUNNING),
        ("b", RunStatus.VERIFIED),
    ]
    seqs = [r.seq for r in log.transitions()]
    assert seqs == sorted(seqs)


def test_rerun_at_same_revision_calls_no_action_and_writes_no_record():
    calls = []
    engine, _registry, _store, log = _engine([_stage("a", calls), _stage("b", calls, "a")])
    engine.run()
    before = log.transitions()

    report = engine.run()

    assert calls == ["a", "b"]
    assert report.skipped == ["a", "b"]
    assert log.transitions() == before


def test_unrelated_revision_bump_does_not_reapply_stages():
    calls = []
    store = EnvironmentStore({"HOST": "osctl1"})
    engine, _registry, store, _log = _engine([_stage("a", calls, requires=["HOST"])], store)
    engine.run()

    store.set("UNRELATED", "x")
    report = engine.run()

    assert calls == ["a"]
    assert report.skipped == ["a"]


def test_changed_input_of_verified_stage_is_drift():
    calls = []
    store = EnvironmentStore({"HOST": "osctl1"})
    engine, _registry, store, log = _engine([_stage("a", calls, requires=["HOST"])], store)
    engine.run()

    store.set("HOST", "osctl2")
    with pytest.raises(DriftDetected) as excinfo:
        engine.run()

    assert excinfo.value.exit_code == ExitCode.DRIFT_DETECTED
    assert excinfo.value.recorded_revision == 0
    assert excinfo.value.current_revision == 1
    assert len(log.records("a")) == 1

    report = engine.run(reapply_drifted=True)

    assert report.applied == ["a"]
    assert log.latest("a").attempt == 2
    assert calls == ["a", "a"]


def test_environment_change_during_run_is_drift():
    calls = []
    store = EnvironmentStore({"HOST": "osctl1"})

    def mutate(config):
        store.set("HOST", "elsewhere")
        return "mutated"

    engine, _registry, store, log = _engine(
        [_stage("a", calls, fn=mutate), _stage("b", calls, "a")], store
    )

    with pytest.raises(DriftDetected, match=r"while the run was in progress"):
        engine.run()

    assert log.latest("a").status == RunStatus.VERIFIED
    assert log.latest("b") is None


def test_verification_failure_stops_the_run_and_opens_a_session():
    calls = []
    stages = [_stage("a", calls), _stage("b", calls, "a", passes=False), _stage("c", calls, "b")]
    registry = StageRegistry(stages)
    log = RunLog()
    log_board = DiagnosticBoard(run_log=log)
    engine = ExecutionEngine(
        registry, EnvironmentStore(), log, board=log_board, recorder=NullStageRecorder(), logger=_logger()
    )

    with pytest.raises(VerificationError) as excinfo:
        engine.run()

    exc = excinfo.value
    assert exc.exit_code == ExitCode.VERIFICATION_FAILED
    assert exc.stage_id == "b"
    assert exc.check_id == "b-ok"
    assert "b probe" in exc.evidence
    assert calls == ["a", "b"]
    assert exc.run_report.applied == ["a"]

    failed = log.latest("b")
    assert failed.status == RunStatus.FAILED
    assert failed.failure_kind == "VerificationFailed"
    assert failed.failed_check == "b-ok"
    assert log.latest("c") is None

    session = log_board.open_session("b")
    assert session is not None
    assert exc.diagnostic_session_id == session.session_id


def test_action_exception_is_recorded_as_action_failed():
    calls = []

    def boom(config):
        raise RuntimeError("apt-get exited 100")

    engine, _registry, _store, log = _engine([_stage("a", calls, fn=boom), _stage("b", calls, "a")])

    with pytest.raises(ActionError) as excinfo:
        engine.run()

    assert excinfo.value.exit_code == ExitCode.ACTION_FAILED
    assert isinstance(excinfo.value.__cause__, RuntimeError)
    record = log.latest("a")
    assert record.failure_kind == "ActionFailed"
    assert "apt-get exited 100" in record.output
    assert calls == ["a"]


def test_missing_config_keys_fail_before_any_stage():
    calls = []
    engine, _registry, _store, log = _engine(
        [_stage("a", calls), _stage("b", calls, "a", requires=["DB_PASS", "RABBIT_PASS"])]
    )

    with pytest.raises(MissingConfigKey) as excinfo:
        engine.run()

    assert excinfo.value.keys == ("DB_PASS", "RABBIT_PASS")
    assert excinfo.value.stage_ids == ("b",)
    assert calls == []
    assert log.transitions() == []


def test_dependency_outside_the_range_must_already_be_verified():
    calls = []
    engine, _registry, _store, log = _engine([_stage("a", calls), _stage("b", calls, "a")])

    with pytest.raises(UnmetDependency, match=r"not yet Verified: a"):
        engine.run("b")

    engine.run(None, "a")
    report = engine.run("b")
    assert report.applied == ["b"]


def test_dry_run_applies_nothing_and_records_nothing():
    calls = []
    engine, _registry, _store, log = _engine([_stage("a", calls), _stage("b", calls, "a", passes=False)])

    report = engine.run(dry_run=True)

    assert calls == []
    assert log.transitions() == []
    assert report.would_apply == ["a", "b"]
    assert [o.verification.passed for o in report.outcomes] == [True, False]


def test_action_timeout_is_failed_with_timeout_tag():
    calls = []
    release = threading.Event()

    def hang(config):
        release.wait(5)
        return "late"

    engine, _registry, _store, log = _engine([_stage("a", calls, fn=hang)], timeout_seconds=0.05)
    try:
        with pytest.raises(ActionTimeout) as excinfo:
            engine.run()
    finally:
        release.set()

    assert excinfo.value.kind == "Timeout"
    record = log.latest("a")
    assert record.status == RunStatus.FAILED
    assert "Timeout" in record.tags


def test_cancellation_is_observed_between_stages():
    calls = []
    token = CancelToken()

    def cancel_after(config):
        token.cancel("operator abort")
        return "done"

    engine, _registry, _store, log = _engine(
        [_stage("a", calls, fn=cancel_after), _stage("b", calls, "a"), _stage("c", calls, "b")]
    )

    with pytest.raises(RunCancelled) as excinfo:
        engine.run(cancel=token)

    assert excinfo.value.exit_code == ExitCode.CANCELLED
    assert calls == ["a"]
    assert log.latest("a").status == RunStatus.VERIFIED
    cancelled = log.latest("b")
    assert cancelled.status == RunStatus.FAILED
    assert "Cancelled" in cancelled.tags
    assert log.latest("c") is None


def test_registry_is_frozen_while_a_run_is_in_progress():
    calls = []
    holder = {}

    def edit(config):
        holder["registry"].register(_stage("late", []))

    engine, registry, _store, _log = _engine([_stage("a", calls, fn=edit)])
    holder["registry"] = registry

    with pytest.raises(ActionError) as excinfo:
        engine.run()

    assert isinstance(excinfo.value.__cause__, RegistryFrozen)
    registry.register(_stage("late", []))
    assert "late" in registry


def test_interrupted_running_record_is_closed_and_reapplied():
    calls = []
    engine, _registry, _store, log = _engine([_stage("a", calls)])
    log.open("a", run_id="crashed", revision=0, idempotency_key="k", fingerprint="f")

    report = engine.run()

    first, second = log.records("a")
    assert first.status == RunStatus.FAILED
    assert "Interrupted" in first.tags
    assert second.status == RunStatus.VERIFIED
    assert report.applied == ["a"]


def test_independent_stages_run_concurrently_with_a_worker_pool():
    calls = []
    barrier = threading.Barrier(2, timeout=5)

    def meet(config):
        barrier.wait()
        return "met"

    engine, _registry, _store, log = _engine(
        [
            _stage("a", calls),
            _stage("b", calls, "a", fn=meet),
            _stage("c", calls, "a", fn=meet),
            _stage("d", calls, "b", "c"),
        ],
        max_workers=2,
    )

    report = engine.run()

    assert calls[0] == "a"
    assert calls[-1] == "d"
    assert sorted(report.applied) == ["a", "b", "c", "d"]


def test_failure_in_a_group_stops_later_groups():
    calls = []
    engine, _registry, _store, log = _engine(
        [
            _stage("a", calls),
            _stage("b", calls, "a", passes=False),
            _stage("c", calls, "a"),
            _stage("d", calls, "c"),
        ],
        max_workers=2,
    )

    with pytest.raises(VerificationError) as excinfo:
        engine.run()

    assert excinfo.value.stage_id == "b"
    assert log.latest("c").status == RunStatus.VERIFIED
    assert log.latest("d") is None
    assert "d" not in calls
