import pytest

from stagekit.errors import (
    DependencyCycle,
    DiagnosticGuardError,
    DuplicateStageId,
    InvalidDependency,
    MutatingCheckRejected,
    RegistrationError,
    RegistryFrozen,
)
from stagekit.stage_registry import StageRegistry
from stagekit.stage_types import CallableAction, Check, Stage


def _stage(stage_id: str, *deps: str, rank: float = 0, checks=()) -> Stage:
    return Stage(
        id=stage_id,
        action=CallableAction(lambda config: None, label=f"apply:{stage_id}"),
        rank=rank,
        depends_on=frozenset(deps),
        verification=tuple(checks),
        rollback=CallableAction(lambda config: None, label=f"undo:{stage_id}"),
    )


def test_stage_without_rollback_must_be_declared_irreversible():
    with pytest.raises(ValueError, match=r"must be declared irreversible"):
        Stage(id="s1", action=CallableAction(lambda config: None))

    stage = Stage(id="s1", action=CallableAction(lambda config: None), irreversible=True)
    assert stage.rollback is None


def test_stage_rejects_self_dependency_and_string_depends_on():
    with pytest.raises(ValueError, match=r"cannot depend on itself"):
        _stage("a", "a")
    with pytest.raises(TypeError, match=r"not a string"):
        Stage(id="a", action=CallableAction(lambda c: None), depends_on="b", irreversible=True)


def test_resolve_order_respects_dependencies_and_breaks_ties_by_rank_then_id():
    registry = StageRegistry(
        [
            _stage("zeta", rank=1),
            _stage("alpha", rank=1),
            _stage("first", rank=0),
            _stage("child", "zeta", "alpha", rank=-5),
        ]
    )

    assert [s.id for s in registry.resolve_order()] == ["first", "alpha", "zeta", "child"]


def test_duplicate_ids_are_rejected():
    registry = StageRegistry([_stage("a")])

    with pytest.raises(DuplicateStageId, match=r"Duplicate stage id: a"):
        registry.register(_stage("a"))


def test_unknown_dependency_is_rejected():
    with pytest.raises(InvalidDependency, match=r"unknown stage id\(s\): missing"):
        StageRegistry([_stage("a", "missing")])


def test_cycle_is_rejected_atomically_and_names_the_path():
    registry = StageRegistry([_stage("base")])

    with pytest.raises(DependencyCycle) as excinfo:
        registry.register_all([_stage("a", "base", "c"), _stage("b", "a"), _stage("c", "b")])

    cycle = excinfo.value.cycle
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"a", "b", "c"}
    assert isinstance(excinfo.value, InvalidDependency)
    assert isinstance(excinfo.value, RegistrationError)
    assert registry.available() == ("base",)


def test_mutating_check_is_rejected_at_registration():
    check = Check("restart", lambda config: True, mutating=True)

    with pytest.raises(MutatingCheckRejected, match=r"restart"):
        StageRegistry([_stage("a", checks=[check])])


def test_independent_groups_are_antichains_in_dependency_order():
    registry = StageRegistry(
        [
            _stage("a"),
            _stage("b", "a"),
            _stage("c", "a"),
            _stage("d", "b", "c"),
            _stage("e"),
        ]
    )

    groups = [[s.id for s in group] for group in registry.independent_groups()]

    assert groups == [["a", "e"], ["b", "c"], ["d"]]
    for index, group in enumerate(registry.independent_groups()):
        earlier = {s.id for g in registry.independent_groups()[:index] for s in g}
        for stage in group:
            assert stage.depends_on <= earlier


def test_dependents_are_transitive_and_ordered():
    registry = StageRegistry([_stage("a"), _stage("b", "a"), _stage("c", "b"), _stage("x")])

    assert registry.dependents("a") == ("b", "c")
    assert registry.dependents("c") == ()
    assert registry.ancestors("c") == ("a", "b")


def test_resolve_accepts_unique_suffix_and_suggests_on_typo():
    registry = StageRegistry([_stage("keystone-install"), _stage("glance-install", "keystone-install")])

    assert registry.resolve("keystone-install").id == "keystone-install"
    with pytest.raises(ValueError, match=r"Ambiguous stage id: install"):
        registry.resolve("install")
    with pytest.raises(ValueError, match=r"did you mean: keystone-install"):
        registry.resolve("keystone-instal")


def test_select_range_is_inclusive_and_rejects_reversed_bounds():
    registry = StageRegistry([_stage("a"), _stage("b", "a"), _stage("c", "b")])

    assert [s.id for s in registry.select_range("b", None)] == ["b", "c"]
    assert [s.id for s in registry.select_range(None, "b")] == ["a", "b"]
    with pytest.raises(ValueError, match=r"comes after"):
        registry.select_range("c", "a")


def test_update_requires_an_edit_guard_and_is_blocked_while_frozen():
    registry = StageRegistry([_stage("a")])

    with pytest.raises(DiagnosticGuardError):
        registry.update(_stage("a", rank=3))

    class AllowAll:
        def authorize_edit(self, stage_id):
            return None

    registry.set_edit_guard(AllowAll())
    with registry.frozen():
        with pytest.raises(RegistryFrozen):
            registry.update(_stage("a", rank=3))
        with pytest.raises(RegistryFrozen):
            registry.register(_stage("b"))

    registry.update(_stage("a", rank=3))
    assert registry.get("a").rank == 3
