from __future__ import annotations

import difflib
import heapq
import threading
from collections import defaultdict
from contextlib import contextmanager
from typing import Any, Iterable, Iterator, Protocol

from stagekit.errors import (
    DependencyCycle,
    DuplicateStageId,
    InvalidDependency,
    MutatingCheckRejected,
    RegistryFrozen,
    DiagnosticGuardError,
)
from stagekit.stage_types import Stage


class EditGuard(Protocol):
    def authorize_edit(self, stage_id: str) -> None:
        """Raise DiagnosticGuardError unless `stage_id` may be redefined now."""


class StageRegistry:
    """Catalog of stages and the dependency graph between them."""

    def __init__(self, stages: Iterable[Stage] = (), *, edit_guard: EditGuard | None = None):
        self._by_id: dict[str, Stage] = {}
        self._lock = threading.RLock()
        self._frozen = 0
        self._edit_guard = edit_guard
        stages = list(stages)
        if stages:
            self.register_all(stages)

    def __contains__(self, stage_id: object) -> bool:
        return stage_id in self._by_id

    def __len__(self) -> int:
        return len(self._by_id)

    def set_edit_guard(self, guard: EditGuard | None) -> None:
        self._edit_guard = guard

    # Registration ---------------------------------------------------------

    def register(self, stage: Stage) -> None:
        self.register_all([stage])

    def register_all(self, stages: Iterable[Stage]) -> None:
        """Add stages atomically: on any error nothing is added."""

        batch = list(stages)
        with self._lock:
            if self._frozen and batch:
                raise RegistryFrozen(getattr(batch[0], "id", "?"))
            candidate = dict(self._by_id)
            for stage in batch:
                if not isinstance(stage, Stage):
                    raise TypeError(f"Expected Stage, got {type(stage).__name__}")
                if stage.id in candidate:
                    raise DuplicateStageId(stage.id)
                candidate[stage.id] = stage
            self._validate(candidate, [stage.id for stage in batch])
            self._by_id = candidate

    def update(self, stage: Stage) -> None:
        """Replace an existing stage definition (edit between runs)."""

        with self._lock:
            if stage.id not in self._by_id:
                raise InvalidDependency(stage.id, "cannot update an unregistered stage")
            if self._frozen:
                raise RegistryFrozen(stage.id)
            if self._edit_guard is None:
                raise DiagnosticGuardError(
                    stage.id, "definitions can only change through a concluded diagnostic session"
                )
            self._edit_guard.authorize_edit(stage.id)
            candidate = dict(self._by_id)
            candidate[stage.id] = stage
            self._validate(candidate, [stage.id])
            self._by_id = candidate

    @contextmanager
    def frozen(self) -> Iterator["StageRegistry"]:
        """Hold the registry immutable (used for the duration of a run)."""

        with self._lock:
            self._frozen += 1
        try:
            yield self
        finally:
            with self._lock:
                self._frozen -= 1

    def _validate(self, candidate: dict[str, Stage], changed: list[str]) -> None:
        for stage_id in changed:
            stage = candidate[stage_id]
            unknown = sorted(dep for dep in stage.depends_on if dep not in candidate)
            if unknown:
                raise InvalidDependency(stage_id, f"unknown stage id(s): {', '.join(unknown)}")
            for check in stage.verification:
                if check.mutating:
                    raise MutatingCheckRejected(stage_id, check.id)
        cycle = _find_cycle(candidate)
        if cycle is not None:
            raise DependencyCycle(cycle)

    # Lookup ---------------------------------------------------------------

    def available(self) -> tuple[str, ...]:
        return tuple(stage.id for stage in self.resolve_order())

    def stages(self) -> tuple[Stage, ...]:
        return tuple(self.resolve_order())

    def get(self, stage_id: str) -> Stage:
        stage = self._by_id.get((stage_id or "").strip())
        if stage is None:
            raise ValueError(f"Unknown stage id: {stage_id}")
        return stage

    def resolve(self, stage_id: str) -> Stage:
        if not isinstance(stage_id, str) or not stage_id.strip():
            raise ValueError("stage_id must be a non-empty string")
        key = stage_id.strip()

        direct = self._by_id.get(key)
        if direct is not None:
            return direct

        matches = sorted(s for s in self._by_id if s.endswith("-" + key) or s.endswith("." + key))
        if len(matches) == 1:
            return self._by_id[matches[0]]
        if len(matches) > 1:
            raise ValueError(f"Ambiguous stage id: {stage_id} (matches: {', '.join(matches)})")

        suggestions = self.suggest(key)
        hint = f" (did you mean: {', '.join(suggestions)})" if suggestions else ""
        raise ValueError(f"Unknown stage id: {stage_id}{hint}")

    def suggest(self, stage_id: str, *, limit: int = 3) -> tuple[str, ...]:
        key = (stage_id or "").strip()
        if not key or not self._by_id:
            return ()
        return tuple(difflib.get_close_matches(key, sorted(self._by_id), n=limit))

    def describe(self) -> tuple[dict[str, Any], ...]:
        rows: list[dict[str, Any]] = []
        for stage in self.resolve_order():
            rows.append(
                {
                    "stage_id": stage.id,
                    "rank": stage.rank,
                    "description": stage.description,
                    "depends_on": sorted(stage.depends_on),
                    "requires": list(stage.requires),
                    "checks": [check.id for check in stage.verification],
                    "irreversible": stage.irreversible,
                }
            )
        return tuple(rows)

    # Graph ----------------------------------------------------------------

    def resolve_order(self) -> list[Stage]:
        """Topological order; ties broken by (rank, id) ascending."""

        with self._lock:
            by_id = dict(self._by_id)

        indegree = {stage_id: len(stage.depends_on) for stage_id, stage in by_id.items()}
        children: dict[str, list[str]] = defaultdict(list)
        for stage in by_id.values():
            for dep in stage.depends_on:
                children[dep].append(stage.id)

        ready = [(by_id[sid].rank, sid) for sid, degree in indegree.items() if degree == 0]
        heapq.heapify(ready)
        ordered: list[Stage] = []
        while ready:
            _rank, stage_id = heapq.heappop(ready)
            ordered.append(by_id[stage_id])
            for child in children.get(stage_id, ()):
                indegree[child] -= 1
                if indegree[child] == 0:
                    heapq.heappush(ready, (by_id[child].rank, child))

        if len(ordered) != len(by_id):  # pragma: no cover - rejected at registration
            raise DependencyCycle(sorted(set(by_id) - {s.id for s in ordered}))
        return ordered

    def independent_groups(self) -> list[tuple[Stage, ...]]:
        """Partition stages into antichains by dependency depth.

        Stages in one group have no dependency path between them; every stage
        depends only on stages in earlier groups.
        """

        depth: dict[str, int] = {}
        for stage in self.resolve_order():
            depth[stage.id] = 1 + max((depth[dep] for dep in stage.depends_on), default=-1)

        groups: dict[int, list[Stage]] = defaultdict(list)
        for stage in self.resolve_order():
            groups[depth[stage.id]].append(stage)
        return [tuple(groups[level]) for level in sorted(groups)]

    def dependents(self, stage_id: str) -> tuple[str, ...]:
        """Transitive descendants of `stage_id`, in resolved order."""

        self.get(stage_id)
        found: set[str] = set()
        for stage in self.resolve_order():
            if stage.depends_on & ({stage_id} | found):
                found.add(stage.id)
        return tuple(stage.id for stage in self.resolve_order() if stage.id in found)

    def ancestors(self, stage_id: str) -> tuple[str, ...]:
        stage = self.get(stage_id)
        found: set[str] = set()
        pending = list(stage.depends_on)
        while pending:
            dep = pending.pop()
            if dep in found:
                continue
            found.add(dep)
            pending.extend(self._by_id[dep].depends_on)
        return tuple(s.id for s in self.resolve_order() if s.id in found)

    def select_range(self, from_id: str | None = None, to_id: str | None = None) -> list[Stage]:
        """Inclusive slice of the resolved order."""

        ordered = self.resolve_order()
        ids = [stage.id for stage in ordered]
        start = ids.index(self.resolve(from_id).id) if from_id else 0
        end = ids.index(self.resolve(to_id).id) if to_id else len(ids) - 1
        if start > end:
            raise ValueError(
                f"Range start {ids[start]} comes after range end {ids[end]} in the resolved order"
            )
        return ordered[start : end + 1]


def _find_cycle(by_id: dict[str, Stage]) -> list[str] | None:
    """Depth-first search; returns the first cycle found as a closed path."""

    white, grey, black = 0, 1, 2
    color = {stage_id: white for stage_id in by_id}
    stack: list[str] = []

    def visit(node: str) -> list[str] | None:
        color[node] = grey
        stack.append(node)
        for dep in sorted(by_id[node].depends_on):
            if dep not in by_id:
                continue
            if color[dep] == grey:
                return stack[stack.index(dep) :] + [dep]
            if color[dep] == white:
                found = visit(dep)
                if found is not None:
                    return found
        stack.pop()
        color[node] = black
        return None

    for stage_id in sorted(by_id):
        if color[stage_id] == white:
            found = visit(stage_id)
            if found is not None:
                return found
    return None
