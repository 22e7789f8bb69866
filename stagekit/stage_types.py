from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Protocol, runtime_checkable

Evidence = Any


@runtime_checkable
class StageAction(Protocol):
    """Idempotent, side-effecting operation against the target environment.

    `apply` returns captured evidence (text, a mapping, or None) and raises on
    failure.
    """

    def apply(self, config: Mapping[str, Any]) -> Evidence:
        ...


@dataclass(frozen=True)
class CallableAction:
    """Adapter turning a plain callable into a `StageAction`."""

    fn: Callable[[Mapping[str, Any]], Evidence]
    label: str | None = None

    def __post_init__(self) -> None:
        if not callable(self.fn):
            raise TypeError(f"Action fn must be callable (type={type(self.fn).__name__})")

    def apply(self, config: Mapping[str, Any]) -> Evidence:
        return self.fn(config)

    def fingerprint(self) -> str:
        return self.label or callable_source(self.fn) or "<callable>"


@dataclass(frozen=True)
class CheckOutcome:
    passed: bool
    evidence: str = ""


@dataclass(frozen=True)
class Check:
    """A read-only predicate over observable system state."""

    id: str
    fn: Callable[[Mapping[str, Any]], CheckOutcome | bool]
    doc: str | None = None
    mutating: bool = False

    def __post_init__(self) -> None:
        if not isinstance(self.id, str) or not self.id.strip():
            raise TypeError("Check.id must be a non-empty string")
        object.__setattr__(self, "id", self.id.strip())
        if not callable(self.fn):
            raise TypeError(f"Check {self.id} fn must be callable (type={type(self.fn).__name__})")

    def evaluate(self, config: Mapping[str, Any]) -> CheckOutcome:
        result = self.fn(config)
        if isinstance(result, CheckOutcome):
            return result
        if isinstance(result, bool):
            return CheckOutcome(passed=result)
        raise TypeError(
            f"Check {self.id} returned {type(result).__name__}; expected CheckOutcome or bool"
        )

    def fingerprint(self) -> str:
        inner = getattr(self.fn, "fingerprint", None)
        if callable(inner):
            return f"{self.id}:{inner()}"
        return f"{self.id}:{callable_source(self.fn) or '<callable>'}"


@dataclass(frozen=True)
class Stage:
    id: str
    action: StageAction
    rank: float = 0
    depends_on: frozenset[str] = field(default_factory=frozenset)
    verification: tuple[Check, ...] = ()
    rollback: StageAction | None = None
    irreversible: bool = False
    requires: tuple[str, ...] = ()
    description: str | None = None
    timeout_seconds: float | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.id, str) or not self.id.strip():
            raise TypeError("Stage.id must be a non-empty string")
        object.__setattr__(self, "id", self.id.strip())

        if isinstance(self.rank, bool) or not isinstance(self.rank, (int, float)):
            raise TypeError(f"Stage {self.id} rank must be a number")

        if not isinstance(self.action, StageAction):
            raise TypeError(f"Stage {self.id} action must provide apply(config)")
        if self.rollback is not None and not isinstance(self.rollback, StageAction):
            raise TypeError(f"Stage {self.id} rollback must provide apply(config) or be None")

        if isinstance(self.depends_on, str):
            raise TypeError(f"Stage {self.id} depends_on must be a collection of ids, not a string")
        deps = frozenset(str(dep).strip() for dep in self.depends_on)
        if "" in deps:
            raise ValueError(f"Stage {self.id} depends_on contains an empty id")
        if self.id in deps:
            raise ValueError(f"Stage {self.id} cannot depend on itself")
        object.__setattr__(self, "depends_on", deps)

        object.__setattr__(self, "verification", tuple(self.verification))
        for check in self.verification:
            if not isinstance(check, Check):
                raise TypeError(f"Stage {self.id} verification entries must be Check instances")
        check_ids = [check.id for check in self.verification]
        if len(set(check_ids)) != len(check_ids):
            raise ValueError(f"Stage {self.id} has duplicate verification check ids")

        requires = tuple(dict.fromkeys(str(key).strip() for key in self.requires))
        if "" in requires:
            raise ValueError(f"Stage {self.id} requires contains an empty key")
        object.__setattr__(self, "requires", requires)

        if self.rollback is None and not self.irreversible:
            raise ValueError(
                f"Stage {self.id} has no rollback; it must be declared irreversible=True"
            )

        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValueError(f"Stage {self.id} timeout_seconds must be > 0")

        if self.description is not None:
            text = str(self.description).strip()
            object.__setattr__(self, "description", text or None)

    def idempotency_key(self, config: Mapping[str, Any]) -> str:
        """Deterministic fingerprint of this stage's inputs."""

        payload = {
            "stage_id": self.id,
            "action": action_fingerprint(self.action),
            "inputs": {key: _stable_value(config.get(key)) for key in sorted(self.requires)},
        }
        return _sha256(payload)

    def fingerprint(self) -> str:
        """Fingerprint of the definition (not the inputs)."""

        payload = {
            "stage_id": self.id,
            "action": action_fingerprint(self.action),
            "depends_on": sorted(self.depends_on),
            "verification": [check.fingerprint() for check in self.verification],
            "rollback": None if self.rollback is None else action_fingerprint(self.rollback),
            "irreversible": self.irreversible,
            "requires": sorted(self.requires),
        }
        return _sha256(payload)


def action_fingerprint(action: StageAction) -> str:
    fingerprint = getattr(action, "fingerprint", None)
    if callable(fingerprint):
        return str(fingerprint())
    return f"{type(action).__module__}.{type(action).__qualname__}"


def callable_source(fn: Any) -> str | None:
    if not callable(fn):
        return None
    module = getattr(fn, "__module__", None) or "<unknown_module>"
    qualname = getattr(fn, "__qualname__", None) or getattr(fn, "__name__", None) or "<callable>"
    return f"{module}.{qualname}"


def _stable_value(value: Any) -> Any:
    stable = getattr(value, "stable_repr", None)
    if callable(stable):
        return stable()
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    return repr(value)


def _sha256(payload: Mapping[str, Any]) -> str:
    encoded = json.dumps(payload, sort_keys=True, ensure_ascii=False).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()
