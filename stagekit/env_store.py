"""Versioned, flat configuration store shared by every stage.

The store is the only shared mutable resource of a run. All access goes through
one lock: writers are serialized, readers take immutable snapshots, so a
snapshot never mixes values from two revisions.
"""

from __future__ import annotations

import json
import os
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Iterable

from stagekit.errors import MissingConfigKey

SecretResolver = Callable[[str], str]


@dataclass(frozen=True)
class SecretRef:
    """Reference to a secret held outside the store."""

    name: str

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise TypeError("SecretRef.name must be a non-empty string")
        object.__setattr__(self, "name", self.name.strip())

    def __str__(self) -> str:
        return "***"

    def stable_repr(self) -> str:
        return f"secret:{self.name}"

    def resolve(self, resolver: SecretResolver | None = None) -> str:
        if resolver is not None:
            return resolver(self.name)
        value = os.environ.get(self.name)
        if value is None:
            raise MissingConfigKey([self.name])
        return value


def _validate_value(key: str, value: Any) -> Any:
    if isinstance(value, (str, bool, int, float, SecretRef)):
        return value
    raise TypeError(
        f"Environment value for {key} must be str, number, bool or SecretRef "
        f"(type={type(value).__name__})"
    )


def _validate_key(key: Any) -> str:
    if not isinstance(key, str) or not key.strip():
        raise TypeError("Environment key must be a non-empty string")
    return key.strip()


def _same(a: Any, b: Any) -> bool:
    # 1 == True in Python; treat differing types as a change.
    return type(a) is type(b) and a == b


def mask_value(value: Any) -> Any:
    if isinstance(value, SecretRef):
        return f"<secret:{value.name}>"
    return value


@dataclass(frozen=True)
class EnvSnapshot:
    revision: int
    values: Mapping[str, Any]

    def get(self, key: str, default: Any = None) -> Any:
        return self.values.get(key, default)

    def missing(self, keys: Iterable[str]) -> tuple[str, ...]:
        return tuple(sorted({key for key in keys if key not in self.values}))

    def masked(self) -> dict[str, Any]:
        return {key: mask_value(value) for key, value in sorted(self.values.items())}


class EnvironmentStore:
    def __init__(self, values: Mapping[str, Any] | None = None, *, revision: int = 0):
        if isinstance(revision, bool) or not isinstance(revision, int) or revision < 0:
            raise ValueError("revision must be a non-negative int")
        self._lock = threading.Lock()
        self._values: dict[str, Any] = {}
        for key, value in (values or {}).items():
            normalized = _validate_key(key)
            self._values[normalized] = _validate_value(normalized, value)
        self._revision = revision

    @property
    def revision(self) -> int:
        with self._lock:
            return self._revision

    def snapshot(self) -> EnvSnapshot:
        with self._lock:
            return EnvSnapshot(revision=self._revision, values=MappingProxyType(dict(self._values)))

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._values.get(key, default)

    def set(self, key: str, value: Any) -> bool:
        """Set one key. Returns True when the revision was bumped."""

        return bool(self.update({key: value}))

    def update(self, values: Mapping[str, Any]) -> tuple[str, ...]:
        """Apply several sets atomically; bumps the revision at most once."""

        staged = {}
        for key, value in values.items():
            normalized = _validate_key(key)
            staged[normalized] = _validate_value(normalized, value)

        with self._lock:
            changed = tuple(
                sorted(
                    key
                    for key, value in staged.items()
                    if key not in self._values or not _same(self._values[key], value)
                )
            )
            if changed:
                self._values.update(staged)
                self._revision += 1
            return changed

    def remove(self, key: str) -> bool:
        normalized = _validate_key(key)
        with self._lock:
            if normalized not in self._values:
                return False
            del self._values[normalized]
            self._revision += 1
            return True

    def sync(self, values: Mapping[str, Any]) -> tuple[str, ...]:
        """Make the store hold exactly `values`; bumps the revision at most once."""

        staged = {}
        for key, value in values.items():
            normalized = _validate_key(key)
            staged[normalized] = _validate_value(normalized, value)

        with self._lock:
            changed = {
                key
                for key, value in staged.items()
                if key not in self._values or not _same(self._values[key], value)
            }
            changed.update(key for key in self._values if key not in staged)
            if changed:
                self._values = staged
                self._revision += 1
            return tuple(sorted(changed))

    def require(self, keys: Iterable[str], *, stage_ids: Iterable[str] = ()) -> None:
        missing = self.snapshot().missing(keys)
        if missing:
            raise MissingConfigKey(missing, stage_ids=stage_ids)

    def to_dict(self) -> dict[str, Any]:
        snap = self.snapshot()
        values: dict[str, Any] = {}
        for key, value in snap.values.items():
            if isinstance(value, SecretRef):
                values[key] = {"secret": value.name}
            else:
                values[key] = value
        return {"revision": snap.revision, "values": values}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "EnvironmentStore":
        if not isinstance(payload, Mapping):
            raise ValueError("Environment snapshot must be a mapping")
        raw_values = payload.get("values") or {}
        if not isinstance(raw_values, Mapping):
            raise ValueError("Environment snapshot 'values' must be a mapping")
        values: dict[str, Any] = {}
        for key, value in raw_values.items():
            if isinstance(value, Mapping):
                name = value.get("secret")
                if not isinstance(name, str):
                    raise ValueError(f"Invalid secret reference for {key}: {value!r}")
                values[key] = SecretRef(name)
            else:
                values[key] = value
        return cls(values, revision=int(payload.get("revision", 0)))

    def save(self, path: str) -> None:
        """Write the snapshot atomically (write temp file, then replace)."""

        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
        tmp_path = f"{path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as handle:
            json.dump(self.to_dict(), handle, ensure_ascii=False, indent=2, sort_keys=True)
            handle.write("\n")
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)

    @classmethod
    def load(cls, path: str) -> "EnvironmentStore":
        if not os.path.exists(path):
            return cls()
        with open(path, "r", encoding="utf-8") as handle:
            try:
                payload = json.load(handle)
            except json.JSONDecodeError as exc:
                raise ValueError(f"Invalid environment snapshot JSON in {path}: {exc}") from exc
        return cls.from_dict(payload)
