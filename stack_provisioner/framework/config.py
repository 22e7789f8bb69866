from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Mapping

from stack_provisioner.foundation.config_io import find_repo_root

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def parse_bool(value: Any, path: str) -> bool:
    """
    Strict boolean parsing to avoid bool('false') footguns.

    Accepts:
      - True/False
      - 0/1 (ints)
      - strings: true/false/1/0/yes/no (case-insensitive, surrounding whitespace ignored)

    Raises:
      ValueError for anything else, with the provided config key path.
    """

    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value in (0, 1):
            return bool(value)
        raise ValueError(f"Invalid boolean for {path}: {value!r}")
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"true", "1", "yes"}:
            return True
        if normalized in {"false", "0", "no"}:
            return False
        raise ValueError(f"Invalid boolean for {path}: {value!r}")

    raise ValueError(f"Invalid boolean for {path}: {value!r}")


def parse_float(value: Any, path: str) -> float:
    if value is None:
        raise ValueError(f"Invalid config value for {path}: None")
    if isinstance(value, bool):
        raise ValueError(f"Invalid config type for {path}: expected float, got bool")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        if not value.strip():
            raise ValueError(f"Invalid config value for {path}: must be a float")
        try:
            return float(value.strip())
        except Exception as exc:  # noqa: BLE001
            raise ValueError(f"Invalid config value for {path}: must be a float") from exc
    raise ValueError(f"Invalid config type for {path}: expected float")


def parse_int(value: Any, path: str) -> int:
    if value is None:
        raise ValueError(f"Invalid config value for {path}: None")
    if isinstance(value, bool):
        raise ValueError(f"Invalid config type for {path}: expected int, got bool")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        if not value.strip():
            raise ValueError(f"Invalid config value for {path}: must be an int")
        try:
            return int(value.strip())
        except Exception as exc:  # noqa: BLE001
            raise ValueError(f"Invalid config value for {path}: must be an int") from exc
    raise ValueError(f"Invalid config type for {path}: expected int")


@dataclass(frozen=True)
class EngineConfig:
    timeout_seconds: float | None = None
    max_workers: int = 1
    shell: str = "/bin/bash"


@dataclass(frozen=True)
class EnvironmentConfig:
    values: Mapping[str, Any] = field(default_factory=dict)
    env_files: tuple[str, ...] = ()
    secrets: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ProvisionerConfig:
    pipeline_path: str
    state_dir: str
    engine: EngineConfig = field(default_factory=EngineConfig)
    environment: EnvironmentConfig = field(default_factory=EnvironmentConfig)
    log_level: str = "INFO"

    @property
    def run_log_path(self) -> str:
        return os.path.join(self.state_dir, "run_records.jsonl")

    @property
    def environment_path(self) -> str:
        return os.path.join(self.state_dir, "environment.json")

    @property
    def diagnostics_path(self) -> str:
        return os.path.join(self.state_dir, "diagnostics.jsonl")

    @property
    def log_dir(self) -> str:
        return os.path.join(self.state_dir, "logs")

    @staticmethod
    def from_dict(
        cfg: Mapping[str, Any],
        *,
        base_dir: str | None = None,
    ) -> tuple["ProvisionerConfig", list[str]]:
        """
        Parse and validate configuration, returning (ProvisionerConfig, warnings).

        Relative paths resolve against `base_dir` (default: the repo root).

        Raises:
            ValueError: if required keys are missing or invalid.
        """

        if not isinstance(cfg, Mapping):
            raise ValueError("Config must be a mapping")

        warnings: list[str] = []
        root: str | None = base_dir

        strict_unknown_keys = False
        if "strict" in cfg:
            strict_unknown_keys = parse_bool(cfg.get("strict"), "strict")

        ANY: object = object()

        def collect_unknown_keys(mapping: Any, schema: Mapping[str, Any], *, prefix: str) -> list[str]:
            if not isinstance(mapping, Mapping):
                return []
            unknown: list[str] = []
            for key, value in mapping.items():
                if not isinstance(key, str):
                    continue
                if key not in schema:
                    unknown.append(f"{prefix}.{key}" if prefix else key)
                    continue
                subschema = schema.get(key)
                if subschema is ANY:
                    continue
                if isinstance(subschema, Mapping):
                    unknown.extend(
                        collect_unknown_keys(
                            value,
                            subschema,
                            prefix=f"{prefix}.{key}" if prefix else key,
                        )
                    )
            return unknown

        schema: Mapping[str, Any] = {
            "strict": None,
            "pipeline": {"path": None},
            "state": {"dir": None},
            "engine": {"timeout_seconds": None, "max_workers": None, "shell": None},
            "environment": {"values": ANY, "env_files": None, "secrets": ANY},
            "logging": {"level": None},
        }
        unknown_keys = sorted(set(collect_unknown_keys(cfg, schema, prefix="")))
        if unknown_keys:
            if strict_unknown_keys:
                raise ValueError("Unknown config keys: " + ", ".join(unknown_keys))
            warnings.extend(f"Unknown config key: {key}" for key in unknown_keys)

        def normalize_path(value: str) -> str:
            expanded = os.path.expandvars(os.path.expanduser(value.strip()))
            if not os.path.isabs(expanded):
                nonlocal root
                if root is None:
                    root = find_repo_root()
                expanded = os.path.join(root, expanded)
            return os.path.abspath(expanded)

        def get_mapping(path: str) -> Mapping[str, Any]:
            cur: Any = cfg
            for part in path.split("."):
                if not isinstance(cur, Mapping):
                    return {}
                cur = cur.get(part)
            if cur is None:
                return {}
            if not isinstance(cur, Mapping):
                raise ValueError(f"Invalid config type for {path}: expected mapping")
            return cur

        def require_str(path: str) -> str:
            section, _, key = path.partition(".")
            value = get_mapping(section).get(key)
            if value is None or (isinstance(value, str) and not value.strip()):
                raise ValueError(f"Missing required config: {path}")
            if not isinstance(value, str):
                raise ValueError(f"Invalid config type for {path}: expected string")
            return value

        pipeline_path = normalize_path(require_str("pipeline.path"))
        state_dir = normalize_path(require_str("state.dir"))

        engine_cfg = get_mapping("engine")
        timeout_seconds: float | None = None
        if engine_cfg.get("timeout_seconds") is not None:
            timeout_seconds = parse_float(engine_cfg.get("timeout_seconds"), "engine.timeout_seconds")
            if timeout_seconds <= 0:
                raise ValueError("Invalid config value for engine.timeout_seconds: must be > 0")
        else:
            warnings.append("engine.timeout_seconds is not set; stage actions may block indefinitely")

        max_workers = 1
        if engine_cfg.get("max_workers") is not None:
            max_workers = parse_int(engine_cfg.get("max_workers"), "engine.max_workers")
            if max_workers < 1:
                raise ValueError("Invalid config value for engine.max_workers: must be >= 1")

        shell = engine_cfg.get("shell", "/bin/bash")
        if not isinstance(shell, str) or not shell.strip():
            raise ValueError("Invalid config value for engine.shell: must be a non-empty string")

        env_cfg = get_mapping("environment")
        values: dict[str, Any] = {}
        for key, value in dict(get_mapping("environment.values")).items():
            if not isinstance(key, str) or not key.strip():
                raise ValueError(f"Invalid config key under environment.values: {key!r}")
            if value is None:
                raise ValueError(f"Invalid config value for environment.values.{key}: None")
            if not isinstance(value, (str, int, float, bool)):
                raise ValueError(
                    f"Invalid config type for environment.values.{key}: expected scalar, got {type(value).__name__}"
                )
            values[key] = value

        raw_files = env_cfg.get("env_files") or []
        if isinstance(raw_files, str):
            raw_files = [raw_files]
        if not isinstance(raw_files, (list, tuple)):
            raise ValueError("Invalid config type for environment.env_files: expected list of paths")
        env_files: list[str] = []
        for index, item in enumerate(raw_files):
            if not isinstance(item, str) or not item.strip():
                raise ValueError(f"Invalid config value for environment.env_files[{index}]: expected path")
            env_files.append(normalize_path(item))

        secrets: dict[str, str] = {}
        for key, name in dict(get_mapping("environment.secrets")).items():
            if not isinstance(name, str) or not name.strip():
                raise ValueError(f"Invalid config value for environment.secrets.{key}: expected secret name")
            secrets[str(key)] = name.strip()
        shadowed = sorted(set(secrets) & set(values))
        if shadowed:
            warnings.append(
                "environment.secrets overrides environment.values for: " + ", ".join(shadowed)
            )

        log_level = get_mapping("logging").get("level", "INFO")
        if not isinstance(log_level, str) or log_level.strip().upper() not in LOG_LEVELS:
            raise ValueError(
                f"Invalid config value for logging.level: {log_level!r} (expected: {'|'.join(LOG_LEVELS)})"
            )

        return (
            ProvisionerConfig(
                pipeline_path=pipeline_path,
                state_dir=state_dir,
                engine=EngineConfig(
                    timeout_seconds=timeout_seconds,
                    max_workers=max_workers,
                    shell=shell.strip(),
                ),
                environment=EnvironmentConfig(
                    values=values,
                    env_files=tuple(env_files),
                    secrets=secrets,
                ),
                log_level=log_level.strip().upper(),
            ),
            warnings,
        )
