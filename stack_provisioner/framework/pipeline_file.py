"""Load stage definitions from a YAML pipeline file.

Schema (one entry per stage):

    stages:
      - id: keystone-db
        rank: 14
        description: Create the Keystone database and user
        depends_on: [mariadb]
        requires: [CONTROLLER_IP]
        action: |
          mysql -u root -e "CREATE DATABASE IF NOT EXISTS keystone;"
        verify:
          - id: db-exists
            run: mysql -u root -e "SHOW DATABASES" | grep -qx keystone
        rollback: mysql -u root -e "DROP DATABASE IF EXISTS keystone;"
        irreversible: false
        timeout_seconds: 300

`action` and `rollback` take a script string or `{run: ...}`. A stage without a
rollback must say `irreversible: true`. Every `${NAME}` reference in the
stage's scripts is added to `requires`.
"""

from __future__ import annotations

import re
from typing import Any, Mapping

from stack_provisioner.foundation.config_io import load_yaml_mapping
from stack_provisioner.framework.config import parse_bool, parse_float
from stack_provisioner.framework.shell import SecretResolver, ShellAction, ShellCheck
from stagekit.diagnostics import mutating_command_reason
from stagekit.stage_types import Check, Stage

_BRACED_REFERENCE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

_STAGE_KEYS = frozenset(
    {
        "id",
        "rank",
        "description",
        "depends_on",
        "requires",
        "action",
        "verify",
        "rollback",
        "irreversible",
        "timeout_seconds",
    }
)


def required_names(*scripts: str | None) -> tuple[str, ...]:
    names: list[str] = []
    for script in scripts:
        if script:
            names.extend(_BRACED_REFERENCE.findall(script))
    return tuple(dict.fromkeys(names))


def _script(value: Any, path: str) -> str | None:
    if value is None:
        return None
    if isinstance(value, Mapping):
        unknown = sorted(set(value) - {"run"})
        if unknown:
            raise ValueError(f"Unknown keys in {path}: {', '.join(map(str, unknown))}")
        value = value.get("run")
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Invalid pipeline value for {path}: expected a non-empty script")
    return value


def _str_list(value: Any, path: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        raise ValueError(f"Invalid pipeline value for {path}: expected a list of strings")
    items: list[str] = []
    for index, item in enumerate(value):
        if not isinstance(item, str) or not item.strip():
            raise ValueError(f"Invalid pipeline value for {path}[{index}]: expected a non-empty string")
        items.append(item.strip())
    return tuple(items)


def parse_stage(
    entry: Mapping[str, Any],
    *,
    index: int,
    shell: str = "/bin/bash",
    timeout_seconds: float | None = None,
    secret_resolver: SecretResolver | None = None,
) -> Stage:
    path = f"stages[{index}]"
    if not isinstance(entry, Mapping):
        raise ValueError(f"Invalid pipeline value for {path}: expected a mapping")
    unknown = sorted(str(key) for key in entry if key not in _STAGE_KEYS)
    if unknown:
        raise ValueError(f"Unknown keys in {path}: {', '.join(unknown)}")

    stage_id = entry.get("id")
    if not isinstance(stage_id, str) or not stage_id.strip():
        raise ValueError(f"Missing required pipeline value: {path}.id")
    stage_id = stage_id.strip()
    path = f"stages[{index}] ({stage_id})"

    stage_timeout = timeout_seconds
    if entry.get("timeout_seconds") is not None:
        stage_timeout = parse_float(entry["timeout_seconds"], f"{path}.timeout_seconds")

    def command(cls: type, script: str, label: str) -> Any:
        return cls(
            script,
            shell=shell,
            timeout_seconds=stage_timeout,
            label=label,
            secret_resolver=secret_resolver,
        )

    action_script = _script(entry.get("action"), f"{path}.action")
    if action_script is None:
        raise ValueError(f"Missing required pipeline value: {path}.action")
    rollback_script = _script(entry.get("rollback"), f"{path}.rollback")

    raw_checks = entry.get("verify") or []
    if not isinstance(raw_checks, (list, tuple)):
        raise ValueError(f"Invalid pipeline value for {path}.verify: expected a list")
    checks: list[Check] = []
    check_scripts: list[str] = []
    for check_index, raw in enumerate(raw_checks):
        check_path = f"{path}.verify[{check_index}]"
        if isinstance(raw, str):
            raw = {"run": raw}
        if not isinstance(raw, Mapping):
            raise ValueError(f"Invalid pipeline value for {check_path}: expected a mapping")
        unknown = sorted(str(key) for key in raw if key not in {"id", "run", "doc"})
        if unknown:
            raise ValueError(f"Unknown keys in {check_path}: {', '.join(unknown)}")
        script = _script(raw.get("run"), f"{check_path}.run")
        assert script is not None
        check_id = str(raw.get("id") or f"check-{check_index + 1}").strip()
        checks.append(
            Check(
                id=check_id,
                fn=command(ShellCheck, script, f"{stage_id}/{check_id}"),
                doc=raw.get("doc"),
                mutating=mutating_command_reason(script) is not None,
            )
        )
        check_scripts.append(script)

    irreversible = parse_bool(entry.get("irreversible", False), f"{path}.irreversible")
    rank = entry.get("rank", index)
    if isinstance(rank, bool) or not isinstance(rank, (int, float)):
        rank = parse_float(rank, f"{path}.rank")

    requires = tuple(
        dict.fromkeys(
            (
                *_str_list(entry.get("requires"), f"{path}.requires"),
                *required_names(action_script, rollback_script, *check_scripts),
            )
        )
    )

    return Stage(
        id=stage_id,
        action=command(ShellAction, action_script, f"{stage_id}/apply"),
        rank=rank,
        depends_on=frozenset(_str_list(entry.get("depends_on"), f"{path}.depends_on")),
        verification=tuple(checks),
        rollback=None if rollback_script is None else command(ShellAction, rollback_script, f"{stage_id}/rollback"),
        irreversible=irreversible,
        requires=requires,
        description=entry.get("description"),
        timeout_seconds=stage_timeout,
    )


def load_pipeline(
    path: str,
    *,
    shell: str = "/bin/bash",
    timeout_seconds: float | None = None,
    secret_resolver: SecretResolver | None = None,
) -> list[Stage]:
    payload = load_yaml_mapping(path)
    unknown = sorted(str(key) for key in payload if key != "stages")
    if unknown:
        raise ValueError(f"Unknown keys in pipeline file {path}: {', '.join(unknown)}")
    entries = payload.get("stages")
    if not isinstance(entries, list) or not entries:
        raise ValueError(f"Pipeline file {path} must define a non-empty 'stages' list")
    return [
        parse_stage(
            entry,
            index=index,
            shell=shell,
            timeout_seconds=timeout_seconds,
            secret_resolver=secret_resolver,
        )
        for index, entry in enumerate(entries)
    ]
