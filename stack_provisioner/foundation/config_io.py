from __future__ import annotations

import os
import re
import shlex
from pathlib import Path
from collections.abc import Mapping
from typing import Any

import yaml

CONFIG_ENV_VAR = "STACK_PROVISIONER_CONFIG"

_INTERPOLATION = re.compile(r"\$(?:\{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)\}|(?P<bare>[A-Za-z_][A-Za-z0-9_]*))")
_ASSIGNMENT = re.compile(r"^(?:export\s+)?(?P<key>[A-Za-z_][A-Za-z0-9_]*)=(?P<value>.*)$")


def find_repo_root(start: str | os.PathLike[str] | None = None) -> str:
    start_path = Path(start or os.getcwd()).resolve()
    if start_path.is_file():
        start_path = start_path.parent

    markers = ("pyproject.toml", ".git")
    for candidate in (start_path, *start_path.parents):
        if (candidate / "pyproject.toml").is_file():
            return str(candidate)
        if (candidate / ".git").exists():
            return str(candidate)

    raise FileNotFoundError(
        "Cannot locate repo root: searched from "
        f"{start_path} for {', '.join(markers)}"
    )


def load_yaml_mapping(path: str) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            payload = yaml.safe_load(handle)
    except FileNotFoundError:
        raise
    except yaml.YAMLError as exc:
        raise ValueError(f"Invalid YAML in {path}: {exc}") from exc

    if payload is None:
        payload = {}
    if not isinstance(payload, Mapping):
        raise ValueError(f"Config file must contain a YAML mapping: {path}")
    return dict(payload)


def _deep_merge(base: Any, overlay: Any, *, path: str) -> Any:
    if overlay is None:
        return None

    if base is None:
        return overlay

    if isinstance(base, Mapping):
        if not isinstance(overlay, Mapping):
            raise ValueError(
                f"Invalid config overlay merge at {path}: base is mapping but overlay is {type(overlay).__name__}"
            )
        merged: dict[str, Any] = dict(base)
        for key, overlay_value in overlay.items():
            next_path = f"{path}.{key}" if path else str(key)
            if key in base:
                merged[key] = _deep_merge(base[key], overlay_value, path=next_path)
            else:
                merged[key] = overlay_value
        return merged

    if isinstance(base, (list, tuple)):
        if not isinstance(overlay, (list, tuple)):
            raise ValueError(
                f"Invalid config overlay merge at {path}: base is list but overlay is {type(overlay).__name__}"
            )
        return list(overlay)

    if isinstance(overlay, (Mapping, list, tuple)):
        raise ValueError(
            f"Invalid config overlay merge at {path}: base is {type(base).__name__} but overlay is {type(overlay).__name__}"
        )

    return overlay


def load_config(
    *,
    config_path: str | None = None,
    env_var: str = CONFIG_ENV_VAR,
    config_dir: str = "config",
    config_name: str = "config.yaml",
    start_dir: str | None = None,
) -> tuple[dict[str, Any], dict[str, Any]]:
    """
    Load the provisioner configuration, returning (cfg, meta).

    An explicit path (or the env var) loads a single file with no local overlay.
    Otherwise `<repo root>/config/config.yaml` is deep-merged with
    `config/config.local.yaml` when that exists.
    """

    explicit_path = None
    if config_path is not None:
        explicit_path = str(config_path).strip() or None
    elif env_var:
        explicit_path = os.environ.get(str(env_var), "").strip() or None

    if explicit_path:
        expanded = os.path.abspath(os.path.expandvars(os.path.expanduser(explicit_path)))
        cfg = load_yaml_mapping(expanded)
        meta = {
            "mode": "env" if config_path is None else "explicit",
            "paths": [expanded],
            "env_var": env_var,
            "repo_root": None,
            "config_dir": os.path.dirname(expanded),
        }
        return cfg, meta

    if os.path.isabs(config_dir):
        config_directory = config_dir
        repo_root = None
    else:
        repo_root = find_repo_root(start_dir)
        config_directory = os.path.join(repo_root, config_dir)
    base_config_path = os.path.join(config_directory, config_name)
    stem, ext = os.path.splitext(config_name)
    local_overlay_path = os.path.join(config_directory, f"{stem}.local{ext}")

    if not os.path.exists(base_config_path):
        raise FileNotFoundError(f"Missing base config file: {base_config_path}")

    cfg = load_yaml_mapping(base_config_path)
    loaded_paths = [os.path.abspath(base_config_path)]
    mode = "base"

    if os.path.exists(local_overlay_path):
        overlay = load_yaml_mapping(local_overlay_path)
        cfg = _deep_merge(cfg, overlay, path="")
        loaded_paths.append(os.path.abspath(local_overlay_path))
        mode = "base+local"

    meta = {
        "mode": mode,
        "paths": loaded_paths,
        "env_var": env_var,
        "repo_root": repo_root,
        "config_dir": os.path.abspath(config_directory),
    }
    return cfg, meta


def interpolate(text: str, values: Mapping[str, Any], *, path: str = "value") -> str:
    """Expand `${VAR}` and `$VAR` from `values`; unknown names raise ValueError."""

    def replace(match: re.Match[str]) -> str:
        name = match.group("braced") or match.group("bare")
        if name not in values:
            raise ValueError(f"Undefined variable ${{{name}}} in {path}")
        return str(values[name])

    return _INTERPOLATION.sub(replace, text)


def load_env_file(path: str, *, defaults: Mapping[str, Any] | None = None) -> dict[str, str]:
    """
    Parse a shell environment file of `export KEY="value"` lines.

    Comments, blank lines and trailing `# ...` comments are ignored. Values may
    reference earlier keys (or `defaults`) with `${VAR}`; single-quoted values
    are taken literally, as the shell would.
    """

    scope: dict[str, Any] = dict(defaults or {})
    parsed: dict[str, str] = {}
    with open(path, "r", encoding="utf-8") as handle:
        for lineno, raw in enumerate(handle, start=1):
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            match = _ASSIGNMENT.match(line)
            if match is None:
                raise ValueError(f"Unsupported line {lineno} in env file {path}: {line!r}")
            key = match.group("key")
            raw_value = match.group("value").strip()
            try:
                tokens = shlex.split(raw_value, comments=True, posix=True)
            except ValueError as exc:
                raise ValueError(f"Invalid value on line {lineno} in env file {path}: {exc}") from exc
            if len(tokens) > 1:
                raise ValueError(f"Unquoted whitespace in value on line {lineno} in env file {path}")
            value = tokens[0] if tokens else ""
            if not raw_value.startswith("'"):
                value = interpolate(value, scope, path=f"{path}:{lineno}")
            scope[key] = value
            parsed[key] = value
    return parsed
