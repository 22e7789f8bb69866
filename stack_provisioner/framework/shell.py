"""Shell-backed stage actions, checks and evidence collection.

Store values are exported into the child environment the way the deployment
scripts source their shared env file, so commands refer to them as `${VAR}`
and secret values never appear in the command text or the run log.
"""

from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping

from stagekit.diagnostics import default_command_policy
from stagekit.engine.timeouts import CallTimedOut
from stagekit.env_store import SecretRef
from stagekit.errors import EvidenceCommandRejected
from stagekit.stage_types import CheckOutcome

SecretResolver = Callable[[str], str]


class ShellCommandFailed(RuntimeError):
    def __init__(self, label: str, returncode: int, evidence: str):
        super().__init__(f"{label} exited with status {returncode}")
        self.label = label
        self.returncode = returncode
        self.evidence = evidence


def export_environment(
    config: Mapping[str, Any],
    *,
    base: Mapping[str, str] | None = None,
    secret_resolver: SecretResolver | None = None,
) -> dict[str, str]:
    env = dict(os.environ if base is None else base)
    for key, value in config.items():
        if isinstance(value, SecretRef):
            value = value.resolve(secret_resolver)
        elif isinstance(value, bool):
            value = "true" if value else "false"
        env[str(key)] = str(value)
    return env


def format_evidence(label: str, returncode: int | None, stdout: str, stderr: str) -> str:
    parts = [f"$ {label}", f"[exit {returncode}]"]
    if stdout.strip():
        parts.append(stdout.rstrip())
    if stderr.strip():
        parts.append("[stderr]")
        parts.append(stderr.rstrip())
    return "\n".join(parts)


@dataclass(frozen=True)
class ShellCommand:
    script: str
    shell: str = "/bin/bash"
    timeout_seconds: float | None = None
    label: str | None = None
    secret_resolver: SecretResolver | None = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        if not isinstance(self.script, str) or not self.script.strip():
            raise ValueError("Shell command script must be a non-empty string")

    @property
    def display(self) -> str:
        if self.label:
            return self.label
        first = self.script.strip().splitlines()[0]
        return first if len(first) <= 80 else first[:77] + "..."

    def run(self, config: Mapping[str, Any]) -> tuple[int, str]:
        env = export_environment(config, secret_resolver=self.secret_resolver)
        try:
            result = subprocess.run(
                [self.shell, "-c", self.script],
                env=env,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            # subprocess.run has already killed the child.
            raise CallTimedOut(self.display, float(self.timeout_seconds or 0)) from exc
        evidence = format_evidence(self.display, result.returncode, result.stdout or "", result.stderr or "")
        return result.returncode, evidence

    def fingerprint(self) -> str:
        return f"sh:{self.shell}:{self.script.strip()}"


class ShellAction(ShellCommand):
    """Runs the script; a non-zero exit status is a failed action."""

    def apply(self, config: Mapping[str, Any]) -> str:
        returncode, evidence = self.run(config)
        if returncode != 0:
            raise ShellCommandFailed(self.display, returncode, evidence)
        return evidence


class ShellCheck(ShellCommand):
    """Read-only probe; passes when the script exits 0."""

    def __call__(self, config: Mapping[str, Any]) -> CheckOutcome:
        returncode, evidence = self.run(config)
        return CheckOutcome(passed=returncode == 0, evidence=evidence)


def collect_evidence(
    commands: Iterable[str],
    config: Mapping[str, Any],
    *,
    shell: str = "/bin/bash",
    timeout_seconds: float | None = None,
    secret_resolver: SecretResolver | None = None,
) -> str:
    """Run read-only diagnostic commands and return their combined output."""

    commands = list(commands)
    for command in commands:
        reason = default_command_policy(command)
        if reason is not None:
            raise EvidenceCommandRejected(command, reason)

    sections: list[str] = []
    for command in commands:
        probe = ShellCommand(
            command,
            shell=shell,
            timeout_seconds=timeout_seconds,
            label=command,
            secret_resolver=secret_resolver,
        )
        try:
            _returncode, evidence = probe.run(config)
        except CallTimedOut as exc:
            evidence = f"$ {command}\n[timed out] {exc}"
        sections.append(evidence)
    return "\n\n".join(sections)
