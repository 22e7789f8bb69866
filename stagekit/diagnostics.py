"""Root-cause-before-fix discipline as an explicit state machine.

A session is opened for a failed Run Record and walks

    Opened -> Hypothesizing -> EvidenceRequested -> EvidenceReceived
                 ^                                       |
                 +---------------------------------------+--> Concluded

While a session for a stage is open, the stage's definition cannot change.
After `conclude(root_cause=...)` the board authorizes exactly that stage's edit.
"""

from __future__ import annotations

import json
import logging
import os
import re
import shlex
import threading
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Mapping

from stagekit.errors import (
    DiagnosticGuardError,
    DiagnosticStateError,
    EvidenceCommandRejected,
)
from stagekit.records import RunLog, RunRecord, RunStatus, utc_now_iso8601

logger = logging.getLogger(__name__)

CommandPolicy = Callable[[str], "str | None"]


class SessionState(str, Enum):
    OPENED = "Opened"
    HYPOTHESIZING = "Hypothesizing"
    EVIDENCE_REQUESTED = "EvidenceRequested"
    EVIDENCE_RECEIVED = "EvidenceReceived"
    CONCLUDED = "Concluded"


@dataclass(frozen=True)
class RootCauseConfirmed:
    description: str


@dataclass(frozen=True)
class Inconclusive:
    note: str | None = None


Conclusion = RootCauseConfirmed | Inconclusive


@dataclass
class DiagnosticEntry:
    hypothesis: str
    evidence_request: tuple[str, ...] = ()
    evidence: str | None = None
    conclusion: Conclusion | None = None


# Start of a command: beginning of line, after a pipe/separator, or after sudo.
_CMD = r"(?:^|[|;&(]\s*|\bsudo\s+)"

_MUTATING_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("output redirection", re.compile(r"(?<![0-9&<>])>(?![&>])|>>")),
    ("in-place edit", re.compile(_CMD + r"sed\b[^|;&]*\s-i")),
    ("file removal", re.compile(_CMD + r"(rm|rmdir|shred|unlink|truncate|mkfs(\.\w+)?|dd|wipefs)\b")),
    ("file write", re.compile(_CMD + r"(tee|install|cp|mv|chmod|chown|ln|touch|mkdir)\b")),
    (
        "service state change",
        re.compile(r"\bsystemctl\s+(start|stop|restart|reload|enable|disable|mask|unmask|kill)\b"),
    ),
    (
        "package change",
        re.compile(r"\b(apt|apt-get|dnf|yum|pip|pip3)\s+(install|remove|purge|upgrade|full-upgrade|autoremove)\b"),
    ),
    (
        "api mutation",
        re.compile(r"\b(openstack|ceph|ovs-vsctl|ovn-nbctl|ovn-sbctl|mysql)\b.*\b(create|delete|set|unset|add|del|rm|drop|purge)\b", re.IGNORECASE),
    ),
    ("privilege escalation to shell", re.compile(r"\bsudo\s+(-s|-i|su|bash|sh)\b")),
)


def mutating_command_reason(command: str) -> str | None:
    """Return why `command` looks mutating, or None if it reads as read-only."""

    text = (command or "").strip()
    if not text:
        return "empty command"
    for reason, pattern in _MUTATING_PATTERNS:
        if pattern.search(text):
            return reason
    return None


def default_command_policy(command: str) -> str | None:
    try:
        shlex.split(command)
    except ValueError as exc:
        return f"unparseable command: {exc}"
    return mutating_command_reason(command)


class DiagnosticSession:
    def __init__(
        self,
        *,
        session_id: str,
        stage_id: str,
        failed_attempt: int,
        failure_kind: str | None,
        opened_at: str,
        command_policy: CommandPolicy = default_command_policy,
        on_event: Callable[["DiagnosticSession", str, dict[str, Any]], None] | None = None,
    ):
        self.session_id = session_id
        self.stage_id = stage_id
        self.failed_attempt = failed_attempt
        self.failure_kind = failure_kind
        self.opened_at = opened_at
        self.state = SessionState.OPENED
        self.entries: list[DiagnosticEntry] = []
        self.conclusion: Conclusion | None = None
        self.concluded_at: str | None = None
        self._command_policy = command_policy
        self._on_event = on_event

    @property
    def is_open(self) -> bool:
        return self.state != SessionState.CONCLUDED

    @property
    def root_cause_confirmed(self) -> bool:
        return isinstance(self.conclusion, RootCauseConfirmed)

    @property
    def current_entry(self) -> DiagnosticEntry | None:
        return self.entries[-1] if self.entries else None

    def _require(self, *states: SessionState, action: str) -> None:
        if self.state not in states:
            allowed = ", ".join(s.value for s in states)
            raise DiagnosticStateError(
                f"Session {self.session_id} ({self.stage_id}) cannot {action} in state "
                f"{self.state.value} (allowed from: {allowed})"
            )

    def propose_hypothesis(self, text: str) -> None:
        self._require(SessionState.OPENED, SessionState.EVIDENCE_RECEIVED, action="propose a hypothesis")
        if not isinstance(text, str) or not text.strip():
            raise ValueError("Hypothesis text must be a non-empty string")
        self._record("hypothesis", {"text": text.strip()})

    def request_evidence(self, commands: Iterable[str]) -> None:
        self._require(SessionState.HYPOTHESIZING, action="request evidence")
        normalized = tuple(str(cmd).strip() for cmd in commands)
        if not normalized:
            raise ValueError("Evidence request must name at least one command")
        for command in normalized:
            reason = self._command_policy(command)
            if reason is not None:
                raise EvidenceCommandRejected(command, reason)
        self._record("evidence_request", {"commands": list(normalized)})

    def submit_evidence(self, output: str) -> None:
        self._require(SessionState.EVIDENCE_REQUESTED, action="submit evidence")
        if not isinstance(output, str):
            raise TypeError("Evidence output must be a string")
        self._record("evidence", {"output": output})

    def conclude(self, *, root_cause: str | None = None, inconclusive: bool = False, note: str | None = None) -> Conclusion:
        if (root_cause is None) == (not inconclusive):
            raise ValueError("conclude() takes exactly one of root_cause=... or inconclusive=True")
        if root_cause is not None:
            self._require(SessionState.EVIDENCE_RECEIVED, action="confirm a root cause")
            if not root_cause.strip():
                raise ValueError("Root cause description must be non-empty")
            self._record("conclusion", {"root_cause": root_cause.strip()})
        else:
            self._require(
                SessionState.OPENED,
                SessionState.HYPOTHESIZING,
                SessionState.EVIDENCE_REQUESTED,
                SessionState.EVIDENCE_RECEIVED,
                action="conclude",
            )
            self._record("conclusion", {"inconclusive": True, "note": note})
        assert self.conclusion is not None
        return self.conclusion

    def _record(self, event: str, payload: dict[str, Any]) -> None:
        payload = dict(payload)
        payload.setdefault("at", utc_now_iso8601())
        self.apply_event(event, payload)
        if self._on_event is not None:
            self._on_event(self, event, payload)

    def apply_event(self, event: str, payload: Mapping[str, Any]) -> None:
        """Advance the state machine (also used to replay persisted events)."""

        if event == "hypothesis":
            self.entries.append(DiagnosticEntry(hypothesis=str(payload["text"])))
            self.state = SessionState.HYPOTHESIZING
        elif event == "evidence_request":
            entry = self._entry_for(event)
            entry.evidence_request = tuple(payload["commands"])
            self.state = SessionState.EVIDENCE_REQUESTED
        elif event == "evidence":
            entry = self._entry_for(event)
            entry.evidence = str(payload["output"])
            self.state = SessionState.EVIDENCE_RECEIVED
        elif event == "conclusion":
            if payload.get("root_cause"):
                conclusion: Conclusion = RootCauseConfirmed(str(payload["root_cause"]))
            else:
                conclusion = Inconclusive(payload.get("note"))
            if self.entries:
                self.entries[-1].conclusion = conclusion
            self.conclusion = conclusion
            self.concluded_at = payload.get("at")
            self.state = SessionState.CONCLUDED
        else:
            raise ValueError(f"Unknown diagnostic event: {event}")

    def _entry_for(self, event: str) -> DiagnosticEntry:
        entry = self.current_entry
        if entry is None:
            raise DiagnosticStateError(f"Event {event} without a hypothesis in session {self.session_id}")
        return entry

    def to_dict(self) -> dict[str, Any]:
        conclusion: dict[str, Any] | None = None
        if isinstance(self.conclusion, RootCauseConfirmed):
            conclusion = {"type": "RootCauseConfirmed", "description": self.conclusion.description}
        elif isinstance(self.conclusion, Inconclusive):
            conclusion = {"type": "Inconclusive", "note": self.conclusion.note}
        return {
            "session_id": self.session_id,
            "stage_id": self.stage_id,
            "failed_attempt": self.failed_attempt,
            "failure_kind": self.failure_kind,
            "state": self.state.value,
            "opened_at": self.opened_at,
            "concluded_at": self.concluded_at,
            "conclusion": conclusion,
            "entries": [
                {
                    "hypothesis": entry.hypothesis,
                    "evidence_request": list(entry.evidence_request),
                    "evidence": entry.evidence,
                }
                for entry in self.entries
            ],
        }


@dataclass
class DiagnosticBoard:
    """Registry of diagnostic sessions; also the stage registry's edit guard."""

    path: str | None = None
    run_log: RunLog | None = None
    command_policy: CommandPolicy = default_command_policy
    log: logging.Logger = field(default_factory=lambda: logger)

    def __post_init__(self) -> None:
        self._lock = threading.RLock()
        self._sessions: dict[str, DiagnosticSession] = {}
        self._order: list[str] = []
        if self.path is not None and os.path.exists(self.path):
            self._replay(self.path)

    def _replay(self, path: str) -> None:
        with open(path, "r", encoding="utf-8") as handle:
            for lineno, raw in enumerate(handle, start=1):
                line = raw.strip()
                if not line:
                    continue
                try:
                    payload = json.loads(line)
                except json.JSONDecodeError as exc:
                    raise ValueError(f"Corrupt diagnostics log line {lineno} in {path}: {exc}") from exc
                event = payload.get("event")
                if event == "opened":
                    self._add(self._new_session(payload))
                    continue
                session = self._sessions.get(payload.get("session_id"))
                if session is None:
                    raise ValueError(f"Diagnostics log line {lineno} references unknown session")
                session.apply_event(event, payload.get("payload") or {})

    def _new_session(self, payload: Mapping[str, Any]) -> DiagnosticSession:
        return DiagnosticSession(
            session_id=str(payload["session_id"]),
            stage_id=str(payload["stage_id"]),
            failed_attempt=int(payload["failed_attempt"]),
            failure_kind=payload.get("failure_kind"),
            opened_at=str(payload["at"]),
            command_policy=self.command_policy,
            on_event=self._persist_event,
        )

    def _add(self, session: DiagnosticSession) -> None:
        self._sessions[session.session_id] = session
        self._order.append(session.session_id)

    def _write(self, line: Mapping[str, Any]) -> None:
        if self.path is None:
            return
        os.makedirs(os.path.dirname(os.path.abspath(self.path)), exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as handle:
            handle.write(json.dumps(dict(line), ensure_ascii=False))
            handle.write("\n")
            handle.flush()
            os.fsync(handle.fileno())

    def _persist_event(self, session: DiagnosticSession, event: str, payload: dict[str, Any]) -> None:
        with self._lock:
            self._write(
                {
                    "session_id": session.session_id,
                    "stage_id": session.stage_id,
                    "event": event,
                    "payload": payload,
                }
            )
        self.log.info(
            "Diagnostic session %s (%s): %s -> %s",
            session.session_id,
            session.stage_id,
            event,
            session.state.value,
        )

    def open(self, record: RunRecord) -> DiagnosticSession:
        if record.status != RunStatus.FAILED:
            raise DiagnosticStateError(
                f"Diagnostic sessions open only from a Failed run record "
                f"({record.stage_id} attempt {record.attempt} is {record.status.value})"
            )
        with self._lock:
            existing = self.open_session(record.stage_id)
            if existing is not None:
                raise DiagnosticStateError(
                    f"Stage {record.stage_id} already has open diagnostic session {existing.session_id}"
                )
            line = {
                "session_id": uuid.uuid4().hex[:12],
                "stage_id": record.stage_id,
                "failed_attempt": record.attempt,
                "failure_kind": record.failure_kind,
                "event": "opened",
                "at": utc_now_iso8601(),
            }
            self._write(line)
            session = self._new_session(line)
            self._add(session)
        self.log.info(
            "Opened diagnostic session %s for %s attempt %s (%s)",
            session.session_id,
            record.stage_id,
            record.attempt,
            record.failure_kind,
        )
        return session

    def open_or_get(self, record: RunRecord) -> DiagnosticSession:
        with self._lock:
            existing = self.open_session(record.stage_id)
            if existing is not None:
                return existing
            return self.open(record)

    def get(self, session_id: str) -> DiagnosticSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise KeyError(f"Unknown diagnostic session: {session_id}")
        return session

    def sessions(self, stage_id: str | None = None) -> list[DiagnosticSession]:
        items = [self._sessions[sid] for sid in self._order]
        if stage_id is None:
            return items
        return [session for session in items if session.stage_id == stage_id]

    def open_session(self, stage_id: str) -> DiagnosticSession | None:
        for session in reversed(self.sessions(stage_id)):
            if session.is_open:
                return session
        return None

    def open_sessions(self) -> list[DiagnosticSession]:
        return [session for session in self.sessions() if session.is_open]

    def _latest_failed_attempt(self, stage_id: str) -> int | None:
        if self.run_log is None:
            return None
        failed = [rec.attempt for rec in self.run_log.records(stage_id) if rec.status == RunStatus.FAILED]
        return max(failed, default=None)

    def authorize_edit(self, stage_id: str) -> None:
        session = self.open_session(stage_id)
        if session is not None:
            raise DiagnosticGuardError(
                stage_id,
                f"diagnostic session {session.session_id} is {session.state.value}; "
                "conclude it with a confirmed root cause first",
            )
        confirmed = [s for s in self.sessions(stage_id) if s.root_cause_confirmed]
        if not confirmed:
            raise DiagnosticGuardError(stage_id, "no diagnostic session has confirmed a root cause")
        latest_failure = self._latest_failed_attempt(stage_id)
        if latest_failure is not None and max(s.failed_attempt for s in confirmed) < latest_failure:
            raise DiagnosticGuardError(
                stage_id,
                f"attempt {latest_failure} failed after the last confirmed root cause; diagnose it first",
            )
