"""Run Records and the append-only run log.

Each status transition is appended as a complete record line. The current state
of a record (stage id, attempt) is its last line; earlier lines are never
rewritten, so the file doubles as an audit trail and as crash-recovery state.
"""

from __future__ import annotations

import dataclasses
import json
import os
import threading
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable

SCHEMA_VERSION = 1


class RunStatus(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    VERIFIED = "Verified"
    FAILED = "Failed"
    ROLLED_BACK = "RolledBack"


TERMINAL_STATUSES = frozenset({RunStatus.VERIFIED, RunStatus.FAILED, RunStatus.ROLLED_BACK})

TAG_TIMEOUT = "Timeout"
TAG_CANCELLED = "Cancelled"
TAG_IRREVERSIBLE_OVERRIDE = "IrreversibleOverride"
TAG_PRIOR_VERIFICATION_FAILED = "PriorVerificationFailed"
TAG_INTERRUPTED = "Interrupted"


def utc_now_iso8601() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def new_run_id() -> str:
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return f"{timestamp}_{uuid.uuid4().hex[:8]}"


@dataclass(frozen=True)
class RunRecord:
    stage_id: str
    attempt: int
    status: RunStatus
    run_id: str
    revision: int
    idempotency_key: str
    fingerprint: str
    started_at: str
    finished_at: str | None = None
    output: str = ""
    failure_kind: str | None = None
    failed_check: str | None = None
    tags: tuple[str, ...] = ()
    override: bool = False
    seq: int = 0

    @property
    def key(self) -> tuple[str, int]:
        return (self.stage_id, self.attempt)

    def to_dict(self) -> dict[str, Any]:
        payload = dataclasses.asdict(self)
        payload["status"] = self.status.value
        payload["tags"] = list(self.tags)
        payload["schema_version"] = SCHEMA_VERSION
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "RunRecord":
        known = {f.name for f in dataclasses.fields(cls)}
        data = {key: value for key, value in payload.items() if key in known}
        data["status"] = RunStatus(data["status"])
        data["tags"] = tuple(data.get("tags") or ())
        return cls(**data)


def render_evidence(evidence: Any, *, limit: int = 20000) -> str:
    if evidence is None:
        return ""
    if isinstance(evidence, str):
        text = evidence
    else:
        try:
            text = json.dumps(evidence, ensure_ascii=False, sort_keys=True, default=repr)
        except (TypeError, ValueError):
            text = repr(evidence)
    if len(text) > limit:
        return text[:limit] + f"\n<{len(text) - limit} more chars>"
    return text


class RunLog:
    """Append-only Run Record log, optionally backed by a JSONL file."""

    def __init__(self, path: str | None = None):
        self._path = path
        self._lock = threading.Lock()
        self._lines: list[RunRecord] = []
        self._current: dict[tuple[str, int], RunRecord] = {}
        self._order: list[tuple[str, int]] = []
        if path is not None and os.path.exists(path):
            self._replay(path)

    @property
    def path(self) -> str | None:
        return self._path

    def _replay(self, path: str) -> None:
        with open(path, "r", encoding="utf-8") as handle:
            for lineno, raw in enumerate(handle, start=1):
                line = raw.strip()
                if not line:
                    continue
                try:
                    payload = json.loads(line)
                except json.JSONDecodeError as exc:
                    # A crash mid-write can only truncate the final line.
                    remainder = handle.read()
                    if remainder.strip():
                        raise ValueError(f"Corrupt run log line {lineno} in {path}: {exc}") from exc
                    break
                self._index(RunRecord.from_dict(payload))

    def _index(self, record: RunRecord) -> None:
        self._lines.append(record)
        if record.key not in self._current:
            self._order.append(record.key)
        self._current[record.key] = record

    def _append(self, record: RunRecord) -> RunRecord:
        # Caller holds the lock.
        record = dataclasses.replace(record, seq=len(self._lines) + 1)
        if self._path is not None:
            os.makedirs(os.path.dirname(os.path.abspath(self._path)), exist_ok=True)
            with open(self._path, "a", encoding="utf-8") as handle:
                handle.write(json.dumps(record.to_dict(), ensure_ascii=False))
                handle.write("\n")
                handle.flush()
                os.fsync(handle.fileno())
        self._index(record)
        return record

    def open(
        self,
        stage_id: str,
        *,
        run_id: str,
        revision: int,
        idempotency_key: str,
        fingerprint: str,
    ) -> RunRecord:
        """Create the next attempt for `stage_id` in the Running state."""

        with self._lock:
            attempt = 1 + max(
                (attempt for (sid, attempt) in self._current if sid == stage_id), default=0
            )
            record = RunRecord(
                stage_id=stage_id,
                attempt=attempt,
                status=RunStatus.RUNNING,
                run_id=run_id,
                revision=revision,
                idempotency_key=idempotency_key,
                fingerprint=fingerprint,
                started_at=utc_now_iso8601(),
            )
            return self._append(record)

    def transition(self, record: RunRecord, status: RunStatus, **changes: Any) -> RunRecord:
        with self._lock:
            current = self._current.get(record.key)
            if current is None:
                raise KeyError(f"Unknown run record: {record.stage_id} attempt {record.attempt}")
            if current.status == RunStatus.ROLLED_BACK:
                raise ValueError(
                    f"Run record {record.stage_id} attempt {record.attempt} is already RolledBack"
                )
            extra_tags = tuple(changes.pop("tags", ()))
            updated = dataclasses.replace(
                current,
                status=status,
                tags=tuple(dict.fromkeys((*current.tags, *extra_tags))),
                **changes,
            )
            if status in TERMINAL_STATUSES and "finished_at" not in changes:
                updated = dataclasses.replace(updated, finished_at=utc_now_iso8601())
            return self._append(updated)

    def latest(self, stage_id: str) -> RunRecord | None:
        with self._lock:
            candidates = [rec for key, rec in self._current.items() if key[0] == stage_id]
        if not candidates:
            return None
        return max(candidates, key=lambda rec: rec.attempt)

    def latest_by_stage(self) -> dict[str, RunRecord]:
        out: dict[str, RunRecord] = {}
        with self._lock:
            for record in self._current.values():
                existing = out.get(record.stage_id)
                if existing is None or record.attempt > existing.attempt:
                    out[record.stage_id] = record
        return out

    def records(self, stage_id: str | None = None) -> list[RunRecord]:
        """Current state of every record, in creation order."""

        with self._lock:
            items = [self._current[key] for key in self._order]
        if stage_id is None:
            return items
        return [rec for rec in items if rec.stage_id == stage_id]

    def transitions(self, stage_ids: Iterable[str] | None = None) -> list[RunRecord]:
        with self._lock:
            lines = list(self._lines)
        if stage_ids is None:
            return lines
        wanted = set(stage_ids)
        return [rec for rec in lines if rec.stage_id in wanted]
