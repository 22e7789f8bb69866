from __future__ import annotations

from typing import Any

import pandas as pd

from stack_provisioner.framework.runtime import Deployment
from stagekit.records import RunRecord, RunStatus

STATUS_COLUMNS = [
    "stage_id",
    "rank",
    "status",
    "attempt",
    "revision",
    "failure_kind",
    "failed_check",
    "tags",
    "finished_at",
    "depends_on",
    "irreversible",
]

HISTORY_COLUMNS = [
    "seq",
    "stage_id",
    "attempt",
    "status",
    "run_id",
    "revision",
    "failure_kind",
    "failed_check",
    "tags",
    "override",
    "started_at",
    "finished_at",
]


def _row(stage_id: str, record: RunRecord | None) -> dict[str, Any]:
    if record is None:
        return {"stage_id": stage_id, "status": RunStatus.PENDING.value}
    return {
        "stage_id": stage_id,
        "status": record.status.value,
        "attempt": record.attempt,
        "revision": record.revision,
        "failure_kind": record.failure_kind or "",
        "failed_check": record.failed_check or "",
        "tags": ",".join(record.tags),
        "finished_at": record.finished_at or "",
    }


def status_frame(deployment: Deployment) -> pd.DataFrame:
    """One row per stage in resolved order; never-run stages show as Pending."""

    latest = deployment.run_log.latest_by_stage()
    rows: list[dict[str, Any]] = []
    for stage in deployment.registry.resolve_order():
        row = _row(stage.id, latest.get(stage.id))
        row["rank"] = stage.rank
        row["depends_on"] = ",".join(sorted(stage.depends_on))
        row["irreversible"] = stage.irreversible
        rows.append(row)
    df = pd.DataFrame(rows, columns=STATUS_COLUMNS)
    for column in ("attempt", "revision"):
        df[column] = pd.to_numeric(df[column], errors="coerce").astype("Int64")
    return df.fillna({"failure_kind": "", "failed_check": "", "tags": "", "finished_at": ""})


def history_frame(deployment: Deployment, stage_id: str | None = None) -> pd.DataFrame:
    """Every persisted transition, oldest first."""

    stage_ids = None if stage_id is None else [deployment.registry.resolve(stage_id).id]
    rows = []
    for record in deployment.run_log.transitions(stage_ids):
        payload = record.to_dict()
        payload["tags"] = ",".join(record.tags)
        rows.append({column: payload.get(column) for column in HISTORY_COLUMNS})
    return pd.DataFrame(rows, columns=HISTORY_COLUMNS)


def status_counts(df: pd.DataFrame) -> dict[str, int]:
    if df.empty:
        return {}
    return {str(key): int(value) for key, value in df["status"].value_counts().sort_index().items()}


def render_status(deployment: Deployment) -> str:
    df = status_frame(deployment)
    lines = [
        f"Environment revision: {deployment.store.revision}",
        "",
        df[["stage_id", "status", "attempt", "revision", "failure_kind", "tags"]].to_string(index=False),
        "",
        "Totals: " + ", ".join(f"{key}={value}" for key, value in status_counts(df).items()),
    ]
    sessions = deployment.board.open_sessions()
    if sessions:
        lines.append("")
        lines.append("Open diagnostic sessions:")
        for session in sessions:
            lines.append(
                f"  {session.session_id}  {session.stage_id}  attempt={session.failed_attempt}  "
                f"state={session.state.value}"
            )
    lines.append("")
    lines.append(deployment.next_hint())
    return "\n".join(lines)


def export_status_csv(deployment: Deployment, path: str) -> str:
    status_frame(deployment).to_csv(path, index=False)
    return path
