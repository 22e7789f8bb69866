from __future__ import annotations

import argparse
import json
import signal
import sys
from collections.abc import Sequence
from typing import Any

from stack_provisioner.foundation.config_io import load_config
from stack_provisioner.foundation.logging_utils import close_logger, setup_operational_logger
from stack_provisioner.framework.config import ProvisionerConfig
from stack_provisioner.framework.runtime import Deployment
from stack_provisioner.framework.shell import collect_evidence
from stagekit.diagnostics import DiagnosticSession
from stagekit.engine import CancelToken, RunReport, describe_failure
from stagekit.errors import DiagnosticStateError, ExitCode, StageKitError
from stagekit.records import RunStatus, new_run_id


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="stack-provisioner", add_help=True)
    parser.add_argument("--config", default=None, help="Config file (default: config/config.yaml)")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Apply stages in dependency order")
    run.add_argument("--from", dest="from_id", default=None, help="First stage of the range")
    run.add_argument("--to", dest="to_id", default=None, help="Last stage of the range")
    run.add_argument("--dry-run", action="store_true", help="Report what would run; apply nothing")
    run.add_argument(
        "--reapply-drifted",
        action="store_true",
        help="Re-apply verified stages whose inputs changed",
    )
    run.add_argument("--max-workers", type=int, default=None, help="Run independent stages concurrently")

    rollback = sub.add_parser("rollback", help="Roll back a stage (or a range of stages)")
    rollback.add_argument("stage_id")
    rollback.add_argument("--through", default=None, help="Roll back the range stage_id..THROUGH")
    rollback.add_argument("--force-irreversible", action="store_true")
    rollback.add_argument("--yes", action="store_true", help="Do not ask for confirmation")

    status = sub.add_parser("status", help="Show per-stage status")
    status.add_argument("--csv", dest="csv_path", default=None, help="Also write the status table as CSV")
    status.add_argument("--history", nargs="?", const="", default=None, metavar="STAGE")

    diagnose = sub.add_parser("diagnose", help="Open or advance a diagnostic session")
    diagnose.add_argument("stage_id")
    diagnose.add_argument("--hypothesis", default=None)
    diagnose.add_argument("--request", nargs="+", default=None, metavar="CMD")
    diagnose.add_argument("--collect", action="store_true", help="Run the requested commands now")
    evidence = diagnose.add_mutually_exclusive_group()
    evidence.add_argument("--evidence", default=None)
    evidence.add_argument("--evidence-file", default=None)
    conclusion = diagnose.add_mutually_exclusive_group()
    conclusion.add_argument("--root-cause", default=None)
    conclusion.add_argument("--inconclusive", action="store_true")
    diagnose.add_argument("--note", default=None)

    sub.add_parser("list-stages", help="List stages in resolved order")
    sub.add_parser("env", help="Show the environment revision and (masked) values")

    return parser


def load_provisioner_config(config_path: str | None) -> tuple[ProvisionerConfig, list[str]]:
    raw, meta = load_config(config_path=config_path)
    base_dir = meta.get("repo_root") or meta.get("config_dir")
    return ProvisionerConfig.from_dict(raw, base_dir=base_dir)


def print_failure(exc: BaseException) -> None:
    info = describe_failure(exc)
    print(f"FAILED: {exc}", file=sys.stderr)
    if info["stage_id"]:
        print(f"  stage: {info['stage_id']}", file=sys.stderr)
        print(f"  kind: {info['kind']}", file=sys.stderr)
    if info["evidence"]:
        print("  evidence:", file=sys.stderr)
        for line in str(info["evidence"]).splitlines():
            print(f"    {line}", file=sys.stderr)
    if info["diagnostic_session_id"]:
        print(
            f"  diagnostic session: {info['diagnostic_session_id']} "
            f"(stack-provisioner diagnose {info['stage_id']} --hypothesis ...)",
            file=sys.stderr,
        )


def print_report(report: RunReport) -> None:
    for item in report.outcomes:
        suffix = ""
        if item.verification is not None and report.dry_run:
            suffix = f" [{item.verification.summary()}]"
        print(f"{item.outcome:<12} {item.stage_id}  ({item.reason}){suffix}")


def _cmd_run(deployment: Deployment, args: argparse.Namespace) -> int:
    token = CancelToken()
    logger = deployment.logger

    def on_sigint(signum: int, frame: Any) -> None:
        if token.cancelled:
            raise KeyboardInterrupt
        token.cancel("interrupted by user (SIGINT)")
        logger.warning("Cancellation requested; stopping before the next stage (Ctrl-C again to abort)")

    previous = signal.signal(signal.SIGINT, on_sigint)
    try:
        report = deployment.engine.run(
            args.from_id,
            args.to_id,
            dry_run=args.dry_run,
            cancel=token,
            reapply_drifted=args.reapply_drifted,
        )
    finally:
        signal.signal(signal.SIGINT, previous)

    print_report(report)
    if not args.dry_run:
        print(deployment.next_hint())
    return ExitCode.OK


def _confirm(prompt: str) -> bool:
    try:
        answer = input(f"{prompt} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in {"y", "yes"}


def _cmd_rollback(deployment: Deployment, args: argparse.Namespace) -> int:
    registry = deployment.registry
    if args.through:
        targets = []
        for stage in reversed(registry.select_range(args.stage_id, args.through)):
            latest = deployment.run_log.latest(stage.id)
            if latest is not None and latest.status in (RunStatus.VERIFIED, RunStatus.FAILED):
                targets.append(stage.id)
    else:
        targets = [registry.resolve(args.stage_id).id]

    if not targets:
        print("Nothing to roll back.")
        return ExitCode.OK

    if not args.yes:
        print("This will run the rollback for: " + ", ".join(targets))
        if not _confirm("Continue?"):
            print("Aborted.")
            return ExitCode.CANCELLED

    if args.through:
        outcomes = deployment.rollbacks.rollback_range(
            args.stage_id,
            args.through,
            force_irreversible=args.force_irreversible,
        )
    else:
        outcomes = [
            deployment.rollbacks.rollback(args.stage_id, force_irreversible=args.force_irreversible)
        ]
    for outcome in outcomes:
        flag = " (irreversible override)" if outcome.override else ""
        print(f"rolled back  {outcome.stage_id}  attempt={outcome.record.attempt}{flag}")
    print(deployment.next_hint())
    return ExitCode.OK


def _cmd_status(deployment: Deployment, args: argparse.Namespace) -> int:
    from stack_provisioner.app.status import export_status_csv, history_frame, render_status

    print(render_status(deployment))
    if args.history is not None:
        df = history_frame(deployment, args.history or None)
        print("")
        print(df.to_string(index=False) if not df.empty else "No run history.")
    if args.csv_path:
        export_status_csv(deployment, args.csv_path)
        print(f"Wrote {args.csv_path}")
    return ExitCode.OK


def _session_for(deployment: Deployment, stage_id: str) -> DiagnosticSession:
    session = deployment.board.open_session(stage_id)
    if session is not None:
        return session
    latest = deployment.run_log.latest(stage_id)
    if latest is None or latest.status != RunStatus.FAILED:
        state = latest.status.value if latest is not None else "never run"
        raise DiagnosticStateError(f"Stage {stage_id} has no failed run record to diagnose (latest: {state})")
    return deployment.board.open(latest)


def _cmd_diagnose(deployment: Deployment, args: argparse.Namespace) -> int:
    stage = deployment.registry.resolve(args.stage_id)
    session = _session_for(deployment, stage.id)

    if args.hypothesis:
        session.propose_hypothesis(args.hypothesis)
    if args.request:
        session.request_evidence(args.request)
    if args.collect:
        entry = session.current_entry
        if entry is None or not entry.evidence_request:
            raise DiagnosticStateError(f"Session {session.session_id} has no evidence request to collect")
        output = collect_evidence(
            entry.evidence_request,
            deployment.store.snapshot().values,
            shell=deployment.cfg.engine.shell,
            timeout_seconds=deployment.cfg.engine.timeout_seconds,
        )
        session.submit_evidence(output)
    if args.evidence is not None:
        session.submit_evidence(args.evidence)
    if args.evidence_file:
        with open(args.evidence_file, "r", encoding="utf-8") as handle:
            session.submit_evidence(handle.read())
    if args.root_cause:
        session.conclude(root_cause=args.root_cause)
    elif args.inconclusive:
        session.conclude(inconclusive=True, note=args.note)

    print(json.dumps(session.to_dict(), indent=2, ensure_ascii=False))
    return ExitCode.OK


def _cmd_list_stages(deployment: Deployment, args: argparse.Namespace) -> int:
    for row in deployment.registry.describe():
        deps = ",".join(row["depends_on"]) or "-"
        flag = "  [irreversible]" if row["irreversible"] else ""
        print(f"{row['stage_id']}  (rank={row['rank']}, depends_on={deps}){flag}")
        if row["description"]:
            print(f"    {row['description']}")
    return ExitCode.OK


def _cmd_env(deployment: Deployment, args: argparse.Namespace) -> int:
    snapshot = deployment.store.snapshot()
    print(f"revision: {snapshot.revision}")
    for key, value in snapshot.masked().items():
        print(f"{key}={value}")
    return ExitCode.OK


COMMANDS = {
    "run": _cmd_run,
    "rollback": _cmd_rollback,
    "status": _cmd_status,
    "diagnose": _cmd_diagnose,
    "list-stages": _cmd_list_stages,
    "env": _cmd_env,
}


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)

    try:
        cfg, warnings = load_provisioner_config(args.config)
    except (FileNotFoundError, ValueError) as exc:
        print(f"Config error: {exc}", file=sys.stderr)
        return ExitCode.USAGE

    run_id = new_run_id()
    logger, _log_path = setup_operational_logger(cfg.log_dir, run_id, level=cfg.log_level)
    try:
        for warning in warnings:
            logger.warning(warning)
        try:
            deployment = Deployment.open(cfg, logger=logger, max_workers=getattr(args, "max_workers", None))
            for warning in deployment.warnings:
                logger.warning(warning)
            handler = COMMANDS.get(args.command)
            if handler is None:
                raise AssertionError(f"Unhandled command: {args.command}")
            return int(handler(deployment, args))
        except StageKitError as exc:
            print_failure(exc)
            return int(exc.exit_code)
        except (ValueError, FileNotFoundError, KeyError) as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return ExitCode.USAGE
        except Exception:
            logger.exception("Unexpected error")
            return ExitCode.UNEXPECTED
    finally:
        close_logger(logger)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main(sys.argv[1:]))
