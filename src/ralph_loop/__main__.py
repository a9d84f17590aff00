"""CLI entrypoint for ralph-loop."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from ralph_loop import claude_code, codex_cli  # noqa: F401  (registers the runners)
from ralph_loop.agent_runner import AgentDispatcher, get_agent_class
from ralph_loop.backlog import BacklogStore
from ralph_loop.config import AGENT_ROLES, ConfigError, LoopConfig, load_config
from ralph_loop.events import EventLog
from ralph_loop.orchestrator import EXIT_FAILURE, EXIT_INTERRUPTED, Orchestrator
from ralph_loop.preflight import (
    DependencyMissingError,
    PreflightReport,
    build_preflight_report,
    check_dependencies,
)
from ralph_loop.reconcile import MatchPolicy, ReconcileReport, ReconciliationEngine
from ralph_loop.schemas import AgentBackend

logger = logging.getLogger(__name__)


def _load_dotenv() -> None:
    """Load .env from cwd, its parent, or the project root."""
    project_root = Path(__file__).resolve().parent.parent.parent  # src/ralph_loop/__main__.py
    for dir_ in (Path.cwd(), Path.cwd().parent, project_root, project_root.parent):
        env_file = dir_ / ".env"
        if env_file.is_file():
            load_dotenv(env_file)
            return
    load_dotenv()


_load_dotenv()

# CLI spelling of each agent role.
_ROLE_FLAGS = {"backlog": "backlog", "plan": "plan", "implement": "impl", "review": "review"}


def _add_common_args(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--repo",
        type=str,
        default=".",
        help="Path to the target git repository (default: current directory).",
    )
    p.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a ralph.config.json (default: <repo>/ralph.config.json).",
    )
    p.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose (DEBUG) logging.",
    )


def _add_agent_args(p: argparse.ArgumentParser) -> None:
    backends = [b.value for b in AgentBackend]
    p.add_argument(
        "--agent",
        choices=backends,
        default=None,
        help="Backend for every step unless a per-step flag overrides it.",
    )
    for role in AGENT_ROLES:
        flag = _ROLE_FLAGS[role]
        names = [f"--{flag}-agent"] + ([f"--{role}-agent"] if flag != role else [])
        p.add_argument(*names, dest=f"{role}_agent", choices=backends, default=None, help=f"Backend for the {role} step.")
        names = [f"--{flag}-model"] + ([f"--{role}-model"] if flag != role else [])
        p.add_argument(*names, dest=f"{role}_model", type=str, default=None, help=f"Model for the {role} step.")


def _build_parser() -> argparse.ArgumentParser:
    """Build and return the command-line parser for all supported modes."""
    p = argparse.ArgumentParser(
        prog="ralph-loop",
        description="ralph-loop - run coding agents over a task backlog until a target is reached.",
    )
    sub = p.add_subparsers(dest="command")

    # Run sub-command
    run_p = sub.add_parser("run", help="Run the improvement loop.")
    _add_common_args(run_p)
    _add_agent_args(run_p)
    run_p.add_argument(
        "--target",
        type=int,
        default=None,
        help="Total merged improvements to reach (default: run until the backlog is empty).",
    )
    run_p.add_argument("--task", type=str, default=None, help="Run a single explicit task.")
    run_p.add_argument("--parallelism", "-j", type=int, default=None, help="Concurrent workers (default: 1).")
    run_p.add_argument("--branch-prefix", type=str, default=None, help="Prefix for improvement branches.")
    run_p.add_argument("--max-turns", type=int, default=None, help="Agent turn cap per step (default: 100).")
    run_p.add_argument(
        "--integration",
        choices=["local", "pull_request"],
        default=None,
        help="How finished branches reach the base branch (default: local).",
    )
    run_p.add_argument(
        "--skip-preflight",
        action="store_true",
        help="Skip dependency checks before running (not recommended).",
    )

    # Sync-backlog sub-command
    sync_p = sub.add_parser(
        "sync-backlog",
        help="Remove backlog and triage entries whose improvements already merged.",
    )
    _add_common_args(sync_p)

    # Doctor sub-command
    doctor_p = sub.add_parser(
        "doctor",
        help="Run setup diagnostics (repo access, binaries, authentication).",
    )
    _add_common_args(doctor_p)
    _add_agent_args(doctor_p)
    doctor_p.add_argument(
        "--integration",
        choices=["local", "pull_request"],
        default=None,
        help="Also check the tools this integration mode needs.",
    )
    return p


def _config_from_args(args: argparse.Namespace) -> LoopConfig:
    overrides: dict[str, Any] = {"verbose": True if args.verbose else None}
    for key in ("target", "task", "parallelism", "branch_prefix", "max_turns", "integration"):
        overrides[key] = getattr(args, key, None)
    return load_config(
        args.repo,
        config_path=args.config,
        overrides=overrides,
        agent=getattr(args, "agent", None),
        step_agents={role: getattr(args, f"{role}_agent", None) for role in AGENT_ROLES},
        step_models={role: getattr(args, f"{role}_model", None) for role in AGENT_ROLES},
    )


def build_runner(config: LoopConfig) -> AgentDispatcher:
    """Create one runner per backend the configured steps use."""
    binaries = {AgentBackend.CLAUDE: config.claude_binary, AgentBackend.CODEX: config.codex_binary}
    runners = {}
    for backend in sorted(config.agents.backends(), key=lambda b: b.value):
        runner_cls = get_agent_class(backend.value)
        runners[backend] = runner_cls(binaries[backend], timeout=config.step_timeout_seconds)
    return AgentDispatcher(runners)


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and dispatch to the appropriate mode."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    level = logging.DEBUG if getattr(args, "verbose", False) else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )
    if args.command is None:
        parser.print_help()
        print(
            "\nTip: run 'ralph-loop doctor' to validate setup, then\n"
            "     'ralph-loop run --target <n>' to start the loop.",
            file=sys.stderr,
        )
        return EXIT_FAILURE

    try:
        config = _config_from_args(args)
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FAILURE

    if args.command == "doctor":
        return _run_doctor(config)
    if args.command == "sync-backlog":
        return _run_sync_backlog(config)
    return _run_loop(config, skip_preflight=args.skip_preflight)


# -- doctor ------------------------------------------------------


def _print_doctor_report(report: PreflightReport, config: LoopConfig) -> None:
    print("\n  ralph-loop - Setup Diagnostics")
    print("  " + "=" * 58)
    print(f"  Repository:  {report.repo_path}")
    print(f"  Integration: {config.integration}")
    for role in AGENT_ROLES:
        print(f"  {role.capitalize() + ':':<12} {getattr(config.agents, role).label()}")

    for check in report.checks:
        status = {"pass": "PASS", "warn": "WARN", "fail": "FAIL"}.get(check.status, "INFO")
        print(f"\n  [{status}] {check.label}")
        print(f"    {check.detail}")
        if check.hint and check.status != "pass":
            print(f"    Fix: {check.hint}")

    summary = report.summary
    print("\n  " + "-" * 58)
    print(f"  Summary: {summary['pass']} pass, {summary['warn']} warn, {summary['fail']} fail")
    print(f"  Ready:   {'yes' if report.ready else 'no'}")
    print()


def _run_doctor(config: LoopConfig) -> int:
    report = build_preflight_report(config)
    _print_doctor_report(report, config)
    return 0 if report.ready else EXIT_FAILURE


# -- sync-backlog ------------------------------------------------


def print_sync_report(report: ReconcileReport) -> None:
    print(f"Merged tasks seen: {report.merged_tasks_seen}")
    print(f"Removed tasks   : {report.removed_total}")
    print(f"  - backlog     : {len(report.removed_from_backlog)}")
    print(f"  - triage      : {len(report.removed_from_triage)}")
    for task in report.removed_from_backlog:
        print(f"  backlog: {task}")
    for task in report.removed_from_triage:
        print(f"  triage: {task}")


def _run_sync_backlog(config: LoopConfig) -> int:
    engine = ReconciliationEngine(
        EventLog(config.log_file),
        BacklogStore(config.backlog_file, name="backlog"),
        BacklogStore(config.triage_file, name="triage"),
        repo_dir=config.repo_dir,
        branch_prefixes=config.branch_prefixes,
        base_branch=config.base_branch,
        policy=MatchPolicy(config.match_threshold, config.match_min_shared_tokens),
    )
    print_sync_report(engine.run())
    return 0


# -- run ---------------------------------------------------------


def _install_signal_handlers(cancel_event: threading.Event) -> dict[int, Any]:
    """First SIGINT/SIGTERM asks workers to stop; a second one aborts."""

    def _handle(signum: int, _frame: Any) -> None:
        if cancel_event.is_set():
            raise KeyboardInterrupt
        logger.warning("Received %s; stopping workers and cleaning up", signal.Signals(signum).name)
        cancel_event.set()

    previous = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.signal(signum, _handle)
    return previous


def _run_loop(config: LoopConfig, *, skip_preflight: bool = False) -> int:
    if not skip_preflight:
        try:
            check_dependencies(config)
        except DependencyMissingError as exc:
            print("\nError: required tools are missing.", file=sys.stderr)
            for message in exc.failures:
                print(f"  - {message}", file=sys.stderr)
            print(f'\nRun diagnostics for full details:\n  ralph-loop doctor --repo "{config.repo_dir}"', file=sys.stderr)
            return EXIT_FAILURE

    cancel_event = threading.Event()
    orchestrator = Orchestrator(config, runner=build_runner(config), cancel_event=cancel_event)
    previous = _install_signal_handlers(cancel_event)
    try:
        return orchestrator.run()
    except KeyboardInterrupt:
        return EXIT_INTERRUPTED
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


if __name__ == "__main__":
    raise SystemExit(main())
