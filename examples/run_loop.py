#!/usr/bin/env python3
"""Example: drive the loop from Python instead of the ``ralph-loop`` CLI.

Usage (after ``pip install -e .``):
    python examples/run_loop.py /path/to/repo --target 3
    python examples/run_loop.py /path/to/repo --task "Add retries to the HTTP client"
"""

from __future__ import annotations

import argparse
import logging

from ralph_loop import Orchestrator, load_config
from ralph_loop.__main__ import build_runner


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the ralph improvement loop.")
    parser.add_argument("repo", help="Path to the target repo")
    parser.add_argument("--target", type=int, default=None, help="Merged improvements to reach")
    parser.add_argument("--task", default=None, help="Run one explicit task")
    parser.add_argument("--agent", choices=["claude", "codex"], default=None)
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s  %(levelname)-8s  %(message)s",
        datefmt="%H:%M:%S",
    )

    config = load_config(args.repo, overrides={"target": args.target, "task": args.task}, agent=args.agent)
    orchestrator = Orchestrator(config, runner=build_runner(config))
    exit_code = orchestrator.run()

    print(f"\nDone! {orchestrator.completed} merged, {orchestrator.attempted} attempted (exit {exit_code})")
    print(f"Events written to: {config.log_file}")
    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
