"""
checkpoint-migrator CLI
~~~~~~~~~~~~~~~~~~~~~~~

Command-line interface for checkpoint-migrator.

Exit codes: 0 success, 1 failure, 2 cancelled, 3 unverified.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any

from checkpoint_migrator.core.phase import Outcome

EXIT_CODES = {
    Outcome.SUCCESS: 0,
    Outcome.FAILURE: 1,
    Outcome.CANCELLED: 2,
    Outcome.UNVERIFIED: 3,
}

_ROLLBACK_WORD = "ROLLBACK"


def main(argv: list[str] | None = None) -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="checkpoint-migrator",
        description="checkpoint-migrator: checkpointed, resumable release migrations",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to the migrator YAML config",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase log verbosity (-v info, -vv debug)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Log mutating commands instead of running them",
    )
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("status", help="Show the persisted migration state")
    subparsers.add_parser("facts", help="Show the collected system facts")
    subparsers.add_parser("candidates", help="List consistent rollback candidates")
    subparsers.add_parser("version", help="Show version")

    step_parser = subparsers.add_parser(
        "step",
        help="Run the next transition",
        description=(
            "Run the next transition. Cancelling is safe only at the "
            "confirmation prompt; do not interrupt checkpoint creation."
        ),
    )
    step_parser.add_argument(
        "--yes",
        action="store_true",
        help="Do not ask before running external actions",
    )
    step_parser.add_argument(
        "--until-blocked",
        action="store_true",
        help="Keep stepping until a step does not succeed or the migration completes",
    )

    rollback_parser = subparsers.add_parser(
        "rollback",
        help="Roll every storage unit back to a checkpoint group",
        description=(
            "Roll every storage unit back to a checkpoint group. Once "
            "confirmed the rollback must not be interrupted."
        ),
    )
    rollback_parser.add_argument(
        "--index",
        type=int,
        default=None,
        help="Candidate index from 'candidates' (default: newest)",
    )
    rollback_parser.add_argument(
        "--yes",
        action="store_true",
        help=f"Do not ask to type {_ROLLBACK_WORD}",
    )

    destroy_parser = subparsers.add_parser(
        "destroy", help="Destroy a checkpoint group"
    )
    destroy_parser.add_argument(
        "--index",
        type=int,
        required=True,
        help="Candidate index from 'candidates'",
    )
    destroy_parser.add_argument(
        "--force",
        action="store_true",
        help="Destroy even the migration's last checkpoint",
    )

    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    if args.command == "version":
        from checkpoint_migrator import __version__

        print(f"checkpoint-migrator {__version__}")
        return
    if args.command is None:
        parser.print_help()
        sys.exit(1)

    from checkpoint_migrator.exceptions import MigratorError

    try:
        orchestrator = _make_orchestrator(args.config, args.dry_run)
        handlers = {
            "status": _run_status,
            "facts": _run_facts,
            "candidates": _run_candidates,
            "step": _run_step,
            "rollback": _run_rollback,
            "destroy": _run_destroy,
        }
        code = handlers[args.command](orchestrator, args)
    except MigratorError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    sys.exit(code)


def _configure_logging(verbosity: int) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _make_orchestrator(config_path: str | None, dry_run: bool) -> Any:
    """Create an Orchestrator from config or defaults."""
    from checkpoint_migrator.config.defaults import DEFAULT_CONFIG
    from checkpoint_migrator.config.loader import load_config, load_config_from_dict
    from checkpoint_migrator.core.orchestrator import Orchestrator

    config = load_config(config_path) if config_path else load_config_from_dict(DEFAULT_CONFIG)
    if dry_run:
        config = config.model_copy(update={"dry_run": True})
    return Orchestrator(config=config)


def _run_status(orchestrator: Any, args: argparse.Namespace) -> int:
    state = orchestrator.status()
    print(f"Run:             {state.run_id}")
    print(f"Phase:           {state.current_phase}")
    print(f"Last checkpoint: {state.last_checkpoint_group or '-'}")
    if state.pending is not None:
        print(
            f"Pending:         {state.pending.operation} "
            f"{state.pending.action or ''} from {state.pending.from_phase}"
        )
    for entry in state.history[-10:]:
        print(
            f"  {entry.timestamp:%Y-%m-%d %H:%M:%S}  {entry.kind:<12} "
            f"{entry.from_phase} -> {entry.to_phase or '-'}  {entry.outcome}  {entry.detail}"
        )
    return 0


def _run_facts(orchestrator: Any, args: argparse.Namespace) -> int:
    print(json.dumps(orchestrator.facts().to_dict(), indent=2, default=str))
    return 0


def _run_candidates(orchestrator: Any, args: argparse.Namespace) -> int:
    candidates = orchestrator.candidates()
    if not candidates:
        print("No consistent checkpoint groups.")
        return 0
    for index, group in enumerate(candidates):
        print(
            f"[{index}] {group.ref}  units={len(group)}  phase={group.phase or '-'}"
        )
    return 0


def _prompt_step(request: Any) -> bool:
    answer = input(f"{request.summary}. Continue? [y/N] ")
    return answer.strip().lower() in ("y", "yes")


def _prompt_rollback(request: Any) -> bool:
    print(f"WARNING: {request.summary}. Changes made since then will be lost.")
    answer = input(f"Type {_ROLLBACK_WORD} to continue: ")
    return answer.strip() == _ROLLBACK_WORD


def _print_result(result: Any) -> None:
    print(f"[{result.outcome.value}] {result.phase}: {result.message}")
    for failure in result.failures:
        print(f"  - {failure}")


def _run_step(orchestrator: Any, args: argparse.Namespace) -> int:
    confirm = (lambda request: True) if args.yes else _prompt_step
    while True:
        result = orchestrator.run_step(confirm=confirm)
        _print_result(result)
        if getattr(result, "rollback_recommended", False):
            print("  Rollback recommended: checkpoint-migrator rollback")
        if not args.until_blocked or not result.ok or result.phase.is_terminal():
            return EXIT_CODES[result.outcome]


def _run_rollback(orchestrator: Any, args: argparse.Namespace) -> int:
    from checkpoint_migrator.rollback.selector import SelectionCriterion

    criterion = SelectionCriterion(index=args.index) if args.index is not None else None
    confirm = (lambda request: True) if args.yes else _prompt_rollback
    result = orchestrator.rollback(criterion=criterion, confirm=confirm)
    print(f"[{result.outcome.value}] {result.message}")
    for failure in result.failures:
        print(f"  - {failure}")
    if result.safety_group is not None:
        print(f"  Safety checkpoint kept: {result.safety_group}")
    return EXIT_CODES[result.outcome]


def _run_destroy(orchestrator: Any, args: argparse.Namespace) -> int:
    from checkpoint_migrator.rollback.selector import SelectionCriterion

    ref = orchestrator.destroy(SelectionCriterion(index=args.index), force=args.force)
    print(f"Destroyed {ref}")
    return 0


if __name__ == "__main__":
    main()
