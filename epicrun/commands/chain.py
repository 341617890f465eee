"""
epicrun chain - Execute several epics in order with hand-offs and UAT gates.
"""

from pathlib import Path

from pydantic import ValidationError

from epicrun.commands.epic import skipped_phases
from epicrun.lib.config import ConfigurationError
from epicrun.lib.constants import EXIT_CONFIG_ERROR, EXIT_LOCK_TIMEOUT
from epicrun.runner.locking import LockTimeout
from epicrun.workflow.chain import chain_flow
from epicrun.workflow.models import ChainRequest


def build_request(args, project_root: Path) -> ChainRequest:
    return ChainRequest(
        project_root=str(project_root),
        epic_ids=args.epic_ids,
        start_from=args.start_from,
        analyze_only=args.analyze_only,
        no_handoff=args.no_handoff,
        no_uat=args.no_uat,
        uat_gate_mode=args.uat_gate,
        uat_blocking=args.uat_blocking,
        no_combined_uat=args.no_combined_uat,
        skip_done=args.skip_done,
        dry_run=args.dry_run,
        no_commit=args.no_commit,
        skip_phases=skipped_phases(args),
        run_regression=not args.no_regression,
        run_static_analysis=not args.skip_static_analysis,
        verbose=args.verbose,
    )


def cmd_chain(args, project_root: Path) -> int:
    """Run a chain of epics and return the chain exit code."""
    try:
        request = build_request(args, project_root)
    except ValidationError as e:
        print(f"ERROR: Invalid arguments: {e}")
        return EXIT_CONFIG_ERROR

    try:
        result = chain_flow(request)
    except ConfigurationError as e:
        print(f"ERROR: {e}")
        return EXIT_CONFIG_ERROR
    except LockTimeout as e:
        print(f"ERROR: {e}")
        return EXIT_LOCK_TIMEOUT

    print()
    print(f"Chain: {' -> '.join(result['epic_ids'])}")
    print("=" * 60)
    if result["plan"]:
        print(f"Plan:           {result['plan']}")
    if request.analyze_only:
        print("Analysis only; no epics were executed")
        return result["exit_code"]

    print(f"Completed:      {result['completed']}")
    print(f"Failed:         {result['failed']}")
    print(f"Skipped:        {result['skipped']}")
    if result["halted"]:
        print("Halted:         yes (UAT blocking)")
    if result["combined_uat"]:
        print(f"Combined UAT:   {result['combined_uat']}")
    print(f"Exit code:      {result['exit_code']}")
    return result["exit_code"]
