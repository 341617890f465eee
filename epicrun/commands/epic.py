"""
epicrun epic - Execute every story of one epic.
"""

import logging
from pathlib import Path

from pydantic import ValidationError

from epicrun.lib.config import ConfigurationError
from epicrun.lib.constants import EXIT_CONFIG_ERROR, EXIT_LOCK_TIMEOUT, EXIT_SUCCESS
from epicrun.lib.types import PhaseType
from epicrun.runner.locking import LockTimeout
from epicrun.workflow.epic import epic_flow
from epicrun.workflow.models import EpicRequest

logger = logging.getLogger(__name__)


def skipped_phases(args) -> list[str]:
    """Phase names disabled by --skip-* flags."""
    skips = []
    if getattr(args, 'skip_arch', False):
        skips.append(PhaseType.ARCH_COMPLIANCE.value)
    if getattr(args, 'skip_review', False):
        skips.append(PhaseType.CODE_REVIEW.value)
    if getattr(args, 'skip_test_quality', False):
        skips.append(PhaseType.TEST_QUALITY.value)
    if getattr(args, 'skip_traceability', False):
        skips.append(PhaseType.TRACEABILITY.value)
    return skips


def build_request(args, project_root: Path) -> EpicRequest:
    return EpicRequest(
        project_root=str(project_root),
        epic_id=args.epic_id,
        start_from=args.start_from,
        skip_done=args.skip_done,
        dry_run=args.dry_run,
        no_commit=args.no_commit,
        skip_phases=skipped_phases(args),
        run_regression=not args.no_regression,
        run_static_analysis=not args.skip_static_analysis,
        verbose=args.verbose,
    )


def print_epic_summary(result: dict) -> None:
    print()
    print(f"Epic {result['epic_id']}: {result['status']}")
    print("=" * 60)
    print(f"Completed:      {result['completed']}")
    print(f"Failed:         {result['failed']}")
    print(f"Skipped:        {result['skipped']}")
    print(f"Run directory:  {result['run_dir']}")

    failure = result.get("failure")
    if failure:
        print()
        print(f"Failed story:   {failure['story']}")
        print(f"Phase:          {failure['phase'] or 'unknown'}")
        print(f"Verdict:        {failure['verdict'] or 'none'}")
        print(f"Checkpoint:     {failure['checkpoint'] or 'none'}")
        print(f"Resume index:   {failure['resume_index']}")
        print()
        print(f"Resume with: epicrun epic {result['epic_id']} --start-from {failure['story']}")


def cmd_epic(args, project_root: Path) -> int:
    """Run one epic and return its exit code."""
    try:
        request = build_request(args, project_root)
    except ValidationError as e:
        print(f"ERROR: Invalid arguments: {e}")
        return EXIT_CONFIG_ERROR

    try:
        result = epic_flow(request)
    except ConfigurationError as e:
        print(f"ERROR: {e}")
        return EXIT_CONFIG_ERROR
    except LockTimeout as e:
        print(f"ERROR: {e}")
        print("  Another executor is running this epic")
        return EXIT_LOCK_TIMEOUT

    print_epic_summary(result)
    if result["exit_code"] == EXIT_SUCCESS:
        logger.debug(f"Epic {request.epic_id} succeeded")
    return result["exit_code"]
