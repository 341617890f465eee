#!/usr/bin/env python3
"""epicrun CLI entrypoint."""

import sys
import argparse
import logging
from pathlib import Path

from epicrun.commands import epic as cmd_epic_module
from epicrun.commands import chain as cmd_chain_module
from epicrun.commands import status as cmd_status_module


def get_project_root(args) -> Path:
    """Project root from --project-root, else the current directory."""
    return Path(args.project_root or Path.cwd())


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def cmd_epic(args):
    return cmd_epic_module.cmd_epic(args, get_project_root(args))


def cmd_chain(args):
    return cmd_chain_module.cmd_chain(args, get_project_root(args))


def cmd_status(args):
    return cmd_status_module.cmd_status(args, get_project_root(args))


def _uat_blocking(value: str) -> bool:
    if value.lower() in ("true", "yes", "1", "on"):
        return True
    if value.lower() in ("false", "no", "0", "off"):
        return False
    raise argparse.ArgumentTypeError(f"expected true or false, got '{value}'")


def _add_run_options(p) -> None:
    """Options shared by epic and chain."""
    p.add_argument('--skip-done', action='store_true', help='Skip stories whose Status is done')
    p.add_argument('--dry-run', action='store_true', help='Show what would run without invoking the agent')
    p.add_argument('--no-commit', action='store_true', help='Do not commit after each story')
    p.add_argument('--skip-arch', action='store_true', help='Skip the architecture compliance phase')
    p.add_argument('--skip-review', action='store_true', help='Skip the code review phase')
    p.add_argument('--skip-test-quality', action='store_true', help='Skip the test quality phase')
    p.add_argument('--skip-traceability', action='store_true', help='Skip the traceability phase')
    p.add_argument('--no-regression', action='store_true', help='Do not run the regression test gate')
    p.add_argument('--skip-static-analysis', action='store_true',
                   help='Skip the static analysis gate (type check, lint, build, tests)')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='epicrun', description='Phase orchestration engine for epics and stories')
    parser.add_argument('--project-root', '-C', help='Project root (default: current directory)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    subparsers = parser.add_subparsers(dest='command', required=True)

    # epicrun epic
    p_epic = subparsers.add_parser('epic', help='Execute all stories of an epic')
    p_epic.add_argument('epic_id', help='Epic number')
    p_epic.add_argument('--start-from', help='Start from this story (substring of its id)')
    _add_run_options(p_epic)
    p_epic.set_defaults(func=cmd_epic)

    # epicrun chain
    p_chain = subparsers.add_parser('chain', help='Execute several epics in order')
    p_chain.add_argument('epic_ids', nargs='+', help='Epic numbers in execution order')
    p_chain.add_argument('--start-from', help='Start from this epic, skipping earlier ones')
    p_chain.add_argument('--analyze-only', action='store_true', help='Write the chain plan and stop')
    p_chain.add_argument('--no-handoff', action='store_true', help='Do not hand context between epics')
    p_chain.add_argument('--no-uat', action='store_true', help='Skip the acceptance gate')
    p_chain.add_argument('--uat-gate', choices=['full', 'quick', 'skip'], help='Acceptance gate mode')
    p_chain.add_argument('--uat-blocking', type=_uat_blocking, metavar='true|false',
                         help='Halt the chain when an acceptance gate or epic fails')
    p_chain.add_argument('--no-combined-uat', action='store_true', help='Do not write the combined UAT document')
    _add_run_options(p_chain)
    p_chain.set_defaults(func=cmd_chain)

    # epicrun status
    p_status = subparsers.add_parser('status', help='Show checkpoint, metrics and last run of an epic')
    p_status.add_argument('epic_id', help='Epic number')
    p_status.set_defaults(func=cmd_status)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)
    return args.func(args)


if __name__ == '__main__':
    sys.exit(main())
