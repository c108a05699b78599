"""Command-line entry point for property onboarding maintenance."""

import argparse
import asyncio
import json
import logging
import sys

from .config import OnboardingConfig
from .reconcile import reconcile_orphans
from .session_state import OnboardingSession

logger = logging.getLogger(__name__)


def show_status(session: OnboardingSession, as_json: bool = False) -> None:
    """Print where the persisted draft stands."""
    draft = session.store.draft
    graph = session.graph
    status = {
        "mode": draft.mode,
        "current_step": draft.current_step,
        "progress": round(graph.progress_fraction(), 2),
        "steps": list(graph.steps),
        "fields": sorted(draft.fields),
        "orphaned_properties": sorted(session.orphans.entries()),
    }
    if as_json:
        print(json.dumps(status, indent=2))
        return

    print(f"Mode: {status['mode']}")
    print(
        f"Step: {status['current_step']} "
        f"({graph.step_index + 1}/{len(graph.steps)}, {status['progress']:.0%})"
    )
    print(f"Filled fields: {', '.join(status['fields']) or 'none'}")
    print(f"Orphaned properties awaiting cleanup: {len(status['orphaned_properties'])}")


async def run_reconcile(session: OnboardingSession) -> int:
    """Delete orphaned properties. Returns a process exit code."""
    if not len(session.orphans):
        print("No orphaned properties recorded")
        return 0

    report = await reconcile_orphans(session.api, session.orphans)
    print(f"Deleted: {len(report.deleted)}")
    print(f"Already gone: {len(report.already_gone)}")
    for primary_id, detail in report.kept.items():
        print(f"Kept {primary_id}: {detail}")
    return 1 if report.kept else 0


async def run_command(args: argparse.Namespace, config: OnboardingConfig) -> int:
    session = OnboardingSession.open(config)
    try:
        if args.command == "status":
            show_status(session, as_json=args.json)
            return 0
        if args.command == "reset":
            session.abandon()
            print("Draft cleared")
            return 0
        return await run_reconcile(session)
    finally:
        await session.close()


def cli() -> None:
    """Command-line interface entry point."""
    parser = argparse.ArgumentParser(
        description="Property onboarding - draft and cleanup tools",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Where does the saved draft stand?
  property-onboarding status

  # Abandon the saved draft
  property-onboarding reset

  # Delete properties left behind by aborted finalizations
  property-onboarding reconcile --config .onboarding/config.yaml
"""
    )

    parser.add_argument(
        "--config",
        default=".onboarding/config.yaml",
        help="Path to config file (default: .onboarding/config.yaml)"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    status_parser = subparsers.add_parser("status", help="Show the persisted draft")
    status_parser.add_argument("--json", action="store_true", help="Print JSON")

    subparsers.add_parser("reset", help="Clear the persisted draft")
    subparsers.add_parser("reconcile", help="Delete orphaned properties")

    args = parser.parse_args()

    config = OnboardingConfig.load(args.config)
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    sys.exit(asyncio.run(run_command(args, config)))


if __name__ == "__main__":
    cli()
