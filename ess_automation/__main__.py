#!/usr/bin/env python3
"""
ESS Automation

Evaluates user-defined rules against prices, weather and battery telemetry and
programs the inverter's scheduler when one matches.
"""

import argparse
import asyncio
import json
import logging

from .config import Config
from .runner import build_orchestrator, configure_logging, run_all_users, run_session

logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog='ess_automation',
        description="ESS Automation - rule-driven battery scheduling from prices, weather and telemetry"
    )
    parser.add_argument("--config", "-c", default="config.yaml", help="Path to config.yaml")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    commands = parser.add_subparsers(dest="command", required=True)

    cycle = commands.add_parser("cycle", help="Run one automation cycle for a user")
    cycle.add_argument("--user", "-u", required=True)
    cycle.add_argument("--dry-run", "-d", action="store_true",
                       help="Evaluate rules without writing to the device or saving state.")

    session = commands.add_parser("session", help="Run cycles for a user every interval until interrupted")
    session.add_argument("--user", "-u", required=True)

    sweep = commands.add_parser("all", help="Run one cycle for every initialized user")
    sweep.add_argument("--dry-run", "-d", action="store_true")

    for name, help_text in (("init", "Initialize automation state for a user"),
                            ("cancel", "Cancel the active rule and clear all scheduler slots"),
                            ("enable", "Enable automation for a user"),
                            ("disable", "Disable automation and clear all scheduler slots"),
                            ("status", "Show automation state and cooldowns")):
        command = commands.add_parser(name, help=help_text)
        command.add_argument("--user", "-u", required=True)

    return parser.parse_args(argv)


async def main(argv=None):
    args = parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.INFO)
    orchestrator = build_orchestrator(Config(args.config))

    try:
        if args.command == "cycle":
            result = await orchestrator.run_cycle(args.user, dry_run=args.dry_run)
            print(json.dumps(result.to_dict(), indent=2, default=str))
        elif args.command == "session":
            await run_session(orchestrator, args.user)
        elif args.command == "all":
            results = await run_all_users(orchestrator, dry_run=args.dry_run)
            print(json.dumps([r.to_dict() for r in results], indent=2, default=str))
        elif args.command == "init":
            orchestrator.initialize_user(args.user)
        elif args.command == "cancel":
            await orchestrator.cancel(args.user)
        elif args.command in ("enable", "disable"):
            await orchestrator.set_enabled(args.user, args.command == "enable")
        elif args.command == "status":
            print(json.dumps(orchestrator.status(args.user), indent=2, default=str))
    finally:
        await orchestrator.close()


def cli():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Stopped")


if __name__ == "__main__":
    cli()
