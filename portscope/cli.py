"""Command line entry point.

Commands:
    detect      Score every adapter and show which one would be used
    collect     Run a full collection pass and print the ports

Usage:
    portscope detect
    portscope collect --json
    python -m portscope.cli collect --debug
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from portscope.collector import Collector
from portscope.config import settings, validate_critical_settings
from portscope.logging_config import setup_logging

logger = logging.getLogger(__name__)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _print_ports(result: dict[str, Any]) -> None:
    print(f"Platform: {result['platformName']} ({result['platform']})")
    print(f"{'PORT':>6}  {'PROTO':5}  {'ADDRESS':39}  {'SOURCE':9}  OWNER")
    for port in result["ports"]:
        print(
            f"{port['host_port']:>6}  {port['protocol']:5}  {port['host_ip']:39}  "
            f"{port['source']:9}  {port['owner']}{' (internal)' if port['internal'] else ''}"
        )
    for facet, error in result["errors"].items():
        if error:
            print(f"! {facet}: {error}")
    for facet, reason in result["degraded"].items():
        print(f"~ {facet} degraded: {reason}")


async def cmd_detect(args: argparse.Namespace) -> int:
    """Score adapters and print the winner."""
    collector = Collector.default(settings)
    try:
        detection = await collector.detect()
    finally:
        await collector.close()

    if detection is None:
        logger.error("No adapter available")
        return 1

    if args.json:
        _print_json(detection.to_dict())
        return 0

    print(f"Selected: {detection.platform_name} (score {detection.score}/100)")
    for platform, score in detection.scores.items():
        reasons = "; ".join(score["reasons"]) or "no signals"
        print(f"  {platform:10} {score['score']:>3}  {reasons}")
    return 0


async def cmd_collect(args: argparse.Namespace) -> int:
    """Run one collection pass."""
    collector = Collector.default(settings)
    try:
        result = await collector.collect_all()
    finally:
        await collector.close()

    if args.json:
        _print_json(result)
    else:
        _print_ports(result)
    return 1 if result["errors"]["ports"] else 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="portscope", description="Discover and attribute listening ports")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--json-logs", action="store_true", help="Emit logs as JSON")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    detect_parser = subparsers.add_parser("detect", help="Score platform adapters")
    detect_parser.add_argument("--json", action="store_true", help="Print JSON")

    collect_parser = subparsers.add_parser("collect", help="Collect ports, applications and VMs")
    collect_parser.add_argument("--json", action="store_true", help="Print JSON")

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    setup_logging(debug=args.debug or settings.debug, json_logs=args.json_logs or settings.json_logs)
    validate_critical_settings()

    commands = {
        "detect": cmd_detect,
        "collect": cmd_collect,
    }
    return asyncio.run(commands[args.command](args))


if __name__ == "__main__":
    sys.exit(main())
