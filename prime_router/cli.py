"""
Prime Router CLI
================

Routes a single prompt through the configured providers and prints the
outcome.

Usage:
    # Route one prompt
    python -m prime_router --config providers.yaml --prompt "Summarize this paragraph"

    # Private request, JSON output with the full processing record
    python -m prime_router --config providers.yaml --prompt "..." --private --json

    # Print the effective configuration (files + env overrides)
    python -m prime_router --config providers.yaml --show-config
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from prime_router import __version__
from prime_router.core.request_orchestrator import RequestOrchestrator, RouterOutcome
from prime_router.core.router_config import ConfigManager
from prime_router.core.router_errors import ConfigError
from prime_router.core.router_models import InferenceRequest

logger = logging.getLogger(__name__)


def configure_logging(debug: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        prog="prime-router",
        description="Hybrid local/cloud inference router",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Config file (YAML or JSON); defaults to ./prime_router.yaml and ~/.prime_router/config.yaml",
    )
    parser.add_argument(
        "--prompt",
        type=str,
        default=None,
        help="Prompt to route",
    )
    parser.add_argument(
        "--private",
        action="store_true",
        help="Mark the request privacy-sensitive (local providers only)",
    )
    parser.add_argument(
        "--session",
        type=str,
        default=None,
        help="Session id used for provider affinity",
    )
    parser.add_argument(
        "--max-latency-ms",
        type=float,
        default=None,
        help="Latency budget for each attempt",
    )
    parser.add_argument(
        "--domain",
        action="append",
        default=[],
        help="Domain tag (repeatable)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the full result as JSON",
    )
    parser.add_argument(
        "--stats",
        action="store_true",
        help="Print router statistics after the request",
    )
    parser.add_argument(
        "--show-config",
        action="store_true",
        help="Print the effective configuration and exit",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    args = parser.parse_args(argv)
    if not args.show_config and not args.prompt:
        parser.error("--prompt is required unless --show-config is given")
    return args


async def route_once(manager: ConfigManager, request: InferenceRequest, show_stats: bool = False) -> RouterOutcome:
    async with RequestOrchestrator.from_config(manager.config, manager.registry) as router:
        router.bind_config(manager)
        outcome = await router.handle(request)
        if show_stats:
            print(json.dumps(router.get_statistics(), indent=2, default=str))
        return outcome


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    args = parse_args(argv)
    configure_logging(args.debug)

    manager = ConfigManager([Path(args.config)] if args.config else None)
    try:
        manager.load_sync()
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e.message}")
        return 2

    if args.show_config:
        print(json.dumps(manager.config.to_dict(), indent=2, default=str))
        return 0

    request = InferenceRequest(
        prompt=args.prompt,
        session_id=args.session,
        privacy_sensitive=args.private,
        max_latency_ms=args.max_latency_ms,
        domain_tags=tuple(args.domain),
    )

    try:
        outcome = asyncio.run(route_once(manager, request, args.stats))
    except ConfigError as e:
        # unknown scorer or ranking policy
        logger.error(f"Invalid configuration: {e.message}")
        return 2

    if args.json:
        print(json.dumps(outcome.to_dict(), indent=2, default=str))
    elif outcome.ok:
        print(outcome.text)
        logger.info(f"Served by {outcome.provider_id} (score={outcome.verdict.score})")
    else:
        print(f"{outcome.error_type}: {outcome.message}", file=sys.stderr)

    return 0 if outcome.ok else 1


if __name__ == "__main__":
    sys.exit(main())
