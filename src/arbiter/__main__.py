"""Arbiter Settlement Worker - Entry Point

Usage:
    python -m arbiter [--config PATH] [--dry-run | --live] [--log-level LEVEL] [COMMAND]

Commands:
    run     - Start the worker: HTTP API plus expiration sweeps (default)
    sweep   - Run one coarse expiration sweep and exit
    health  - Query the running worker's /health endpoint
    version - Show version

Examples:
    python -m arbiter
    python -m arbiter --config config/production.toml --live
    python -m arbiter sweep --dry-run
    python -m arbiter health
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Optional

from arbiter import __version__


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="arbiter",
        description="Wager settlement worker: matches, resolves and refunds escrowed wagers",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"Arbiter {__version__}",
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file (TOML)",
    )

    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--dry-run",
        dest="dry_run",
        action="store_true",
        default=None,
        help="Simulate escrow instructions",
    )
    mode.add_argument(
        "--live",
        dest="dry_run",
        action="store_false",
        help="Submit escrow instructions to the relay",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Log level",
    )

    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="API port (for run and health)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")
    subparsers.add_parser("run", help="Start the worker")
    subparsers.add_parser("sweep", help="Run one coarse sweep and exit")
    subparsers.add_parser("health", help="Check health status")
    subparsers.add_parser("version", help="Show version")

    return parser.parse_args(argv)


def find_config_file(specified: Optional[Path]) -> Optional[Path]:
    """Find configuration file."""
    if specified is not None:
        return specified if specified.exists() else None

    search_paths = [
        Path("config/default.toml"),
        Path("arbiter.toml"),
        Path("/etc/arbiter/arbiter.toml"),
    ]
    for path in search_paths:
        if path.exists():
            return path
    return None


def build_config(args: argparse.Namespace):
    """Load configuration and apply command-line overrides."""
    from arbiter.core.config import ConfigManager

    overrides = {}
    if args.dry_run is not None:
        overrides["arbiter.dry_run"] = args.dry_run
    if args.log_level:
        overrides["arbiter.log_level"] = args.log_level
    if args.port:
        overrides["api.port"] = args.port

    return ConfigManager(find_config_file(args.config), overrides=overrides)


async def run_worker(args: argparse.Namespace) -> int:
    """Run the worker until SIGTERM/SIGINT."""
    import structlog

    from arbiter.app import ArbiterApp

    app = ArbiterApp(build_config(args))
    log = structlog.get_logger()

    try:
        await app.run_forever()
        return 0
    except Exception as e:
        log.error("fatal_error", error=str(e))
        return 1


async def run_sweep(args: argparse.Namespace) -> int:
    """Run one coarse sweep and print the counts."""
    from arbiter.app import ArbiterApp

    app = ArbiterApp(build_config(args))
    report = await app.run_sweep_once()
    print(json.dumps(report.to_dict()))
    return 1 if report.failed else 0


async def check_health(args: argparse.Namespace) -> int:
    """Check health status of a running worker."""
    import httpx

    config = build_config(args)
    port = config.get_int("api.port", 8000)
    url = f"http://localhost:{port}/health"

    try:
        async with httpx.AsyncClient() as client:
            response = await client.get(url, timeout=5.0)

        if response.status_code == 200:
            data = response.json()
            print(f"Status: {data.get('status', 'unknown')}")
            print(f"Version: {data.get('version', 'unknown')}")
            print(f"Authority: {data.get('authority', 'unknown')}")
            return 0 if data.get("status") == "healthy" else 1

        print(f"Health check failed: HTTP {response.status_code}")
        return 1

    except httpx.ConnectError:
        print("Cannot connect to Arbiter (is it running?)")
        return 1
    except httpx.HTTPError as e:
        print(f"Health check error: {e}")
        return 1


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    if args.command == "version":
        print(f"Arbiter {__version__}")
        return 0

    if args.command == "health":
        return asyncio.run(check_health(args))

    if args.command == "sweep":
        return asyncio.run(run_sweep(args))

    return asyncio.run(run_worker(args))


if __name__ == "__main__":
    sys.exit(main())
