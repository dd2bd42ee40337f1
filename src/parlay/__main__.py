"""Parlay Settlement Engine - Entry Point

Usage:
    python -m parlay [--config PATH] [--log-level LEVEL] COMMAND

Commands:
    run     - Start the settlement engine (default)
    replay  - Deliver pending record changes once and exit
    health  - Check health status of a running engine
    version - Show version
    market  - Record a market lifecycle snapshot
    open    - Open a position on a chain of legs
    cancel  - Cancel a position

Examples:
    python -m parlay
    python -m parlay --config config/production.toml run
    python -m parlay market 0xabc... --status RESOLVED --outcome YES
    python -m parlay open --wallet 0x123... --stake 10 --legs legs.json
    python -m parlay health
"""

import argparse
import asyncio
import json
import sys
from datetime import datetime
from pathlib import Path

from parlay import __version__


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="parlay",
        description="Settlement engine for chained prediction-market positions",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"Parlay {__version__}",
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file (TOML)",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Log level",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    subparsers.add_parser("run", help="Start the settlement engine")
    subparsers.add_parser("replay", help="Drain pending changes once and exit")

    health = subparsers.add_parser("health", help="Check health status")
    health.add_argument("--port", type=int, default=None, help="Health server port")

    subparsers.add_parser("version", help="Show version")

    market = subparsers.add_parser("market", help="Record a market snapshot")
    market.add_argument("condition_id")
    market.add_argument(
        "--status",
        required=True,
        choices=["ACTIVE", "CLOSED", "RESOLVED", "CANCELLED"],
    )
    market.add_argument("--outcome", choices=["YES", "NO"], default=None)
    market.add_argument("--question", default=None)

    open_cmd = subparsers.add_parser("open", help="Open a position")
    open_cmd.add_argument("--wallet", required=True)
    open_cmd.add_argument("--stake", required=True, help="Initial stake in USDC")
    open_cmd.add_argument(
        "--legs",
        type=Path,
        required=True,
        help="JSON file: list of {condition_id, token_id, side, target_price, end_date?, question?}",
    )

    cancel = subparsers.add_parser("cancel", help="Cancel a position")
    cancel.add_argument("position_id")
    cancel.add_argument("--wallet", required=True)

    return parser.parse_args(argv)


def find_config_file(specified: Path | None) -> Path | None:
    """Find configuration file."""
    if specified and specified.exists():
        return specified

    # Search paths
    search_paths = [
        Path("config/default.toml"),
        Path("config/production.toml"),
        Path("parlay.toml"),
        Path("/etc/parlay/parlay.toml"),
    ]

    for path in search_paths:
        if path.exists():
            return path

    return None


def load_config(args: argparse.Namespace):
    from parlay.core.config import ConfigManager

    config_path = find_config_file(args.config)
    config = ConfigManager(config_path) if config_path else ConfigManager()
    if args.log_level:
        config.set_override("parlay.log_level", args.log_level)
    return config


def load_legs(path: Path) -> list:
    """Read leg requests from a JSON file."""
    from parlay.core.retry import ValidationError
    from parlay.domain.status import Side
    from parlay.services.chains import LegRequest

    try:
        raw = json.loads(path.read_text())
    except (OSError, ValueError) as e:
        raise ValidationError(f"Cannot read legs from {path}: {e}") from e
    if not isinstance(raw, list):
        raise ValidationError("Legs file must contain a JSON list")

    legs = []
    for index, item in enumerate(raw, start=1):
        try:
            end_date = item.get("end_date")
            legs.append(
                LegRequest(
                    condition_id=item.get("condition_id", ""),
                    token_id=item.get("token_id", ""),
                    side=Side(str(item.get("side", "YES")).upper()),
                    target_price=str(item.get("target_price", "")),
                    question=item.get("question", ""),
                    end_date=datetime.fromisoformat(end_date.replace("Z", "+00:00")) if end_date else None,
                )
            )
        except (AttributeError, TypeError, ValueError) as e:
            raise ValidationError(f"Leg {index} in {path} is invalid: {e}") from e
    return legs


async def run_engine(args: argparse.Namespace) -> int:
    """Run the settlement engine until SIGTERM/SIGINT."""
    import structlog

    from parlay.app import ParlayApp

    app = ParlayApp(load_config(args))
    log = structlog.get_logger()

    try:
        await app.run_forever()
        return 0
    except Exception as e:
        log.error("fatal_error", error=str(e), error_type=type(e).__name__)
        return 1


async def run_replay(args: argparse.Namespace) -> int:
    """Drain the change feed once."""
    from parlay.app import ParlayApp

    app = ParlayApp(load_config(args))
    delivered = await app.replay()
    print(f"Delivered {delivered} change(s)")
    stuck = [s for s in app.feed.subscriptions if s.last_error]
    for subscription in stuck:
        print(f"  {subscription.name}: {subscription.last_error}")
    return 1 if stuck else 0


async def run_store_command(args: argparse.Namespace) -> int:
    """Commands that only write records; the running engine reacts to them."""
    from parlay.core.logging import setup_logging
    from parlay.core.retry import ParlayError
    from parlay.domain.status import MarketStatus, Outcome
    from parlay.services.chains import ChainService
    from parlay.services.markets import MarketService
    from parlay.services.record_store import RecordStore

    config = load_config(args)
    setup_logging(level=config.get("parlay.log_level", "WARNING"))

    store = RecordStore(config=config)
    await store.connect()
    try:
        if args.command == "market":
            market = await MarketService(store).apply_snapshot(
                args.condition_id,
                MarketStatus(args.status),
                outcome=Outcome(args.outcome) if args.outcome else None,
                question=args.question,
            )
            print("Unchanged" if market is None else f"Market {market.condition_id}: {market.status.value}")
        elif args.command == "open":
            position, bets = await ChainService(store).create_position(
                args.wallet, load_legs(args.legs), args.stake
            )
            print(f"Position {position.position_id} on {position.chain_id} ({len(bets)} legs)")
        elif args.command == "cancel":
            position = await ChainService(store).cancel_position(args.position_id, args.wallet)
            print(f"Position {position.position_id}: {position.status.value}")
        return 0
    except ParlayError as e:
        print(f"Error: {e}")
        return 1
    finally:
        await store.close()


async def check_health(args: argparse.Namespace) -> int:
    """Check health status."""
    import httpx

    config = load_config(args)
    port = args.port or config.get_int("health.port", 9090)
    url = f"http://localhost:{port}/health"

    try:
        async with httpx.AsyncClient() as client:
            response = await client.get(url, timeout=5.0)

        data = response.json()
        print(f"Status: {data.get('status', 'unknown')}")
        print(f"Uptime: {data.get('uptime_seconds', 0):.0f}s")
        for issue in data.get("issues", []):
            print(f"  issue: {issue}")

        feed = data.get("components", {}).get("change_feed", {})
        subscriptions = feed.get("details", {})
        for name, info in subscriptions.items():
            print(f"  {name}: delivered={info.get('delivered')} failures={info.get('failures')}")

        return 0 if data.get("status") == "healthy" else 1

    except httpx.ConnectError:
        print("Cannot connect to parlay (is it running?)")
        return 1
    except Exception as e:
        print(f"Health check error: {e}")
        return 1


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    if args.command == "version":
        print(f"Parlay {__version__}")
        return 0

    if args.command == "health":
        return asyncio.run(check_health(args))

    if args.command == "replay":
        return asyncio.run(run_replay(args))

    if args.command in ("market", "open", "cancel"):
        return asyncio.run(run_store_command(args))

    # Default: run the engine
    return asyncio.run(run_engine(args))


if __name__ == "__main__":
    sys.exit(main())
