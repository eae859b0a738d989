"""goal.live ledger CLI entry point."""

import argparse
import asyncio
import logging
import sys
from decimal import Decimal
from pathlib import Path

from dotenv import load_dotenv
from pydantic import ValidationError

env_file = Path(__file__).parent.parent / ".env"
load_dotenv(env_file)

from goallive import __version__
from goallive.config import Settings, get_settings
from goallive.penalty import format_penalty_pct
from goallive.services import LedgerServices
from goallive.storage import MemoryLedgerStore, create_store

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

logger = logging.getLogger(__name__)

CONFIG_TEMPLATE = """# goal.live ledger configuration
# Secrets (database passwords, custody API key, Logfire token) belong in .env.

ledger:
  backend: memory            # memory | database
  database_url: sqlite+aiosqlite:///data/goallive.db
  operation_timeout_seconds: 5.0
  max_conflict_retries: 5
  max_settlement_attempts: 3

penalty:
  base_rates: ["0.03", "0.05", "0.08", "0.12", "0.15"]
  full_time_minute: 90

custody:
  paper_mode: true
  base_url: http://localhost:8080/custody/v1
  timeout_seconds: 10.0
  max_retries: 3
  max_delivery_attempts: 10
  flush_interval_seconds: 5.0

api:
  host: 0.0.0.0
  port: 8000
  allowed_origins:
    - http://localhost:5173
"""


def _init_logfire() -> None:
    """Initialize Logfire if available, without failing commands."""
    try:
        from goallive.observability import initialize_logfire

        initialize_logfire(get_settings())
    except Exception as e:
        logger.warning(f"Failed to initialize Logfire: {e}")


def cmd_init_db(args: argparse.Namespace) -> int:
    """Create the data directory, a config template, and the ledger schema."""
    try:
        settings = get_settings()
        settings.data_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Created data directory: {settings.data_dir}")

        config_path = settings.data_dir / "config.yaml"
        if not config_path.exists():
            config_path.write_text(CONFIG_TEMPLATE)
            logger.info(f"Created config template: {config_path}")
        else:
            logger.info(f"Config file already exists: {config_path}")

        if settings.ledger.backend != "database":
            print(f"\n✓ Data directory initialized at {settings.data_dir}")
            print("Ledger backend is 'memory'; no schema to create.\n")
            return 0

        async def create_schema() -> None:
            store = create_store(settings)
            try:
                await store.initialize()
            finally:
                await store.close()

        asyncio.run(create_schema())
        print(f"\n✓ Ledger schema ready ({settings.ledger.database_url})\n")
        return 0

    except Exception as e:
        logger.error(f"Failed to initialize: {e}")
        print(f"\n❌ Initialization failed: {e}\n")
        return 1


def cmd_config(args: argparse.Namespace) -> int:
    """Display merged configuration."""
    try:
        settings = get_settings()

        print("\n=== goal.live Configuration ===\n")
        print(f"Environment: {settings.environment}")
        print(f"Data Directory: {settings.data_dir}\n")

        print("Ledger:")
        print(f"  Backend: {settings.ledger.backend}")
        if settings.ledger.backend == "database":
            print(f"  Database URL: {settings.ledger.database_url}")
        print(f"  Operation Timeout: {settings.ledger.operation_timeout_seconds}s")
        print(f"  Max Conflict Retries: {settings.ledger.max_conflict_retries}")
        print(f"  Max Settlement Attempts: {settings.ledger.max_settlement_attempts}\n")

        print("Penalty:")
        rates = ", ".join(format_penalty_pct(rate) for rate in settings.penalty.base_rates)
        print(f"  Base Rates: {rates}")
        print(f"  Full Time Minute: {settings.penalty.full_time_minute}\n")

        print("Custody:")
        print(f"  Paper Mode: {settings.custody.paper_mode}")
        print(f"  Base URL: {settings.custody.base_url}")
        print(f"  API Key: {'✓ Set' if settings.custody.api_key else '✗ Not set'}")
        print(f"  Max Delivery Attempts: {settings.custody.max_delivery_attempts}")
        print(f"  Flush Interval: {settings.custody.flush_interval_seconds}s\n")

        print("API:")
        print(f"  Listen: {settings.api.host}:{settings.api.port}")
        print(f"  Allowed Origins: {', '.join(settings.api.allowed_origins)}\n")

        print(f"Logfire: {'✓ Set' if settings.logfire_token else '✗ Not set'}\n")
        return 0

    except ValidationError as e:
        print("\n❌ Configuration Error:\n")
        for error in e.errors():
            print(f"  • {'.'.join(str(x) for x in error['loc'])}: {error['msg']}")
        print()
        return 1
    except Exception as e:
        logger.error(f"Failed to load config: {e}")
        print(f"\n❌ Failed to load configuration: {e}\n")
        return 1


async def run_simulation(settings: Settings) -> LedgerServices:
    """
    Play a scripted match through the memory store.

    Two bettors back different scorers, one changes their pick, a goal
    closes the first window, and full time settles everything.
    """
    services = LedgerServices(store=MemoryLedgerStore(), settings=settings)
    ledger, matches = services.ledger, services.matches

    await matches.register_match("sim-1", "Rovers", "United", players=["p9", "p10", "p7"])
    await matches.set_status("sim-1", "live")

    for bettor in ("alice", "bob"):
        await ledger.deposit(bettor, Decimal("100"))

    alice = await ledger.place_bet(
        "alice", "sim-1", "NEXT_GOAL_SCORER", "p9", Decimal("20"), Decimal("3.0"), 10, 0
    )
    bob = await ledger.place_bet(
        "bob", "sim-1", "NEXT_GOAL_SCORER", "p10", Decimal("20"), Decimal("4.0"), 12, 0
    )
    await ledger.place_bet(
        "bob", "sim-1", "MATCH_WINNER", "home", Decimal("10"), Decimal("2.1"), 12, 0
    )

    changed = await ledger.change_bet(bob.id, "p9", Decimal("3.2"), 30)
    print(
        f"bob moved to p9 for ${changed.penalty.penalty_amount} "
        f"({format_penalty_pct(changed.penalty.penalty_pct)})"
    )

    await matches.record_minute("sim-1", 41)
    resolution = await matches.confirm_goal("sim-1", "p9", "home", 41)
    print(
        f"Goal p9 (window {resolution.window_index}): "
        f"{len(resolution.winning_bet_ids)} provisional wins, "
        f"{len(resolution.losing_bet_ids)} provisional losses"
    )

    summary = await matches.full_time("sim-1")
    print(
        f"Full time {summary.winner_outcome}: {summary.bets_settled} bets settled, "
        f"{summary.winners} winners, ${summary.total_payout} paid"
    )

    for bettor in ("alice", "bob"):
        balance = await ledger.get_balance(bettor)
        print(
            f"  {bettor}: wallet ${balance.wallet}, locked ${balance.locked}, "
            f"provisional ${balance.provisional}"
        )

    async with services.custody_client:
        report = await services.notifier.flush()
    print(f"Custody: {len(report.delivered)} instructions delivered (paper)")

    logger.debug(f"Simulated bets {alice.id}, {bob.id}")
    return services


def cmd_simulate(args: argparse.Namespace) -> int:
    """Run a scripted match end to end in memory."""
    try:
        if args.debug:
            logging.getLogger().setLevel(logging.DEBUG)

        settings = get_settings().model_copy(deep=True)
        settings.custody = settings.custody.model_copy(update={"paper_mode": True})

        print("\n=== goal.live Simulation ===\n")
        asyncio.run(run_simulation(settings))
        print("\n✓ Simulation complete\n")
        return 0

    except Exception as e:
        logger.error(f"Simulation failed: {e}", exc_info=True)
        print(f"\n❌ Simulation failed: {e}\n")
        return 1


def cmd_serve(args: argparse.Namespace) -> int:
    """Serve the HTTP API with uvicorn."""
    try:
        import uvicorn

        from goallive.api import create_app

        _init_logfire()
        settings = get_settings()
        host = args.host or settings.api.host
        port = args.port or settings.api.port

        print(f"\n=== goal.live Ledger API v{__version__} ===\n")
        print(f"Store: {settings.ledger.backend}")
        print(f"Custody: {'PAPER' if settings.custody.paper_mode else 'LIVE'}")
        print(f"Listening on http://{host}:{port}\n")

        uvicorn.run(create_app(LedgerServices(settings=settings)), host=host, port=port)
        return 0

    except KeyboardInterrupt:
        print("\n\nReceived interrupt signal. Shutting down...\n")
        return 0
    except Exception as e:
        logger.error(f"Failed to start server: {e}", exc_info=True)
        print(f"\nFailed to start: {e}\n")
        return 1


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="goal.live: live in-play betting ledger",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"goal.live {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    parser_init = subparsers.add_parser(
        "init-db",
        help="Create the data directory, config template, and ledger schema",
    )
    parser_init.set_defaults(func=cmd_init_db)

    parser_config = subparsers.add_parser(
        "config",
        help="Display merged configuration",
    )
    parser_config.set_defaults(func=cmd_config)

    parser_simulate = subparsers.add_parser(
        "simulate",
        help="Play a scripted match through the in-memory ledger",
    )
    parser_simulate.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    parser_simulate.set_defaults(func=cmd_simulate)

    parser_serve = subparsers.add_parser(
        "serve",
        help="Serve the HTTP API",
    )
    parser_serve.add_argument("--host", default=None, help="Bind address")
    parser_serve.add_argument("--port", type=int, default=None, help="Bind port")
    parser_serve.set_defaults(func=cmd_serve)

    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
