#!/usr/bin/env python3
"""Dorfkoenig: web scouts, information units and village newsletter verification.

Journalists register scouts (a URL plus natural-language criteria). Each run
scrapes the page, checks it against the criteria with an LLM, extracts
atomic information units and emails an alert when something relevant
changed. Village newsletter drafts are verified by local correspondents
over WhatsApp.

Commands:
    serve             Run the HTTP API (webhook, execution, units, drafts)
    execute           Run one scout now
    run-due           Run every active scout whose cadence has elapsed
    resolve-timeouts  Auto-confirm drafts whose verification window passed
    add-scout         Register a scout
    status            Show configuration and database statistics

Examples:
    python main.py serve --port 8080
    python main.py add-scout --user u1 --name "Gemeinderat" --url https://... --city Zürich
    python main.py execute 3f2a9c1e-... --skip-notification
    python main.py run-due                 # e.g. hourly from cron

Environment:
    OPENROUTER_API_KEY: Required for LLM commands
    See config.py for all configuration options
"""

import argparse
import asyncio
import json
import logging
import sys

from config import Config
from database import Database
from observability.logging import setup_logging
from observability.tracing import setup_tracing

logger = logging.getLogger(__name__)


def _collaborators(config: Config):
    from collaborators import Collaborators

    return Collaborators.from_config(config)


def cmd_serve(args: argparse.Namespace, config: Config) -> int:
    """Run the HTTP API with uvicorn."""
    import uvicorn

    from server import create_app

    host = args.host or config.host
    port = args.port or config.port

    with Database(config.db_path) as db:
        app = create_app(config, db, _collaborators(config))
        logger.info("Server starting | host=%s port=%d db=%s", host, port, config.db_path)
        uvicorn.run(app, host=host, port=port, log_config=None)
    return 0


def cmd_execute(args: argparse.Namespace, config: Config) -> int:
    """Run a single scout and print the result."""
    from errors import DorfkoenigError
    from pipeline import ScoutPipeline

    with Database(config.db_path) as db:
        pipeline = ScoutPipeline(config, db, _collaborators(config))
        try:
            result = asyncio.run(pipeline.execute(
                args.scout_id,
                skip_notification=args.skip_notification,
                extract_units=not args.no_units,
            ))
        except DorfkoenigError as e:
            print(f"Error ({e.code}): {e.message}", file=sys.stderr)
            return 1
        except KeyboardInterrupt:
            logger.info("Stopped by user (Ctrl+C)")
            return 130

    print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
    return 0 if result.status.value == "completed" else 2


def cmd_run_due(args: argparse.Namespace, config: Config) -> int:
    """Run every due scout once, sequentially."""
    from pipeline import ScoutPipeline

    with Database(config.db_path) as db:
        pipeline = ScoutPipeline(config, db, _collaborators(config))
        try:
            stats = asyncio.run(pipeline.run_due())
        except KeyboardInterrupt:
            logger.info("Stopped by user (Ctrl+C)")
            return 130

    logger.info("Sweep complete | stats=%s", json.dumps(stats.to_dict()))
    return 0 if stats.errors == 0 else 1


def cmd_resolve_timeouts(args: argparse.Namespace, config: Config) -> int:
    """Confirm drafts whose verification timeout has passed."""
    with Database(config.db_path) as db:
        resolved = db.resolve_timeouts()
    print(f"Resolved {resolved} draft(s).")
    return 0


def cmd_add_scout(args: argparse.Namespace, config: Config) -> int:
    """Register a scout and print its id."""
    from models.scout import Frequency, Location

    location = Location(city=args.city, state=args.state, country=args.country or "") if args.city else None
    with Database(config.db_path) as db:
        scout = db.create_scout(
            user_id=args.user,
            name=args.name,
            url=args.url,
            criteria=args.criteria or "",
            location=location,
            topic=args.topic,
            notification_email=args.email,
            frequency=Frequency(args.frequency),
        )
    print(scout.id)
    return 0


def cmd_status(args: argparse.Namespace, config: Config) -> int:
    """Display configuration and database statistics."""
    with Database(config.db_path) as db:
        db_stats = db.stats()

    status = {
        "config": {
            "language": config.language,
            "chat_model": config.chat_model,
            "draft_model": config.draft_model,
            "embedding_model": config.embedding_model,
            "villages": sorted(config.correspondents),
            "duplicate_threshold": config.duplicate_threshold,
            "unit_dedup_threshold": config.unit_dedup_threshold,
            "enable_logfire": config.enable_logfire,
        },
        "database": {"path": str(config.db_path), **db_stats},
    }

    print(json.dumps(status, indent=2, ensure_ascii=False))
    return 0


def main() -> int:
    """Main entry point.

    Returns:
        Exit code
    """
    parser = argparse.ArgumentParser(
        description="Dorfkoenig: scout monitoring and newsletter verification",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", help="Bind address (default: HOST)")
    serve_parser.add_argument("--port", type=int, help="Port (default: PORT)")

    execute_parser = subparsers.add_parser("execute", help="Run one scout now")
    execute_parser.add_argument("scout_id", help="Scout id")
    execute_parser.add_argument(
        "--skip-notification",
        action="store_true",
        help="Do not send the alert email",
    )
    execute_parser.add_argument(
        "--no-units",
        action="store_true",
        help="Skip information unit extraction",
    )

    subparsers.add_parser("run-due", help="Run every scout whose cadence has elapsed")
    subparsers.add_parser("resolve-timeouts", help="Auto-confirm timed-out verifications")

    add_parser = subparsers.add_parser("add-scout", help="Register a scout")
    add_parser.add_argument("--user", required=True, help="Owner user id")
    add_parser.add_argument("--name", required=True, help="Scout name")
    add_parser.add_argument("--url", required=True, help="Page to monitor")
    add_parser.add_argument("--criteria", help="What to look for (empty = any change)")
    add_parser.add_argument("--city", help="Location city")
    add_parser.add_argument("--state", help="Location state/canton")
    add_parser.add_argument("--country", help="Location country")
    add_parser.add_argument("--topic", help="Topic tag")
    add_parser.add_argument("--email", help="Alert email address")
    add_parser.add_argument(
        "--frequency",
        choices=["daily", "weekly", "biweekly", "monthly"],
        default="daily",
        help="Run cadence (default: daily)",
    )

    subparsers.add_parser("status", help="Show configuration and statistics")

    args = parser.parse_args()

    try:
        config = Config.load()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    setup_logging(config, verbose=args.verbose)

    # Validate configuration for commands that call external services
    if args.command in ("serve", "execute", "run-due"):
        error = config.validate()
        if error:
            print(f"Configuration error: {error}", file=sys.stderr)
            return 1
        setup_tracing(config.enable_logfire, token=config.logfire_token)

    commands = {
        "serve": cmd_serve,
        "execute": cmd_execute,
        "run-due": cmd_run_due,
        "resolve-timeouts": cmd_resolve_timeouts,
        "add-scout": cmd_add_scout,
        "status": cmd_status,
    }

    if args.command in commands:
        return commands[args.command](args, config)

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
