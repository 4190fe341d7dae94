"""SLA Status - SLA aggregation and reporting for distributed network monitoring agents."""

import argparse
import json
import logging
import signal
import sys
from threading import Event
from typing import TextIO

__version__ = "0.1.0"

# Global shutdown event for signal handlers
_shutdown_event: Event | None = None

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False, stream: TextIO | None = None) -> None:
    """Configure logging for the application.

    Logs go to stdout unless ``stream`` is given; commands that print
    their result on stdout log to stderr instead.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=stream or sys.stdout,
    )


def _handle_shutdown(signum: int, frame: object) -> None:
    """Signal handler for graceful shutdown."""
    sig_name = signal.Signals(signum).name
    logger.info("Received %s, initiating shutdown...", sig_name)
    if _shutdown_event is not None:
        _shutdown_event.set()


def _cmd_run(args: argparse.Namespace) -> None:
    """Execute the run command - serve the HTTP API."""
    global _shutdown_event

    _setup_logging(args.verbose)

    logger.info("SLA Status %s starting...", __version__)

    # Import here to avoid circular imports and allow logging setup first
    from .api import ApiError, ApiServer
    from .config import ConfigError, load_config
    from .database import DatabaseError, init_db

    # 1. Load configuration
    try:
        config = load_config(args.config)
        logger.info("Configuration loaded from %s", args.config or "defaults")
        logger.info(
            "SLA windows: %s, target %.2f%%, breach policy '%s'",
            ", ".join(w.key for w in config.sla.windows),
            config.sla.default_target_percentage,
            config.sla.breach_policy,
        )
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(1)

    if not config.api.enabled:
        logger.error("API is disabled in configuration, nothing to run")
        sys.exit(1)

    # 2. Initialize database
    try:
        db_conn = init_db(config.database.path)
        logger.info("Database initialized at %s", config.database.path)
    except DatabaseError as e:
        logger.error("Database error: %s", e)
        sys.exit(1)

    # 3. Setup shutdown handler
    _shutdown_event = Event()
    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    # 4. Start API server
    api_server = ApiServer(config, db_conn)
    try:
        try:
            api_server.start()
        except ApiError as e:
            logger.error("Failed to start API server: %s", e)
            sys.exit(1)

        logger.info("API server running, waiting for shutdown signal...")

        # 5. Wait for shutdown signal
        _shutdown_event.wait()

    except KeyboardInterrupt:
        # Backup handler if signal doesn't work
        logger.info("Keyboard interrupt received")
    finally:
        # 6. Cleanup
        logger.info("Shutting down components...")
        api_server.stop()

        db_conn.close()
        logger.info("Database connection closed")

        logger.info("Shutdown complete")


def _cmd_report(args: argparse.Namespace) -> None:
    """Execute the report command - print a dashboard report as JSON."""
    _setup_logging(args.verbose, stream=sys.stderr)

    from .api import build_dashboard_response
    from .config import ConfigError, load_config
    from .database import DatabaseError, connect_readonly
    from .engine import ProfileNotFoundError, ReportEngine

    # 1. Load configuration
    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Error: {e}")
        sys.exit(1)

    if args.days is not None and args.days <= 0:
        print("Error: --days must be a positive integer")
        sys.exit(1)

    # 2. Build the report from a read-only connection
    try:
        conn = connect_readonly(config.database.path)
    except DatabaseError as e:
        print(f"Error: {e}")
        sys.exit(1)

    try:
        engine = ReportEngine(config)
        report = engine.dashboard(conn, agent_id=args.agent, lookback_days=args.days)
    except ProfileNotFoundError as e:
        print(f"Error: {e}")
        sys.exit(1)
    except DatabaseError as e:
        print(f"Error: Database error - {e}")
        sys.exit(1)
    finally:
        conn.close()

    print(json.dumps(build_dashboard_response(report), indent=2, allow_nan=False))


def _cmd_ingest(args: argparse.Namespace) -> None:
    """Execute the ingest command - load agent submissions from a JSON file."""
    _setup_logging(args.verbose)

    from datetime import UTC, datetime

    from .config import ConfigError, load_config
    from .database import DatabaseError, init_db, record_submission
    from .ingest import SubmissionError, parse_submission

    # 1. Load configuration
    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Error: {e}")
        sys.exit(1)

    # 2. Read the submissions file (one object or a list of them)
    try:
        with open(args.file, encoding="utf-8") as f:
            payload = json.load(f)
    except OSError as e:
        print(f"Error: Failed to read {args.file}: {e}")
        sys.exit(1)
    except json.JSONDecodeError as e:
        print(f"Error: Invalid JSON in {args.file}: {e}")
        sys.exit(1)

    submissions = payload if isinstance(payload, list) else [payload]

    # 3. Store each submission
    try:
        conn = init_db(config.database.path)
    except DatabaseError as e:
        print(f"Error: {e}")
        sys.exit(1)

    stored = duplicates = rejected = 0
    try:
        for i, item in enumerate(submissions):
            try:
                submission = parse_submission(item)
            except SubmissionError as e:
                logger.warning("Skipping submission %d: %s", i, e)
                rejected += 1
                continue

            _, inserted = record_submission(
                conn,
                submission.record,
                submission.agent_type,
                received_at=datetime.now(UTC),
                default_thresholds=config.thresholds,
                default_target_percentage=config.sla.default_target_percentage,
                hostname=submission.hostname,
                source_ip=submission.source_ip,
            )
            if inserted:
                stored += 1
            else:
                duplicates += 1
    except DatabaseError as e:
        print(f"Error: Database error - {e}")
        sys.exit(1)
    finally:
        conn.close()

    print(f"Stored {stored} submission(s), {duplicates} duplicate(s), {rejected} rejected.")
    if rejected:
        sys.exit(1)


def main() -> None:
    """Main entry point for the slastatus package."""
    parser = argparse.ArgumentParser(
        description="SLA Status - SLA aggregation and reporting for network monitoring agents"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"slastatus {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command")

    # Run subcommand (default behavior)
    run_parser = subparsers.add_parser(
        "run",
        help="Serve the SLA API (default)",
    )
    run_parser.add_argument(
        "-c", "--config",
        default=None,
        help="Path to configuration file (default: built-in defaults)",
    )
    run_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    run_parser.set_defaults(func=_cmd_run)

    # Report subcommand
    report_parser = subparsers.add_parser(
        "report",
        help="Print an agent or fleet report as JSON",
    )
    report_parser.add_argument(
        "-c", "--config",
        default=None,
        help="Path to configuration file (default: built-in defaults)",
    )
    report_parser.add_argument(
        "--agent",
        help="Agent identifier (default: fleet report)",
    )
    report_parser.add_argument(
        "--days",
        type=int,
        help="Chart lookback in days (default: most recent raw checks)",
    )
    report_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    report_parser.set_defaults(func=_cmd_report)

    # Ingest subcommand
    ingest_parser = subparsers.add_parser(
        "ingest",
        help="Load agent submissions from a JSON file",
    )
    ingest_parser.add_argument(
        "file",
        help="JSON file with one submission object or a list of them",
    )
    ingest_parser.add_argument(
        "-c", "--config",
        default=None,
        help="Path to configuration file (default: built-in defaults)",
    )
    ingest_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    ingest_parser.set_defaults(func=_cmd_ingest)

    args = parser.parse_args()

    # Default to 'run' if no command specified
    if args.command is None:
        args.config = None
        args.verbose = False
        args.func = _cmd_run

    args.func(args)
