"""Command-line interface for the birthday greeting service."""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Sequence

import anyio

from birthdays.config import ServiceSettings, load_settings
from birthdays.database import ConnectionManager, DatabaseError

logger = logging.getLogger("birthdays.main")


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Birthday greeting service")
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    subparsers.add_parser("init-db", help="Create the database schema and exit")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP service")
    serve_parser.add_argument("--host", default=None, help="Bind address (default: $HOST or 0.0.0.0)")
    serve_parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to listen on (default: $PORT or 3000)",
    )
    serve_parser.add_argument(
        "--graceful-timeout",
        type=int,
        default=30,
        help="Seconds to wait for in-flight requests on shutdown (default: 30)",
    )

    args_list = list(argv) if argv is not None else sys.argv[1:]
    known_commands = {"serve", "init-db"}

    if not args_list:
        args_list = ["serve"]
    else:
        first = args_list[0]
        if first in ("-h", "--help"):
            return parser.parse_args(args_list)
        if first not in known_commands:
            if any(flag in args_list for flag in ("-h", "--help")):
                return parser.parse_args(args_list)
            args_list = ["serve", *args_list]

    return parser.parse_args(args_list)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


async def _initialise_database(settings: ServiceSettings) -> None:
    manager = ConnectionManager(settings.database)
    await manager.initialize()
    await manager.close()


def _serve(settings: ServiceSettings, *, host: str, port: int, graceful_timeout: int) -> None:
    from birthdays.service import create_app
    import uvicorn

    logger.info("Starting birthday API on http://%s:%s", host, port)
    logger.info("Environment: %s", settings.environment)

    app = create_app(settings=settings)
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level=settings.log_level.lower(),
        timeout_graceful_shutdown=graceful_timeout,
    )


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point for CLI usage."""

    args = _parse_args(argv)
    settings = load_settings()
    _configure_logging(settings.log_level)

    if args.command == "init-db":
        logger.info("Starting database migrations...")
        try:
            anyio.run(_initialise_database, settings)
        except DatabaseError as exc:
            logger.error("Migration failed: %s", exc)
            raise SystemExit(1) from exc
        logger.info("Database migrations completed successfully")
        return

    _serve(
        settings,
        host=args.host or settings.host,
        port=args.port or settings.port,
        graceful_timeout=args.graceful_timeout,
    )


if __name__ == "__main__":
    main()
