#!/usr/bin/env python3
"""
Auth sessions maintenance CLI.

    python cli.py init-db          create missing tables
    python cli.py cleanup-tokens   delete expired refresh tokens
"""

import argparse
import asyncio
import os
import sys

# Allow running from a checkout without installing
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from config import get_settings  # noqa: E402
from db.database import build_engine, build_session_factory, init_db  # noqa: E402
from services.logging_config import configure_logging  # noqa: E402
from services.maintenance import cleanup_expired_tokens  # noqa: E402


class Colors:
    """ANSI colors for terminal"""

    RESET = "\033[0m"
    GREEN = "\033[92m"
    RED = "\033[91m"


def success(msg):
    print(f"{Colors.GREEN}[OK]{Colors.RESET} {msg}")


def error(msg):
    print(f"{Colors.RED}[ERROR]{Colors.RESET} {msg}", file=sys.stderr)


async def _init_db(database_url: str) -> None:
    engine = build_engine(database_url)
    try:
        await init_db(engine)
    finally:
        await engine.dispose()


async def _cleanup_tokens(database_url: str) -> int:
    engine = build_engine(database_url)
    try:
        return await cleanup_expired_tokens(build_session_factory(engine))
    finally:
        await engine.dispose()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="auth-sessions", description=__doc__.splitlines()[1])
    parser.add_argument(
        "--database-url",
        help="Override DATABASE_URL from the environment",
    )
    parser.add_argument("--log-level", help="Override LOG_LEVEL from the environment")

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("init-db", help="Create missing tables")
    commands.add_parser("cleanup-tokens", help="Delete expired refresh tokens")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(args.log_level or settings.LOG_LEVEL)
    database_url = args.database_url or settings.DATABASE_URL

    try:
        if args.command == "init-db":
            asyncio.run(_init_db(database_url))
            success("Database initialized")
        elif args.command == "cleanup-tokens":
            deleted = asyncio.run(_cleanup_tokens(database_url))
            success(f"Removed {deleted} expired refresh token(s)")
    except Exception as e:
        error(f"{args.command} failed: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
