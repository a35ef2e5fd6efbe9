"""Command line interface for the binlog relay processes."""

from __future__ import annotations

import argparse
import sys
from typing import Optional

from .errors import ConfigurationError


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="binlog-relay",
        description="MySQL binlog change-event emitter and subscribers",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    emit_parser = subparsers.add_parser(
        "emit", help="Stream binlog row changes onto the bus"
    )
    emit_parser.add_argument(
        "--env-file", help="dotenv file to load before reading settings", default=None
    )

    subscribe_parser = subparsers.add_parser(
        "subscribe", help="Run one subscriber per env file"
    )
    subscribe_parser.add_argument(
        "--env-file",
        dest="env_files",
        action="append",
        default=[],
        help="Subscriber env file; repeat for several (defaults to ENV_FILES/ENV_FILE)",
    )

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    from .service import run_emitter, run_subscriber_fleet

    try:
        if args.command == "emit":
            run_emitter(args.env_file)
            return 0
        if args.command == "subscribe":
            run_subscriber_fleet(args.env_files)
            return 0
    except ConfigurationError as exc:
        print(f"configuration error: {exc}", file=sys.stderr)
        return 2

    parser.error("Unknown command")
    return 1


if __name__ == "__main__":
    sys.exit(main())
