"""Command-line entry for slotsync."""

from __future__ import annotations

import argparse
import sys
from typing import NoReturn

from . import run_server


def _create_parser() -> argparse.ArgumentParser:
    """Create argument parser for the slotsync CLI.

    Returns:
        Configured argument parser
    """
    parser = argparse.ArgumentParser(
        prog="slotsync",
        description="slotsync - calendar sync and availability server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m slotsync                              # Start server on default port (8080)
  python -m slotsync --port 3000                  # Start server on port 3000
  python -m slotsync --config /etc/slotsync.yaml  # Use an explicit config file
        """,
    )

    parser.add_argument(
        "--port",
        type=int,
        metavar="PORT",
        help="Port number for the web server (default: 8080, or from SLOTSYNC_SERVER_PORT env var)",
    )
    parser.add_argument(
        "--config",
        metavar="PATH",
        help="YAML config file (default: $SLOTSYNC_CONFIG or ./slotsync.yaml)",
    )

    return parser


def main() -> NoReturn:
    """Run the slotsync CLI."""
    parser = _create_parser()
    args = parser.parse_args()

    try:
        run_server(args)
    except ValueError as exc:
        print(f"slotsync: invalid configuration: {exc}", file=sys.stderr)
        sys.exit(2)
    sys.exit(0)


if __name__ == "__main__":
    main()
