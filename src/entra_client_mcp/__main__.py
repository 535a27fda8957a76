#!/usr/bin/env python3
"""Command-line entry point.

  python -m entra_client_mcp                              serve MCP over stdio
  python -m entra_client_mcp --redirect-response URL      redeem a redirect sign-in, then serve
  python -m entra_client_mcp --test                       list tools/resources and exit
"""

from __future__ import annotations

import argparse
import asyncio
import sys

from entra_client_mcp.server import run_server, test_server


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="entra_client_mcp",
        description="Entra ID sign-in client exposed as MCP tools.",
    )
    parser.add_argument("--test", action="store_true", help="Check the tool and resource listings, then exit.")
    parser.add_argument(
        "--redirect-response",
        metavar="URL",
        help="Final URL of a redirect sign-in started by an earlier run; it is redeemed at startup.",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(sys.argv[1:] if argv is None else argv)
    entry = test_server() if args.test else run_server(redirect_response=args.redirect_response)
    try:
        asyncio.run(entry)
    except KeyboardInterrupt:
        print("\nServer stopped by user", file=sys.stderr)
    except Exception as exc:  # pylint: disable=broad-exception-caught
        print(f"Server error: {exc}", file=sys.stderr)
        raise


if __name__ == "__main__":
    main()
