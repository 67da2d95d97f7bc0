"""
Command line front end for the session broker.

Runs one complete session against a workspace (launch, open a document,
query it, shut down) and prints the result as JSON. Useful for checking a
server path, SDK and target combination by hand.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from lsprotocol.converters import get_converter

from sourcekit_broker import __version__
from sourcekit_broker.errors import BrokerError
from sourcekit_broker.registry import SessionRegistry

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sourcekit-broker",
        description="Query a workspace through a brokered sourcekit-lsp session",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="WARNING",
        help="Set the logging level (default: WARNING)",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"sourcekit-broker {__version__}",
    )
    parser.add_argument(
        "--storage-root",
        help="Directory holding the install group containers",
    )
    parser.add_argument("--server-path", required=True, help="sourcekit-lsp executable")
    parser.add_argument("--sdk-path", required=True, help="SDK root passed to the compiler")
    parser.add_argument("--target", required=True, help="Compiler target triple")
    parser.add_argument("--toolchain", help="Toolchain path exported to the server")
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Seconds to wait for each response (default: wait forever)",
    )

    parser.add_argument("install_group", help="Install group identifier")
    parser.add_argument("resource", help="Hosting resource, e.g. github.com")
    parser.add_argument("slug", help="Project slug, e.g. apple/swift-nio")
    parser.add_argument("document", help="Document path relative to the workspace")

    queries = parser.add_subparsers(dest="query", required=True)
    queries.add_parser("symbols", help="List document symbols")
    for name, text in (("hover", "Show hover info"), ("definition", "Find definitions")):
        query = queries.add_parser(name, help=text)
        query.add_argument("line", type=int, help="Zero-based line")
        query.add_argument("character", type=int, help="Zero-based UTF-16 offset")

    return parser


def launch_context(args: argparse.Namespace) -> dict[str, str]:
    context = {
        "serverPath": args.server_path,
        "SDKPath": args.sdk_path,
        "target": args.target,
    }
    if args.toolchain:
        context["toolchain"] = args.toolchain
    return context


async def run(args: argparse.Namespace) -> Any:
    """Run one full session lifecycle and return the query result."""
    registry = SessionRegistry(storage_root=args.storage_root, request_timeout=args.timeout)
    session = registry.get_or_create(args.install_group, args.resource, args.slug)
    context = launch_context(args)

    try:
        await session.initialize(context)
        session.send_initialized_notification(context)

        path = session.document_root / args.document
        session.open_document(context, args.document, path.read_text(encoding="utf-8"))

        if args.query == "symbols":
            return await session.document_symbols(context, args.document)
        if args.query == "hover":
            return await session.hover(context, args.document, args.line, args.character)
        return await session.definition(context, args.document, args.line, args.character)
    finally:
        await registry.drain()


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the broker CLI."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        result = asyncio.run(run(args))
    except BrokerError as e:
        logger.error(f"{args.query} failed: {e}")
        print(f"error: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    print(json.dumps(get_converter().unstructure(result), indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
