"""Entry point for the branch-context MCP server."""

import argparse
import asyncio
import logging
import sys

from branch_context import __version__
from branch_context.config import Settings, get_settings
from branch_context.server import create_server, initialize_services, shutdown_services


def parse_args() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="branch-context",
        description="Branch Context - budgeted context assembly for branching chats via MCP",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Override BRANCH_CONTEXT_LOG_LEVEL (DEBUG/INFO/WARNING/ERROR)",
    )
    return parser.parse_args()


async def main(settings: Settings) -> None:
    """Main entry point for the MCP server."""
    services = await initialize_services(settings)
    mcp = create_server(services)

    try:
        # Run the server (stdio transport)
        await mcp.run_stdio_async()
    finally:
        await shutdown_services(services)


def cli() -> None:
    """CLI entry point."""
    args = parse_args()
    settings = get_settings()

    # stdout carries the MCP protocol, so logs go to stderr
    logging.basicConfig(
        level=(args.log_level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    asyncio.run(main(settings))


if __name__ == "__main__":
    cli()
