import os
import sys
import asyncio
import logging
import argparse

import importlib.util
from pathlib import Path

import mcp.server.stdio
from dotenv import load_dotenv

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger("github-projects-stdio")

DEFAULT_SERVER = "github"


def available_servers(servers_dir: Path):
    return sorted(
        item.name
        for item in servers_dir.iterdir()
        if item.is_dir() and (item / "main.py").exists()
    )


def load_server(server_name):
    """
    Import a server module from src/servers/<name>/main.py.

    Returns:
        (create_server, get_initialization_options) of the module.
    """
    servers_dir = Path(__file__).parent.absolute()
    server_file = servers_dir / server_name / "main.py"

    if not server_file.exists():
        logger.error(f"Server '{server_name}' not found at {server_file}")
        print("Available servers:")
        for name in available_servers(servers_dir):
            print(f"  - {name}")
        sys.exit(1)

    spec = importlib.util.spec_from_file_location(f"{server_name}.server", server_file)
    server_module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(server_module)

    if not hasattr(server_module, "server") or not hasattr(
        server_module, "get_initialization_options"
    ):
        logger.error(
            f"Server '{server_name}' does not expose server and get_initialization_options"
        )
        sys.exit(1)

    return server_module.server, server_module.get_initialization_options


async def run_stdio_server(server_instance, get_initialization_options):
    """Serve one server instance over stdin/stdout until the client disconnects"""
    logger.info("Starting stdio server")
    try:
        async with mcp.server.stdio.stdio_server() as (read_stream, write_stream):
            await server_instance.run(
                read_stream,
                write_stream,
                get_initialization_options(server_instance),
            )
    finally:
        github = getattr(server_instance, "github", None)
        if github is not None:
            await github.aclose()


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="GitHub Projects MCP stdio server")
    parser.add_argument(
        "--server",
        default=DEFAULT_SERVER,
        help=f"Name of the server to run (default: {DEFAULT_SERVER})",
    )
    parser.add_argument(
        "--user-id", default="local", help="User ID for server context (optional)"
    )
    parser.add_argument(
        "--env-file", default=None, help="Path of a .env file to load first"
    )
    return parser.parse_args(argv)


async def main(argv=None):
    """Main entry point for the stdio server"""
    args = parse_args(argv)
    load_dotenv(dotenv_path=args.env_file)
    logging.getLogger().setLevel(os.environ.get("LOG_LEVEL", "INFO").upper())

    logger.info(f"Loading server: {args.server}")
    create_server, get_initialization_options = load_server(args.server)
    server_instance = create_server(user_id=args.user_id)

    logger.info(f"Running {args.server} over stdio for user: {args.user_id}")
    await run_stdio_server(server_instance, get_initialization_options)


if __name__ == "__main__":
    asyncio.run(main())
