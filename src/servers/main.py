import sys
import asyncio
import logging
import argparse

# Configure logging for the main script
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger("github-projects-mcp")


def main():
    """Parse arguments and launch the GitHub projects MCP server"""
    parser = argparse.ArgumentParser(description="GitHub Projects MCP Server")
    parser.add_argument(
        "--transport",
        choices=["stdio", "sse"],
        default="stdio",
        help="stdio for a local client, sse for the HTTP server",
    )
    parser.add_argument("--host", default="0.0.0.0", help="Host for the SSE server")
    parser.add_argument(
        "--port", type=int, default=8000, help="Port for the SSE server"
    )
    parser.add_argument("--user-id", default="local", help="User ID for stdio sessions")

    args = parser.parse_args()

    if args.transport == "stdio":
        from local import main as local_main

        asyncio.run(local_main(["--server", "github", "--user-id", args.user_id]))
        return

    logger.info(f"Starting GitHub projects MCP server on {args.host}:{args.port}")
    from remote import main as remote_main

    # Pass the CLI arguments to the remote server
    sys.argv = [sys.argv[0], "--host", args.host, "--port", str(args.port)]
    remote_main()


if __name__ == "__main__":
    main()
