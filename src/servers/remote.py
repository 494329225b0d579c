import os
import logging
import argparse
import threading
from contextlib import asynccontextmanager
import importlib.util
from pathlib import Path
from urllib.parse import unquote

import uvicorn
from dotenv import load_dotenv
from starlette.routing import Route
from starlette.applications import Starlette
from starlette.responses import JSONResponse, Response
from prometheus_client import Counter, Gauge, generate_latest, CONTENT_TYPE_LATEST

from mcp.server.sse import SseServerTransport

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger("github-projects-sse")

SERVER_NAME = "github"
METRICS_PORT = 9091

# Prometheus metrics
active_connections = Gauge(
    "github_mcp_active_connections", "Number of active SSE connections"
)
connection_total = Counter(
    "github_mcp_connection_total", "Total number of SSE connections"
)

# session key -> transport / server instance
session_transports = {}
session_servers = {}


def load_server_module():
    server_file = Path(__file__).parent.absolute() / SERVER_NAME / "main.py"
    spec = importlib.util.spec_from_file_location(f"{SERVER_NAME}.server", server_file)
    server_module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(server_module)
    return server_module


def parse_session_key(session_key: str):
    """
    Split a "{user_id}:{token}" session key. The token part is optional and
    may be URL encoded.
    """
    session_key = unquote(session_key)
    if ":" in session_key:
        user_id, api_key = session_key.split(":", 1)
        return user_id, api_key or None
    return session_key, None


def create_metrics_app():
    """Create a separate Starlette app just for metrics"""

    async def metrics_endpoint(request):
        """Prometheus metrics endpoint"""
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return Starlette(routes=[Route("/metrics", endpoint=metrics_endpoint)])


def create_starlette_app(server_module=None):
    """Create the Starlette app serving the GitHub server over per-session SSE"""
    server_module = server_module or load_server_module()
    server_factory = server_module.server
    get_init_options = server_module.get_initialization_options

    async def handle_sse(request):
        """Open an SSE stream for a session, reusing its server instance"""
        session_key = request.path_params["session_key"]
        user_id, api_key = parse_session_key(session_key)
        logger.info(f"New SSE connection requested for session: {user_id}")

        sse_transport = SseServerTransport(f"/{SERVER_NAME}/{session_key}/messages/")
        session_transports[session_key] = sse_transport

        # Keep the instance (and its response cache) across reconnections
        if session_key not in session_servers:
            session_servers[session_key] = server_factory(user_id, api_key)
        server_instance = session_servers[session_key]

        active_connections.inc()
        connection_total.inc()
        try:
            async with sse_transport.connect_sse(
                request.scope, request.receive, request._send
            ) as streams:
                logger.info(f"SSE connection established for session: {user_id}")
                await server_instance.run(
                    streams[0], streams[1], get_init_options(server_instance)
                )
        finally:
            session_transports.pop(session_key, None)
            active_connections.dec()
            logger.info(f"Closed SSE connection for session: {user_id}")
        return Response()

    async def handle_message(request):
        """Forward a posted message to the session's transport"""
        session_key = request.path_params["session_key"]
        transport = session_transports.get(session_key)
        if transport is None:
            return Response("Session not found or expired", status_code=404)
        return transport.handle_post_message

    async def health_check(request):
        """Health check endpoint"""
        return JSONResponse(
            {
                "status": "ok",
                "server": SERVER_NAME,
                "sessions": len(session_transports),
            }
        )

    @asynccontextmanager
    async def lifespan(app):
        yield
        for instance in session_servers.values():
            github = getattr(instance, "github", None)
            if github is not None:
                await github.aclose()
        session_servers.clear()

    routes = [
        Route("/", endpoint=health_check),
        Route("/health_check", endpoint=health_check),
        Route(f"/{SERVER_NAME}/{{session_key}}", endpoint=handle_sse),
        Route(
            f"/{SERVER_NAME}/{{session_key}}/messages/",
            endpoint=handle_message,
            methods=["POST"],
        ),
    ]
    return Starlette(routes=routes, lifespan=lifespan)


def run_metrics_server(host, port):
    """Run a separate metrics server on the specified port"""
    logger.info(f"Starting metrics server on {host}:{port}")
    uvicorn.run(create_metrics_app(), host=host, port=port)


def main():
    """Main entry point for the SSE server"""
    parser = argparse.ArgumentParser(description="GitHub Projects MCP SSE server")
    parser.add_argument("--host", default="0.0.0.0", help="Host for Starlette server")
    parser.add_argument(
        "--port", type=int, default=8000, help="Port for Starlette server"
    )
    parser.add_argument(
        "--metrics-port", type=int, default=METRICS_PORT, help="Port for /metrics"
    )
    args = parser.parse_args()

    load_dotenv()
    logging.getLogger().setLevel(os.environ.get("LOG_LEVEL", "INFO").upper())

    metrics_thread = threading.Thread(
        target=run_metrics_server, args=(args.host, args.metrics_port), daemon=True
    )
    metrics_thread.start()

    app = create_starlette_app()
    logger.info(f"Starting Starlette server on {args.host}:{args.port}")
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
