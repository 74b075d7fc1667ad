"""PostgreSQL MCP server: embedded OAuth authorization server and MCP session routing."""

import argparse
import logging
import sys

from postgres_mcp.config import SERVER_NAME, SERVER_VERSION, ServerConfig
from postgres_mcp.utils.logging import setup_logging

__version__ = SERVER_VERSION

logger = logging.getLogger("postgres-mcp")


def main() -> None:
    """Program entry point: parse arguments and run the server under uvicorn."""
    import uvicorn

    from postgres_mcp.servers import create_app

    parser = argparse.ArgumentParser(description=f"Start {SERVER_NAME} v{SERVER_VERSION}")
    parser.add_argument("--host", type=str, default=None, help="Host address (env: MCP_HOST)")
    parser.add_argument("--port", type=int, default=None, help="Port (env: MCP_PORT)")
    parser.add_argument(
        "--oauth",
        action="store_true",
        default=False,
        help="Enable the OAuth endpoints and require bearer tokens on /mcp",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["debug", "info", "warning", "error", "critical"],
        help="Logging level (env: MCP_LOG_LEVEL, default: info)",
    )
    args = parser.parse_args()

    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        parser.error(str(e))

    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port
    if args.oauth:
        config.oauth_enabled = True
    if args.log_level:
        config.log_level = args.log_level.upper()

    setup_logging(config.log_level)
    app = create_app(config)

    logger.info(f"Starting {SERVER_NAME} v{SERVER_VERSION} on http://{config.host}:{config.port}/mcp")
    if config.oauth_enabled:
        logger.info(f"OAuth discovery: {config.base_url}/.well-known/oauth-protected-resource")

    try:
        uvicorn.run(app, host=config.host, port=config.port, log_level=config.log_level.lower())
    except KeyboardInterrupt:
        logger.info(f"{SERVER_NAME} interrupted")
    except Exception:
        logger.exception(f"{SERVER_NAME} exited with an error")
        sys.exit(1)


__all__ = ["__version__", "main"]
