"""HTTP surface of the PostgreSQL MCP server."""

from .main import AppState, create_app

__all__ = ["AppState", "create_app"]
