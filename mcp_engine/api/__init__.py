"""HTTP API и диспетчер протокола MCP."""

from .routes import configure_routes, router

__all__ = ["configure_routes", "router"]
