"""Model Context Protocol client with stdio and SSE transports."""

__version__ = "0.1.0"

__all__ = ["client", "transport"]