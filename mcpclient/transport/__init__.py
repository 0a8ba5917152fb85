"""Transports that carry JSON-RPC messages between an MCP client and server."""

__all__ = ["base", "events", "sse", "stdio"]