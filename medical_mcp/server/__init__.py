"""HTTP server: ASGI app, MCP transports and session management."""
