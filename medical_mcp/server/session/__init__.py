"""Session management for per-client MCP sessions."""

from medical_mcp.server.session.manager import SessionManager
from medical_mcp.server.session.models import MCPSession, SessionState

__all__ = ["MCPSession", "SessionManager", "SessionState"]
