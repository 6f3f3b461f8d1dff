"""Medical MCP: drug, health-statistics, literature and PBS tools over MCP."""

from medical_mcp.constants import SERVER_NAME, SERVER_VERSION

__all__ = ["SERVER_NAME", "SERVER_VERSION"]
__version__ = SERVER_VERSION
