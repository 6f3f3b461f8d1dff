"""Runtime service layer for Medical MCP."""

from medical_mcp.runtime.models import ServiceState
from medical_mcp.runtime.service import MedicalMcpService

__all__ = ["MedicalMcpService", "ServiceState"]
