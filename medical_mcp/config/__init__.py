from medical_mcp.config.loader import load_config
from medical_mcp.config.schema import (
    MedicalMcpConfig,
    PbsSettings,
    ServerSettings,
    UpstreamSettings,
)

__all__ = [
    "MedicalMcpConfig",
    "PbsSettings",
    "ServerSettings",
    "UpstreamSettings",
    "load_config",
]
