"""Tool registry and the tool handlers exposed over MCP."""

from medical_mcp.pbs.gateway import PbsGateway
from medical_mcp.tools.drugs import register_drug_tools
from medical_mcp.tools.health import register_health_tools
from medical_mcp.tools.literature import register_literature_tools
from medical_mcp.tools.pbs import register_pbs_tools
from medical_mcp.tools.registry import ToolDescriptor, ToolRegistry
from medical_mcp.upstream import FdaClient, PubMedClient, RxNormClient, ScholarClient, WhoClient


def build_registry(
    *,
    gateway: PbsGateway,
    fda: FdaClient,
    who: WhoClient,
    rxnorm: RxNormClient,
    pubmed: PubMedClient,
    scholar: ScholarClient,
) -> ToolRegistry:
    """Register every tool and freeze the registry."""
    registry = ToolRegistry()
    register_drug_tools(registry, fda, rxnorm)
    register_health_tools(registry, who)
    register_literature_tools(registry, pubmed, scholar)
    register_pbs_tools(registry, gateway)
    registry.freeze()
    return registry


__all__ = ["ToolDescriptor", "ToolRegistry", "build_registry"]
