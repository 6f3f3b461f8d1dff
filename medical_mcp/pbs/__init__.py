"""Throttled, cached gateway to the PBS public API."""

from medical_mcp.pbs.allowlist import filter_params
from medical_mcp.pbs.gateway import PbsClient, PbsGateway, ResponseCache, ThrottleState

__all__ = ["PbsClient", "PbsGateway", "ResponseCache", "ThrottleState", "filter_params"]
