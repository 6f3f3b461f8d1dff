"""HTTP clients for the upstream medical APIs."""

from medical_mcp.upstream.base import ApiClient
from medical_mcp.upstream.fda import FdaClient
from medical_mcp.upstream.pubmed import PubMedClient
from medical_mcp.upstream.rxnorm import RxNormClient
from medical_mcp.upstream.scholar import ScholarClient
from medical_mcp.upstream.who import WhoClient

__all__ = [
    "ApiClient",
    "FdaClient",
    "PubMedClient",
    "RxNormClient",
    "ScholarClient",
    "WhoClient",
]
