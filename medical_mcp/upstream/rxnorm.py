"""NLM RxNav (RxNorm) REST API."""

from typing import Any, Dict, List

from medical_mcp.constants import RXNAV_API_BASE
from medical_mcp.upstream.base import ApiClient


def _split(value: Any) -> List[str]:
    if isinstance(value, list):
        return [str(v) for v in value]
    if isinstance(value, str) and value:
        return value.split("|")
    return []


def normalize_concept(concept: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "rxcui": concept.get("rxcui") or concept.get("rxCui") or "",
        "name": concept.get("name") or concept.get("term") or "",
        "synonym": _split(concept.get("synonym")),
        "tty": concept.get("tty") or concept.get("termType") or "",
        "language": concept.get("language") or "",
        "suppress": concept.get("suppress") or "",
    }


class RxNormClient(ApiClient):
    api_name = "RxNav API"

    def __init__(self, base_url: str = RXNAV_API_BASE, **kwargs: Any) -> None:
        super().__init__(base_url, **kwargs)

    async def search_drugs(self, name: str) -> List[Dict[str, Any]]:
        payload = await self.get_json("drugs.json", {"name": name})
        groups = (payload.get("drugGroup") or {}).get("conceptGroup") or []
        concepts: List[Dict[str, Any]] = []
        for group in groups:
            for key in ("conceptProperties", "concept", "minConcept"):
                members = group.get(key)
                if isinstance(members, list):
                    concepts.extend(m for m in members if isinstance(m, dict))
        drugs = [normalize_concept(c) for c in concepts]
        return [d for d in drugs if d["name"] and d["rxcui"]]
