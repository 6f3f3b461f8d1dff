"""Google Scholar results through SerpAPI."""

from typing import Any, Dict, List, Optional

from medical_mcp.constants import SERPAPI_BASE
from medical_mcp.upstream.base import ApiClient


def normalize_result(item: Dict[str, Any]) -> Dict[str, Any]:
    authors = (item.get("publication_info") or {}).get("summary")
    if not authors and isinstance(item.get("authors"), list):
        authors = ", ".join(a.get("name", "") for a in item["authors"] if isinstance(a, dict))
    cited_by = ((item.get("inline_links") or {}).get("cited_by") or {}).get("total")
    resources = item.get("resources") or []
    return {
        "title": item.get("title") or "",
        "authors": authors or None,
        "abstract": item.get("snippet") or "",
        "journal": item.get("publication") or item.get("journal") or "",
        "year": str(item["year"]) if item.get("year") else None,
        "citations": f"Cited by {cited_by}" if cited_by else None,
        "url": item.get("link") or (resources[0].get("link") if resources else None),
    }


class ScholarClient(ApiClient):
    api_name = "SerpAPI"

    def __init__(
        self, base_url: str = SERPAPI_BASE, *, api_key: Optional[str] = None, **kwargs: Any
    ) -> None:
        super().__init__(base_url, **kwargs)
        self._api_key = api_key

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def search(self, query: str) -> List[Dict[str, Any]]:
        payload = await self.get_json(
            "search.json", {"engine": "google_scholar", "q": query, "api_key": self._api_key}
        )
        return [normalize_result(i) for i in payload.get("organic_results") or []]
