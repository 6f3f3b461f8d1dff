"""openFDA drug label API."""

from typing import Any, Dict, List, Optional

from medical_mcp.constants import FDA_API_BASE
from medical_mcp.errors import UpstreamError
from medical_mcp.upstream.base import ApiClient

_LABEL_PATH = "drug/label.json"


class FdaClient(ApiClient):
    api_name = "FDA API"

    def __init__(self, base_url: str = FDA_API_BASE, **kwargs: Any) -> None:
        super().__init__(base_url, **kwargs)

    async def _search_labels(self, search: str, limit: int) -> List[Dict[str, Any]]:
        try:
            payload = await self.get_json(_LABEL_PATH, {"search": search, "limit": limit})
        except UpstreamError as exc:
            # openFDA answers 404 when nothing matches the search.
            if exc.status_code == 404:
                return []
            raise
        return list(payload.get("results") or [])

    async def search_labels(self, brand_name: str, limit: int = 10) -> List[Dict[str, Any]]:
        return await self._search_labels(f"openfda.brand_name:{brand_name}", limit)

    async def get_label_by_ndc(self, ndc: str) -> Optional[Dict[str, Any]]:
        results = await self._search_labels(f"openfda.product_ndc:{ndc}", 1)
        return results[0] if results else None
