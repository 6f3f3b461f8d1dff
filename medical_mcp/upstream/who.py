"""WHO Global Health Observatory OData API."""

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from medical_mcp.constants import WHO_API_BASE
from medical_mcp.errors import UpstreamError
from medical_mcp.upstream.base import ApiClient

logger = logging.getLogger(__name__)


def odata_quote(value: str) -> str:
    """Escape a string literal for an OData ``$filter`` (``'`` becomes ``''``)."""
    return value.replace("'", "''")


class WhoClient(ApiClient):
    api_name = "WHO GHO API"

    def __init__(self, base_url: str = WHO_API_BASE, **kwargs: Any) -> None:
        super().__init__(base_url, **kwargs)

    async def _indicators(self, odata_filter: str, top: int) -> List[Dict[str, Any]]:
        payload = await self.get_json(
            "Indicator", {"$filter": odata_filter, "$top": top, "$format": "json"}
        )
        return [row for row in payload.get("value") or [] if row.get("IndicatorCode")]

    async def find_indicator_code(self, name: str) -> Optional[str]:
        """Resolve an indicator name to its code: exact match first, then substring."""
        escaped = odata_quote(name)
        try:
            exact = await self._indicators(f"IndicatorName eq '{escaped}'", 1)
        except UpstreamError as exc:
            logger.info("Exact WHO indicator lookup failed (%s); trying contains().", exc)
            exact = []
        if exact:
            return exact[0]["IndicatorCode"]

        partial = await self._indicators(f"contains(IndicatorName,'{escaped}')", 1)
        return partial[0]["IndicatorCode"] if partial else None

    async def list_indicators(self, keyword: str, top: int = 50) -> List[Dict[str, str]]:
        rows = await self._indicators(f"contains(IndicatorName,'{odata_quote(keyword)}')", top)
        return [{"code": r["IndicatorCode"], "name": r.get("IndicatorName", "")} for r in rows]

    async def get_indicator_data(
        self, code: str, country: Optional[str] = None, top: int = 200
    ) -> List[Dict[str, Any]]:
        """Latest observations for *code*, both sexes where the data is split by sex."""
        filters = []
        if country:
            filters.append(f"SpatialDim eq '{odata_quote(country.upper())}'")
        filters.append("(Dim1 eq 'SEX_BTSX' or Dim1 eq null)")
        payload = await self.get_json(
            quote(code, safe=""),
            {
                "$filter": " and ".join(filters),
                "$orderby": "TimeDim desc",
                "$top": top,
                "$format": "json",
            },
        )
        return list(payload.get("value") or [])
