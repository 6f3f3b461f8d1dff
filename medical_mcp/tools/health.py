"""WHO Global Health Observatory tools."""

from typing import Optional

from pydantic import BaseModel, Field, field_validator

from medical_mcp.tools.formatting import numbered
from medical_mcp.tools.registry import ToolRegistry
from medical_mcp.upstream.who import WhoClient


class HealthStatisticsArgs(BaseModel):
    indicator: str = Field(
        min_length=1,
        description="Health indicator to search for (e.g., 'Life expectancy', 'Mortality rate')",
    )
    country: Optional[str] = Field(
        default=None, description="ISO3 country code (e.g., 'USA', 'GBR', 'AUS') - optional"
    )
    limit: int = Field(default=10, ge=1, le=20, description="Number of results to return (max 20)")

    @field_validator("country", mode="before")
    @classmethod
    def _check_country(cls, v):
        if v is None or not str(v).strip():
            return None
        v = str(v).strip().upper()
        if len(v) != 3 or not v.isalpha():
            raise ValueError("country must be a 3-letter ISO code")
        return v


class ListIndicatorsArgs(BaseModel):
    query: str = Field(min_length=1, description="Keyword to search in WHO Indicator names")


def register_health_tools(registry: ToolRegistry, who: WhoClient) -> None:
    @registry.tool(
        "get-health-statistics",
        HealthStatisticsArgs,
        "Get health statistics and indicators from WHO Global Health Observatory",
    )
    async def get_health_statistics(args: HealthStatisticsArgs) -> str:
        where = f" in {args.country}" if args.country else ""
        code = await who.find_indicator_code(args.indicator)
        rows = await who.get_indicator_data(code, args.country) if code else []
        if not rows:
            return (
                f'No health indicators found for "{args.indicator}"{where}. '
                "Try a different search term."
            )

        parts = [f"**Health Statistics: {args.indicator}**\n"]
        if args.country:
            parts.append(f"Country: {args.country}")
        parts.append(f"Found {len(rows)} data points\n")
        for index, row in enumerate(rows[: args.limit], 1):
            lines = [f"{index}. **{row.get('SpatialDim') or 'N/A'}** ({row.get('TimeDim') or 'N/A'})"]
            if row.get("Value") is not None:
                lines.append(f"   Value: {row['Value']} {row.get('Comments') or ''}".rstrip())
            if row.get("NumericValue") is not None:
                lines.append(f"   Numeric Value: {row['NumericValue']}")
            if row.get("Low") is not None and row.get("High") is not None:
                lines.append(f"   Range: {row['Low']} - {row['High']}")
            if row.get("Date"):
                lines.append(f"   Date: {row['Date']}")
            parts.append("\n".join(lines) + "\n")
        return "\n".join(parts)

    @registry.tool(
        "list-who-indicators",
        ListIndicatorsArgs,
        "List WHO indicators by searching for a keyword (useful to find exact indicator names/codes)",
    )
    async def list_indicators(args: ListIndicatorsArgs) -> str:
        items = await who.list_indicators(args.query)
        if not items:
            return f'No WHO indicators found for "{args.query}".'
        return numbered(f"{i['name']} (code: {i['code']})" for i in items[:20])
