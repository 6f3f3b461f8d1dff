"""Drug label (openFDA) and nomenclature (RxNorm) tools."""

from typing import Any, Dict

from pydantic import BaseModel, Field

from medical_mcp.errors import RecordNotFoundError
from medical_mcp.tools.formatting import first, truncate
from medical_mcp.tools.registry import ToolRegistry
from medical_mcp.upstream.fda import FdaClient
from medical_mcp.upstream.rxnorm import RxNormClient


class SearchDrugsArgs(BaseModel):
    query: str = Field(min_length=1, description="Drug name to search for (brand name or generic name)")
    limit: int = Field(default=10, ge=1, le=50, description="Number of results to return (max 50)")


class DrugDetailsArgs(BaseModel):
    ndc: str = Field(min_length=1, description="National Drug Code (NDC) of the drug")


class NomenclatureArgs(BaseModel):
    query: str = Field(min_length=1, description="Drug name to search for in RxNorm database")


def _label_summary(drug: Dict[str, Any]) -> Dict[str, str]:
    openfda = drug.get("openfda") or {}
    return {
        "Brand Name": first(openfda.get("brand_name"), "Unknown Brand"),
        "Generic Name": first(openfda.get("generic_name")),
        "Manufacturer": first(openfda.get("manufacturer_name")),
        "Route": first(openfda.get("route")),
        "Dosage Form": first(openfda.get("dosage_form")),
    }


def format_drug_search(query: str, drugs) -> str:
    parts = [f'**Drug Search Results for "{query}"**\n', f"Found {len(drugs)} drug(s)\n"]
    for index, drug in enumerate(drugs, 1):
        summary = _label_summary(drug)
        lines = [f"{index}. **{summary.pop('Brand Name')}**"]
        lines.extend(f"   {key}: {value}" for key, value in summary.items())
        purpose = drug.get("purpose") or []
        if purpose:
            lines.append(f"   Purpose: {truncate(purpose[0], 200)}")
        lines.append(f"   Last Updated: {drug.get('effective_time', 'Unknown')}")
        parts.append("\n".join(lines) + "\n")
    return "\n".join(parts)


def format_drug_details(ndc: str, drug: Dict[str, Any]) -> str:
    summary = _label_summary(drug)
    lines = [f"**Drug Details for NDC: {ndc}**", "", "**Basic Information:**"]
    lines.extend(f"- {key}: {value}" for key, value in summary.items())
    lines.append(f"- Last Updated: {drug.get('effective_time', 'Unknown')}")
    for field, title, limit in (
        ("purpose", "Purpose/Uses", None),
        ("warnings", "Warnings", 300),
        ("drug_interactions", "Drug Interactions", 300),
    ):
        entries = drug.get(field) or []
        if not entries:
            continue
        lines.extend(["", f"**{title}:**"])
        lines.extend(
            f"{i}. {truncate(text, limit) if limit else text}" for i, text in enumerate(entries, 1)
        )
    return "\n".join(lines)


def register_drug_tools(registry: ToolRegistry, fda: FdaClient, rxnorm: RxNormClient) -> None:
    @registry.tool("search-drugs", SearchDrugsArgs, "Search for drug information using FDA database")
    async def search_drugs(args: SearchDrugsArgs) -> str:
        drugs = await fda.search_labels(args.query, args.limit)
        if not drugs:
            return f'No drugs found matching "{args.query}". Try a different search term.'
        return format_drug_search(args.query, drugs)

    @registry.tool(
        "get-drug-details",
        DrugDetailsArgs,
        "Get detailed information about a specific drug by NDC (National Drug Code)",
    )
    async def get_drug_details(args: DrugDetailsArgs) -> str:
        ndc = args.ndc.strip()
        drug = await fda.get_label_by_ndc(ndc)
        if drug is None:
            raise RecordNotFoundError(f"No drug found with NDC: {ndc}")
        return format_drug_details(ndc, drug)

    @registry.tool(
        "search-drug-nomenclature",
        NomenclatureArgs,
        "Search for drug information using RxNorm (standardized drug nomenclature)",
    )
    async def search_nomenclature(args: NomenclatureArgs) -> str:
        drugs = await rxnorm.search_drugs(args.query)
        if not drugs:
            return f'No drugs found in RxNorm database for "{args.query}". Try a different search term.'
        parts = [f'**RxNorm Drug Search: "{args.query}"**\n', f"Found {len(drugs)} drug(s)\n"]
        for index, drug in enumerate(drugs, 1):
            lines = [
                f"{index}. **{drug['name']}**",
                f"   RxCUI: {drug['rxcui']}",
                f"   Term Type: {drug['tty']}",
                f"   Language: {drug['language']}",
            ]
            synonyms = drug["synonym"]
            if synonyms:
                more = "..." if len(synonyms) > 3 else ""
                lines.append(f"   Synonyms: {', '.join(synonyms[:3])}{more}")
            parts.append("\n".join(lines) + "\n")
        return "\n".join(parts)
