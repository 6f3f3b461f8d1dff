"""Literature search tools: PubMed and Google Scholar (via SerpAPI)."""

from pydantic import BaseModel, Field

from medical_mcp.errors import ToolExecutionError
from medical_mcp.tools.formatting import truncate
from medical_mcp.tools.registry import ToolRegistry
from medical_mcp.upstream.pubmed import PubMedClient
from medical_mcp.upstream.scholar import ScholarClient


class LiteratureArgs(BaseModel):
    query: str = Field(min_length=1, description="Medical topic or condition to search for")
    max_results: int = Field(
        default=10, ge=1, le=20, description="Maximum number of articles to return (max 20)"
    )


class ScholarArgs(BaseModel):
    query: str = Field(min_length=1, description="Academic topic or research query to search for")


def register_literature_tools(
    registry: ToolRegistry, pubmed: PubMedClient, scholar: ScholarClient
) -> None:
    @registry.tool(
        "search-medical-literature",
        LiteratureArgs,
        "Search for medical research articles in PubMed",
    )
    async def search_literature(args: LiteratureArgs) -> str:
        articles = await pubmed.search_articles(args.query, args.max_results)
        if not articles:
            return f'No medical articles found for "{args.query}". Try a different search term.'
        parts = [f'**Medical Literature Search: "{args.query}"**\n', f"Found {len(articles)} article(s)\n"]
        for index, article in enumerate(articles, 1):
            lines = [
                f"{index}. **{article['title']}**",
                f"   PMID: {article['pmid']}",
                f"   Journal: {article['journal'] or 'Not available'}",
                f"   Publication Date: {article['publication_date'] or 'Not available'}",
            ]
            if article["authors"]:
                more = " et al." if len(article["authors"]) > 3 else ""
                lines.append(f"   Authors: {', '.join(article['authors'][:3])}{more}")
            if article["doi"]:
                lines.append(f"   DOI: {article['doi']}")
            parts.append("\n".join(lines) + "\n")
        return "\n".join(parts)

    @registry.tool(
        "search-google-scholar",
        ScholarArgs,
        "Search for academic research articles using Google Scholar",
    )
    async def search_scholar(args: ScholarArgs) -> str:
        if not scholar.configured:
            raise ToolExecutionError(
                "search-google-scholar",
                "Google Scholar search needs a SerpAPI key; set SERPAPI_KEY and restart the server.",
            )
        articles = await scholar.search(args.query)
        if not articles:
            return f'No academic articles found for "{args.query}". Try refining your search terms.'
        parts = [f'**Google Scholar Search: "{args.query}"**\n', f"Found {len(articles)} article(s)\n"]
        for index, article in enumerate(articles, 1):
            lines = [f"{index}. **{article['title']}**"]
            for key, label in (
                ("authors", "Authors"),
                ("journal", "Journal"),
                ("year", "Year"),
                ("citations", "Citations"),
                ("url", "URL"),
            ):
                if article.get(key):
                    lines.append(f"   {label}: {article[key]}")
            if article.get("abstract"):
                lines.append(f"   Abstract: {truncate(article['abstract'], 300)}")
            parts.append("\n".join(lines) + "\n")
        return "\n".join(parts)
