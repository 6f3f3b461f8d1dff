"""NCBI E-utilities (PubMed) client."""

import xml.etree.ElementTree as ET
from typing import Any, Dict, List, Optional

from medical_mcp.constants import PUBMED_API_BASE
from medical_mcp.errors import UpstreamFormatError
from medical_mcp.upstream.base import ApiClient


def _text(elem: Optional[ET.Element]) -> str:
    if elem is None:
        return ""
    return " ".join("".join(elem.itertext()).split())


def _publication_date(article: ET.Element) -> str:
    pub_date = article.find(".//Journal/JournalIssue/PubDate")
    if pub_date is None:
        return ""
    medline = pub_date.findtext("MedlineDate")
    if medline:
        return medline
    parts = [pub_date.findtext(tag) for tag in ("Year", "Month", "Day")]
    return " ".join(p for p in parts if p)


def parse_pubmed_articles(xml_text: str) -> List[Dict[str, Any]]:
    """Extract PMID, title, journal, date, DOI and authors from an efetch response."""
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as exc:
        raise UpstreamFormatError("efetch.fcgi", f"invalid XML: {exc}", api="PubMed API") from exc

    articles = []
    for node in root.iter("PubmedArticle"):
        pmid = node.findtext(".//MedlineCitation/PMID") or node.findtext(".//PMID")
        title = _text(node.find(".//ArticleTitle"))
        if not pmid or not title:
            continue
        authors = []
        for author in node.findall(".//AuthorList/Author"):
            last = author.findtext("LastName")
            if last:
                initials = author.findtext("Initials") or ""
                authors.append(f"{last} {initials}".strip())
            elif author.findtext("CollectiveName"):
                authors.append(author.findtext("CollectiveName"))
        doi = None
        for article_id in node.findall(".//ArticleIdList/ArticleId"):
            if article_id.get("IdType") == "doi" and article_id.text:
                doi = article_id.text.strip()
        articles.append(
            {
                "pmid": pmid.strip(),
                "title": title,
                "journal": _text(node.find(".//Journal/Title")),
                "publication_date": _publication_date(node),
                "doi": doi,
                "authors": authors,
            }
        )
    return articles


class PubMedClient(ApiClient):
    api_name = "PubMed API"

    def __init__(self, base_url: str = PUBMED_API_BASE, **kwargs: Any) -> None:
        super().__init__(base_url, **kwargs)

    async def search_ids(self, term: str, max_results: int = 10) -> List[str]:
        payload = await self.get_json(
            "esearch.fcgi",
            {"db": "pubmed", "term": term, "retmode": "json", "retmax": max_results},
        )
        return [str(i) for i in (payload.get("esearchresult") or {}).get("idlist") or []]

    async def search_articles(self, term: str, max_results: int = 10) -> List[Dict[str, Any]]:
        ids = await self.search_ids(term, max_results)
        if not ids:
            return []
        xml_text = await self.get_text(
            "efetch.fcgi", {"db": "pubmed", "id": ",".join(ids), "retmode": "xml"}
        )
        return parse_pubmed_articles(xml_text)
