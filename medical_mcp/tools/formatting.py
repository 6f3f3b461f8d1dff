"""Text helpers shared by tool handlers."""

import json
import re
from typing import Any, Dict, Iterable, List, Optional

_TAG_RE = re.compile(r"<[^>]*>")
_BLANK_LINES_RE = re.compile(r"\n\s*\n+")


def strip_html(html: Optional[str]) -> str:
    """Turn tags into line breaks and collapse blank runs."""
    text = _TAG_RE.sub("\n", html or "")
    return _BLANK_LINES_RE.sub("\n", text).strip()


def truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else f"{text[:limit]}..."


def first(values: Any, default: str = "Not specified") -> str:
    """First element of an openFDA list field."""
    if isinstance(values, list) and values:
        return str(values[0])
    return default


def numbered(lines: Iterable[str]) -> str:
    return "\n".join(f"{i}. {line}" for i, line in enumerate(lines, 1))


def summarize_item(item: Dict[str, Any]) -> str:
    code = item.get("pbs_code") or item.get("pbsItemCode") or ""
    brand = item.get("brand_name") or item.get("brandName") or ""
    drug = item.get("li_drug_name") or item.get("drug_name") or item.get("drugName") or ""
    schedule = item.get("schedule_code") or ""
    pack = item.get("pack_size") or item.get("packSize") or ""
    line = brand or drug or code or "Item"
    if code:
        line += f" [{code}]"
    if schedule:
        line += f" (schedule {schedule})"
    if pack:
        line += f", pack {pack}"
    return line


def summarize_items(items: List[Dict[str, Any]], limit: int) -> str:
    return numbered(summarize_item(it) for it in items[:limit])


def schedule_line(row: Dict[str, Any]) -> str:
    return (
        f"{row.get('effective_year')}-{row.get('effective_month')}: "
        f"schedule_code {row.get('schedule_code')} (status: {row.get('publication_status')})"
    )


def json_preview(row: Any, limit: int = 500) -> str:
    return json.dumps(row, default=str)[:limit]
