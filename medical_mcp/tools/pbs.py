"""PBS (Pharmaceutical Benefits Scheme) tools.

Every upstream call goes through :class:`~medical_mcp.pbs.gateway.PbsGateway`,
which serialises sends to one per throttle interval; handlers that need
several lookups are therefore slow on a cold cache.
"""

import logging
import re
from typing import Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, Field, field_validator

from medical_mcp.errors import RecordNotFoundError, UpstreamError
from medical_mcp.pbs.gateway import PbsGateway
from medical_mcp.tools.formatting import (
    json_preview,
    numbered,
    schedule_line,
    strip_html,
    summarize_items,
)
from medical_mcp.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

PBS_ITEM_CODE_RE = re.compile(r"^[0-9]{4,6}[A-Z]$")
SCHEDULE_CODE_RE = re.compile(r"^[0-9]+$")
ENDPOINT_NAME_RE = re.compile(r"^[a-z][a-z-]*$")

_EQ_FILTER_RE = re.compile(r"^\s*([A-Za-z0-9_]+)\s+eq\s+'([^']+)'\s*$")
_CONTAINS_FILTER_RE = re.compile(r"^\s*contains\(\s*([A-Za-z0-9_]+)\s*,\s*'([^']+)'\s*\)\s*$")


def normalize_item_code(value: str) -> str:
    code = str(value or "").strip().upper()
    if not PBS_ITEM_CODE_RE.match(code):
        raise ValueError(f"Invalid PBS item code: {value!r} (expected e.g. '12210P')")
    return code


def normalize_schedule_code(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    code = str(value).strip()
    if not code:
        return None
    if not SCHEDULE_CODE_RE.match(code):
        raise ValueError(f"Invalid schedule_code: {value!r} (digits only)")
    return code


def parse_overview_filter(expr: str) -> Tuple[str, str]:
    """Map ``field eq 'v'`` / ``contains(field,'v')`` to a query pair.

    The API has no substring search, so ``contains`` degrades to equality;
    a bare string is taken as a brand name.
    """
    match = _EQ_FILTER_RE.match(expr) or _CONTAINS_FILTER_RE.match(expr)
    if match:
        return match.group(1), match.group(2)
    return "brand_name", expr.strip()


# ── Argument models ──────────────────────────────────────────────────────


class _ScheduleArgs(BaseModel):
    schedule_code: Optional[str] = Field(
        default=None, description="Optional schedule code, e.g. '3773'; latest if omitted"
    )

    @field_validator("schedule_code", mode="before")
    @classmethod
    def _check_schedule(cls, v):
        return normalize_schedule_code(v)


class ItemArgs(_ScheduleArgs):
    pbs_item_code: str = Field(description="PBS item code, e.g. '12210P'")

    @field_validator("pbs_item_code", mode="before")
    @classmethod
    def _check_code(cls, v):
        return normalize_item_code(v)


class ListSchedulesArgs(BaseModel):
    limit: int = Field(default=5, ge=1, le=50)
    latest_only: bool = Field(default=True, description="If true, only returns the latest schedule")


class GetItemArgs(ItemArgs):
    limit: int = Field(default=5, ge=1, le=50)


class RestrictionsArgs(ItemArgs):
    limit: int = Field(
        default=1, ge=1, le=10, description="Number of restriction groups to show (usually 1)"
    )


class ItemOverviewArgs(BaseModel):
    filter: str = Field(
        min_length=1,
        description="ODATA-like expression, e.g. brand_name eq 'PANADOL' or li_drug_name eq 'PARACETAMOL'",
    )
    limit: int = Field(default=5, ge=1, le=50)


class PbsSearchArgs(BaseModel):
    endpoint: str = Field(description="PBS endpoint, e.g. 'schedules', 'items', 'item-overview'")
    params: Dict[str, Union[str, int, float, bool]] = Field(
        default_factory=dict,
        description="Optional query parameters; names outside the endpoint's allow-list are dropped",
    )

    @field_validator("endpoint")
    @classmethod
    def _check_endpoint(cls, v: str) -> str:
        v = v.strip().strip("/")
        if not ENDPOINT_NAME_RE.match(v):
            raise ValueError(f"Invalid PBS endpoint name: {v!r}")
        return v


class CopaymentsArgs(_ScheduleArgs):
    pass


class SummaryOfChangesArgs(_ScheduleArgs):
    source_schedule_code: Optional[str] = Field(
        default=None, description="Previous schedule; inferred from the schedule list if omitted"
    )
    changed_endpoint: Optional[str] = Field(
        default=None, description="Endpoint/table to filter by, e.g. 'items'"
    )
    limit: int = Field(default=10, ge=1, le=100)

    @field_validator("source_schedule_code", mode="before")
    @classmethod
    def _check_source(cls, v):
        return normalize_schedule_code(v)


# ── Handlers ─────────────────────────────────────────────────────────────


def register_pbs_tools(registry: ToolRegistry, gateway: PbsGateway) -> None:
    """Register the PBS tools, all bound to *gateway*."""

    async def _require_item(code: str, schedule: Optional[str] = None) -> Dict:
        item = await gateway.get_item(code, schedule)
        if item is None:
            raise RecordNotFoundError(f"No PBS item found for code {code}.")
        return item

    async def _rows(endpoint: str, params: Dict) -> List[Dict]:
        payload = await gateway.fetch(endpoint, params)
        return payload.get("data") or []

    @registry.tool(
        "pbs-list-schedules",
        ListSchedulesArgs,
        "List PBS schedules (optionally only the latest schedule)",
    )
    async def list_schedules(args: ListSchedulesArgs) -> str:
        params: Dict[str, object] = {"limit": args.limit}
        if args.latest_only:
            params["get_latest_schedule_only"] = "true"
        payload = await gateway.fetch("schedules", params)
        rows = payload.get("data") or []
        total = (payload.get("_meta") or {}).get("total_records", len(rows))
        header = f"PBS schedules (showing {min(len(rows), args.limit)} of {total})"
        return f"{header}\n{numbered(schedule_line(r) for r in rows[: args.limit])}"

    @registry.tool(
        "pbs-get-item",
        GetItemArgs,
        "Fetch PBS item(s) by pbs_item_code and optional schedule_code",
    )
    async def get_item(args: GetItemArgs) -> str:
        rows = await _rows(
            "items",
            {"pbs_code": args.pbs_item_code, "schedule_code": args.schedule_code, "limit": args.limit},
        )
        if not rows:
            raise RecordNotFoundError(f"No PBS items found for code {args.pbs_item_code}.")
        return summarize_items(rows, args.limit)

    @registry.tool(
        "pbs-search-item-overview",
        ItemOverviewArgs,
        "Search PBS item-overview using an ODATA-like filter expression (advanced)",
    )
    async def search_item_overview(args: ItemOverviewArgs) -> str:
        field, value = parse_overview_filter(args.filter)
        params = {field: value, "limit": args.limit}
        try:
            rows = await _rows("item-overview", params)
            source = "item-overview"
        except UpstreamError as exc:
            logger.info("item-overview rejected %r (%s); falling back to items.", args.filter, exc)
            rows = await _rows("items", params)
            source = "items"
        if not rows:
            return f"No PBS {source} results for filter: {args.filter}"
        return summarize_items(rows, args.limit)

    @registry.tool(
        "pbs-search",
        PbsSearchArgs,
        "Query Australia's PBS public API (rate-limited; one request per ~20s across all users)",
    )
    async def pbs_search(args: PbsSearchArgs) -> str:
        endpoint = args.endpoint
        rows = await _rows(endpoint, args.params)
        if not rows:
            return f"No results from /{endpoint}"
        shown = rows[:5]
        if endpoint in ("items", "item-overview"):
            text = summarize_items(shown, len(shown))
        elif endpoint == "schedules":
            text = numbered(schedule_line(r) for r in shown)
        elif endpoint == "organisations":
            text = numbered(
                f"{r.get('name')}"
                + (f" (id {r['organisation_id']})" if r.get("organisation_id") else "")
                for r in shown
            )
        else:
            text = ""
        return text or json_preview(rows[0])

    @registry.tool(
        "pbs-get-restrictions-for-item",
        RestrictionsArgs,
        "Fetch ordered restriction text (including notes/cautions) for a PBS item code",
    )
    async def get_restrictions(args: RestrictionsArgs) -> str:
        code = args.pbs_item_code
        item = await _require_item(code)
        schedule = args.schedule_code or (str(item["schedule_code"]) if item.get("schedule_code") else None)
        relations = await _rows(
            "item-restriction-relationships",
            {"pbs_code": code, "schedule_code": schedule, "limit": args.limit},
        )
        where = f" in schedule {schedule}" if schedule else ""
        if not relations:
            return f"No restrictions found for {code}{where}."

        sections = []
        for rel in relations[: args.limit]:
            res_code = rel.get("res_code")
            label = f"Restriction {res_code}"
            if rel.get("benefit_type_code"):
                label += f" [{rel['benefit_type_code']}]"
            try:
                restriction = await gateway.first_row(
                    "restrictions", {"res_code": res_code, "schedule_code": schedule, "limit": 1}
                )
            except UpstreamError as exc:
                logger.warning("Restriction %s text unavailable: %s", res_code, exc)
                sections.append(f"{label}\n(text unavailable: {exc})")
                continue
            restriction = restriction or {}
            text = strip_html(
                restriction.get("li_html_text") or restriction.get("schedule_html_text")
            )
            if text:
                sections.append(f"{label}\n{text}")
        if not sections:
            return f"No restriction text sections found for {code}."
        return "\n\n".join(sections)

    @registry.tool(
        "pbs-get-prescribers-for-item",
        ItemArgs,
        "List prescriber types allowed for a PBS item",
    )
    async def get_prescribers(args: ItemArgs) -> str:
        rows = await _rows(
            "prescribers",
            {"pbs_code": args.pbs_item_code, "schedule_code": args.schedule_code, "limit": 50},
        )
        if not rows:
            return f"No prescribers found for {args.pbs_item_code}."
        return "\n".join(
            f"{r.get('prescriber_code') or '?'} - {r.get('prescriber_type') or 'Unknown'}"
            + (f" (schedule {r['schedule_code']})" if r.get("schedule_code") else "")
            for r in rows
        )

    @registry.tool(
        "pbs-get-atc-for-item",
        ItemArgs,
        "Return ATC classification(s) for a PBS item, enriched with ATC descriptions",
    )
    async def get_atc(args: ItemArgs) -> str:
        relations = await _rows(
            "item-atc-relationships",
            {"pbs_code": args.pbs_item_code, "schedule_code": args.schedule_code, "limit": 20},
        )
        if not relations:
            return f"No ATC mapping found for {args.pbs_item_code}."
        descriptions: Dict[str, str] = {}
        for atc_code in dict.fromkeys(r.get("atc_code") for r in relations if r.get("atc_code")):
            row = await gateway.first_row("atc-codes", {"atc_code": atc_code, "limit": 1})
            if row and row.get("atc_description"):
                descriptions[atc_code] = row["atc_description"]
        lines = []
        for r in relations:
            atc_code = r.get("atc_code")
            line = f"{atc_code} - {descriptions[atc_code]}" if atc_code in descriptions else str(atc_code)
            if r.get("atc_priority_pct"):
                line += f" ({r['atc_priority_pct']}%)"
            lines.append(line)
        return "\n".join(lines)

    @registry.tool(
        "pbs-get-amt-mapping",
        ItemArgs,
        "Return AMT concept mapping (MP/MPP/TPP) for a PBS item",
    )
    async def get_amt_mapping(args: ItemArgs) -> str:
        item = await _require_item(args.pbs_item_code, args.schedule_code)
        li_item_id = item.get("li_item_id")
        if not li_item_id:
            return f"No li_item_id available for {args.pbs_item_code}."
        rows = await _rows("amt-items", {"li_item_id": li_item_id, "limit": 20})
        if not rows:
            return f"No AMT mapping found for {args.pbs_item_code}."
        return "\n".join(
            f"{r.get('concept_type_code') or '?'}: "
            f"{r.get('amt_code') or r.get('non_amt_code') or '(no code)'} - "
            f"{r.get('preferred_term') or r.get('pbs_preferred_term') or ''}"
            for r in rows
        )

    @registry.tool(
        "pbs-get-organisation-for-item",
        ItemArgs,
        "Return manufacturer/responsible person info for a PBS item",
    )
    async def get_organisation(args: ItemArgs) -> str:
        item = await _require_item(args.pbs_item_code, args.schedule_code)
        org_id = item.get("organisation_id")
        if not org_id:
            return f"No organisation_id on item {args.pbs_item_code}."
        org = await gateway.first_row("organisations", {"organisation_id": org_id, "limit": 1})
        if org is None:
            raise RecordNotFoundError(f"No organisation record for id {org_id}.")
        line = org.get("name") or "Org"
        if org.get("abn"):
            line += f", ABN {org['abn']}"
        place = " ".join(
            str(p) for p in (org.get("city"), org.get("state"), org.get("postcode")) if p
        )
        if place:
            line += f", {place}"
        return line

    @registry.tool(
        "pbs-get-copayments",
        CopaymentsArgs,
        "Return PBS copayment amounts and safety net thresholds",
    )
    async def get_copayments(args: CopaymentsArgs) -> str:
        schedule = args.schedule_code or await gateway.resolve_latest_schedule_code()
        row = await gateway.first_row("copayments", {"schedule_code": schedule, "limit": 1})
        if row is None:
            return f"No copayments found{f' for schedule {schedule}' if schedule else ''}."
        labels = (
            ("general", "General"),
            ("concessional", "Concessional"),
            ("safety_net_general", "Safety Net (General)"),
            ("safety_net_concessional", "Safety Net (Concessional)"),
            ("increased_discount_limit", "Increased discount limit"),
            ("safety_net_ctg_contribution", "CTG contribution"),
        )
        return "\n".join(f"{label}: {row[key]}" for key, label in labels if row.get(key) is not None)

    @registry.tool(
        "pbs-get-price-events-for-item",
        ItemArgs,
        "Return statutory price reduction events for a PBS item",
    )
    async def get_price_events(args: ItemArgs) -> str:
        item = await _require_item(args.pbs_item_code, args.schedule_code)
        li_item_id = item.get("li_item_id")
        if not li_item_id:
            return f"No li_item_id available for {args.pbs_item_code}."
        rows = await _rows("item-pricing-events", {"li_item_id": li_item_id, "limit": 10})
        if not rows:
            return f"No price events for {args.pbs_item_code}."
        return "\n".join(
            f"{r.get('event_type_code') or 'EVENT'}"
            + (f" - {r['percentage_applied']}%" if r.get("percentage_applied") else "")
            for r in rows
        )

    @registry.tool(
        "pbs-get-program-details",
        ItemArgs,
        "Return program and dispensing rule details for a PBS item",
    )
    async def get_program_details(args: ItemArgs) -> str:
        item = await _require_item(args.pbs_item_code, args.schedule_code)
        program = item.get("program_code")
        if not program:
            return f"No program_code on item {args.pbs_item_code}."
        prog = await gateway.first_row("programs", {"program_code": program, "limit": 1})
        rules = await _rows("program-dispensing-rules", {"program_code": program, "limit": 5})
        header = f"{program} - {prog['program_title']}" if prog and prog.get("program_title") else str(program)
        lines = [header]
        for rule in rules:
            default = " (default)" if rule.get("default_indicator") == "Y" else ""
            lines.append(f"Rule: {rule.get('dispensing_rule_mnem') or '?'}{default}")
        return "\n".join(lines)

    @registry.tool(
        "pbs-summary-of-changes",
        SummaryOfChangesArgs,
        "Summarize changes between schedules for a given endpoint/table",
    )
    async def summary_of_changes(args: SummaryOfChangesArgs) -> str:
        target = args.schedule_code or await gateway.resolve_latest_schedule_code()
        source = args.source_schedule_code
        if not source:
            recent = await _rows(
                "schedules",
                {
                    "limit": 2,
                    "sort": "desc",
                    "sort_fields": "effective_year desc,effective_month desc,revision_number desc",
                },
            )
            if len(recent) >= 2:
                newest = str(recent[0].get("schedule_code"))
                source = str(recent[1].get("schedule_code")) if newest == target else newest
        rows = await _rows(
            "summary-of-changes",
            {
                "schedule_code": target,
                "source_schedule_code": source,
                "changed_endpoint": args.changed_endpoint,
                "limit": args.limit,
                "sort": "asc",
                "sort_fields": "changed_table asc",
            },
        )
        if not rows:
            suffix = f" for {args.changed_endpoint}" if args.changed_endpoint else ""
            return f"No changes found{suffix}."
        lines = []
        for r in rows[: args.limit]:
            if r.get("deleted_ind") == "Y":
                flag = " (deleted)"
            elif r.get("new_ind") == "Y":
                flag = " (new)"
            elif r.get("modified_ind") == "Y":
                flag = " (modified)"
            else:
                flag = ""
            lines.append(f"{r.get('changed_table') or 'TABLE'}: {r.get('change_type') or '?'}{flag}")
        return "\n".join(lines)

    @registry.tool(
        "pbs-get-fees-for-item",
        ItemArgs,
        "Fetch PBS fees by resolving an item's program_code, optionally for a specific schedule",
    )
    async def get_fees(args: ItemArgs) -> str:
        item = await _require_item(args.pbs_item_code, args.schedule_code)
        program = item.get("program_code")
        schedule = args.schedule_code or item.get("schedule_code")
        if not program:
            return f"Item {args.pbs_item_code} has no program_code available."
        fee = await gateway.first_row(
            "fees", {"program_code": program, "schedule_code": schedule, "limit": 1}
        )
        if fee is None:
            where = f" in schedule {schedule}" if schedule else ""
            return f"No fees found for program {program}{where}."
        labels = (
            ("dispensing_fee_ready_prepared", "Dispensing fee (ready prepared)"),
            ("dispensing_fee_dangerous_drug", "Dispensing fee (dangerous drug)"),
            ("dispensing_fee_extemporaneous", "Dispensing fee (extemporaneous)"),
            ("safety_net_recording_fee_ep", "Safety net recording fee (EP)"),
            ("safety_net_recording_fee_rp", "Safety net recording fee (RP)"),
            ("container_fee_injectable", "Container fee (injectable)"),
            ("container_fee_other", "Container fee (other)"),
        )
        lines = [f"Program: {fee.get('program_code', program)}" + (f" | Schedule: {schedule}" if schedule else "")]
        lines.extend(f"{label}: {fee[key]}" for key, label in labels if fee.get(key) is not None)
        return "\n".join(lines)
