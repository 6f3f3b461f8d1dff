"""Query parameters the PBS API accepts, per endpoint.

Anything not listed here is dropped before a request leaves the process,
so callers cannot smuggle arbitrary filters to the upstream.
"""

import logging
from typing import Any, Dict, FrozenSet, Mapping, Optional

logger = logging.getLogger(__name__)

# Generic query controls supported by every PBS endpoint.
COMMON_PARAMS: FrozenSet[str] = frozenset(
    {"limit", "page", "sort", "sort_fields", "fields", "filter"}
)

ENDPOINT_PARAMS: Dict[str, FrozenSet[str]] = {
    "schedules": frozenset(
        {
            "schedule_code",
            "revision_number",
            "effective_date",
            "effective_month",
            "effective_year",
            "get_latest_schedule_only",
        }
    ),
    "items": frozenset(
        {
            "schedule_code",
            "li_item_id",
            "drug_name",
            "li_drug_name",
            "li_form",
            "schedule_form",
            "brand_name",
            "program_code",
            "pbs_code",
            "benefit_type_code",
            "pack_size",
            "pricing_quantity",
        }
    ),
    "item-overview": frozenset(
        {
            "schedule_code",
            "li_item_id",
            "drug_name",
            "li_drug_name",
            "li_form",
            "schedule_form",
            "brand_name",
            "program_code",
            "pbs_code",
            "benefit_type_code",
        }
    ),
    "organisations": frozenset({"organisation_id", "name", "schedule_code"}),
    "fees": frozenset({"program_code", "schedule_code"}),
    "restrictions": frozenset(
        {
            "res_code",
            "schedule_code",
            "treatment_phase",
            "authority_method",
            "treatment_of_code",
            "restriction_number",
            "li_html_text",
            "schedule_html_text",
            "note_indicator",
            "caution_indicator",
            "assessment_type_code",
            "criteria_relationship",
            "variation_rule_applied",
            "first_listing_date",
            "written_authority_required",
        }
    ),
    "item-restriction-relationships": frozenset(
        {
            "res_code",
            "pbs_code",
            "benefit_type_code",
            "restriction_indicator",
            "schedule_code",
            "res_position",
        }
    ),
    "restriction-prescribing-text-relationships": frozenset(
        {"schedule_code", "res_code", "prescribing_text_id", "pt_position"}
    ),
    "prescribing-texts": frozenset(
        {
            "schedule_code",
            "prescribing_txt_id",
            "prescribing_type",
            "prescribing_txt",
            "prscrbg_txt_html",
            "complex_authority_rqrd_ind",
            "assessment_type_code",
            "apply_to_increase_mq_flag",
            "apply_to_increase_nr_flag",
        }
    ),
    "prescribers": frozenset({"pbs_code", "prescriber_code", "schedule_code", "prescriber_type"}),
    "item-atc-relationships": frozenset(
        {"atc_code", "schedule_code", "pbs_code", "atc_priority_pct"}
    ),
    "atc-codes": frozenset(
        {"atc_code", "atc_description", "atc_level", "atc_parent_code", "schedule_code"}
    ),
    "amt-items": frozenset(
        {
            "pbs_concept_id",
            "concept_type_code",
            "schedule_code",
            "amt_code",
            "li_item_id",
            "preferred_term",
            "exempt_ind",
            "non_amt_code",
            "pbs_preferred_term",
        }
    ),
    "copayments": frozenset(
        {
            "schedule_code",
            "general",
            "concessional",
            "safety_net_general",
            "safety_net_concessional",
            "safety_net_card_issue",
            "increased_discount_limit",
            "safety_net_ctg_contribution",
        }
    ),
    "item-pricing-events": frozenset(
        {"schedule_code", "li_item_id", "percentage_applied", "event_type_code"}
    ),
    "programs": frozenset({"program_code", "schedule_code", "program_title"}),
    "program-dispensing-rules": frozenset(
        {"program_code", "dispensing_rule_mnem", "default_indicator", "schedule_code"}
    ),
    "summary-of-changes": frozenset(
        {
            "schedule_code",
            "source_schedule_code",
            "target_effective_date",
            "source_effective_date",
            "target_publication_status",
            "source_publication_status",
            "target_revision_number",
            "source_revision_number",
            "changed_table",
            "change_type",
            "sql_statement",
            "change_detail",
            "previous_detail",
            "table_keys",
            "deleted_ind",
            "new_ind",
            "modified_ind",
            "changed_endpoint",
        }
    ),
}

KNOWN_ENDPOINTS: FrozenSet[str] = frozenset(ENDPOINT_PARAMS)


def allowed_params(endpoint: str) -> FrozenSet[str]:
    """Return the permitted parameter names for *endpoint* (common ones only if unknown)."""
    return ENDPOINT_PARAMS.get(endpoint, frozenset()) | COMMON_PARAMS


def filter_params(endpoint: str, params: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    """Keep only permitted, non-empty parameters, stringified."""
    if not params:
        return {}
    allowed = allowed_params(endpoint)
    out: Dict[str, str] = {}
    dropped = []
    for key, value in params.items():
        if key not in allowed:
            dropped.append(key)
            continue
        if value is None or value == "":
            continue
        out[key] = str(value).lower() if isinstance(value, bool) else str(value)
    if dropped:
        logger.debug("Dropped non-allowed params for '%s': %s", endpoint, sorted(dropped))
    return out
