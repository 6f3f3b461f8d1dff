"""Environment handling for configuration: placeholders and overrides."""

import os
import re
from typing import Any, Dict, Mapping, Optional, Tuple

_ENV_VAR_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

# Environment variable → (section, key).  First match wins for duplicated keys.
ENV_OVERRIDES: Tuple[Tuple[str, str, str], ...] = (
    ("HOST", "server", "host"),
    ("PORT", "server", "port"),
    ("MCP_PORT", "server", "port"),
    ("MCP_REQUEST_TIMEOUT", "server", "request_timeout"),
    ("MCP_ALLOWED_ORIGINS", "server", "allowed_origins"),
    ("MCP_ALLOWED_HOSTS", "server", "allowed_hosts"),
    ("MCP_DNS_REBINDING_PROTECTION", "server", "dns_rebinding_protection"),
    ("MCP_JSON_RESPONSE", "server", "json_response"),
    ("MCP_LEGACY_SSE", "server", "legacy_sse"),
    ("PBS_API_BASE", "pbs", "base_url"),
    ("PBS_MIN_INTERVAL", "pbs", "min_interval"),
    ("PBS_CACHE_TTL", "pbs", "cache_ttl"),
    ("PBS_SUBSCRIPTION_KEY", "pbs", "subscription_key"),
    ("FDA_API_BASE", "upstreams", "fda_base"),
    ("WHO_API_BASE", "upstreams", "who_base"),
    ("RXNAV_API_BASE", "upstreams", "rxnav_base"),
    ("PUBMED_API_BASE", "upstreams", "pubmed_base"),
    ("SERPAPI_KEY", "upstreams", "serpapi_key"),
    ("USER_AGENT", "upstreams", "user_agent"),
)


def expand_env_vars(value: Any) -> Any:
    """Recursively expand ``${VAR}`` references in string values.

    - If the env var is not set, the placeholder is left unchanged.
    - Non-string leaves are returned as-is.
    - Dicts and lists are walked recursively.
    """
    if isinstance(value, str):
        return _ENV_VAR_RE.sub(
            lambda m: os.environ.get(m.group(1), m.group(0)),
            value,
        )
    if isinstance(value, dict):
        return {k: expand_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_env_vars(item) for item in value]
    return value


def apply_env_overrides(
    raw_data: Dict[str, Any],
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """Return a copy of *raw_data* with well-known environment variables applied.

    Values stay strings; pydantic coerces them during validation.
    """
    env = os.environ if environ is None else environ
    result = {k: (dict(v) if isinstance(v, dict) else v) for k, v in raw_data.items()}
    seen = set()
    for var, section, key in ENV_OVERRIDES:
        value = env.get(var)
        if value is None or value == "" or (section, key) in seen:
            continue
        seen.add((section, key))
        bucket = result.setdefault(section, {})
        if not isinstance(bucket, dict):
            bucket = result[section] = {}
        bucket[key] = value
    return result
