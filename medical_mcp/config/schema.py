"""Pydantic configuration models for Medical MCP."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from medical_mcp.constants import (
    DEFAULT_HOST,
    DEFAULT_PORT,
    FDA_API_BASE,
    PBS_API_BASE,
    PBS_CACHE_TTL,
    PBS_MIN_INTERVAL,
    PBS_TIMEOUT,
    PUBMED_API_BASE,
    REQUEST_TIMEOUT,
    RXNAV_API_BASE,
    SERPAPI_BASE,
    SESSION_CLEANUP_INTERVAL,
    SESSION_TTL,
    SHUTDOWN_TIMEOUT,
    UPSTREAM_TIMEOUT,
    USER_AGENT,
    WHO_API_BASE,
)


def _split_csv(v):
    """Accept ``"a, b"`` as well as ``["a", "b"]`` for list settings."""
    if isinstance(v, str):
        return [item.strip() for item in v.split(",") if item.strip()]
    return v


def _check_url(v: str) -> str:
    v = v.strip().rstrip("/")
    if not v.startswith(("http://", "https://")):
        raise ValueError(f"URL '{v}' must start with http:// or https://")
    return v


# ── Server settings ─────────────────────────────────────────────────────


class ServerSettings(BaseModel):
    """Listener, transport and session settings."""

    host: str = DEFAULT_HOST
    port: int = Field(default=DEFAULT_PORT, ge=1, le=65535)
    request_timeout: float = Field(
        default=REQUEST_TIMEOUT,
        gt=0,
        description="Maximum seconds a single tool call may run.",
    )
    allowed_origins: List[str] = Field(
        default_factory=list,
        description="Origins allowed for cross-origin calls (CORS and Origin check).",
    )
    allowed_hosts: List[str] = Field(
        default_factory=list,
        description="Host header values accepted when DNS rebinding protection is on.",
    )
    dns_rebinding_protection: bool = Field(
        default=False,
        description="Reject requests whose Host/Origin is not explicitly allowed.",
    )
    json_response: bool = Field(
        default=False,
        description="Answer POSTs with a single JSON body instead of an SSE stream.",
    )
    legacy_sse: bool = Field(
        default=True,
        description="Also serve the single-stream GET /sse + POST /messages/ transport.",
    )
    per_session_server: bool = Field(
        default=False,
        description="Build a fresh tool-serving instance for every session.",
    )
    session_ttl: float = Field(default=SESSION_TTL, gt=0, description="Idle seconds per session.")
    session_cleanup_interval: float = Field(default=SESSION_CLEANUP_INTERVAL, gt=0)
    shutdown_timeout: float = Field(
        default=SHUTDOWN_TIMEOUT,
        ge=0,
        description="Hard deadline in seconds for closing live sessions on shutdown.",
    )

    @field_validator("allowed_origins", "allowed_hosts", mode="before")
    @classmethod
    def _normalise_lists(cls, v):
        return _split_csv(v)


# ── PBS gateway ─────────────────────────────────────────────────────────


class PbsSettings(BaseModel):
    """Throttled, cached access to the PBS public API."""

    base_url: str = PBS_API_BASE
    min_interval: float = Field(
        default=PBS_MIN_INTERVAL,
        ge=0,
        description="Minimum seconds between two requests actually sent to PBS.",
    )
    cache_ttl: float = Field(default=PBS_CACHE_TTL, ge=0, description="Response cache TTL in seconds.")
    timeout: float = Field(default=PBS_TIMEOUT, gt=0)
    subscription_key: Optional[str] = Field(
        default=None,
        description="Sent as the Subscription-Key header when set. Supports ${ENV_VAR}.",
    )

    @field_validator("base_url")
    @classmethod
    def _validate_url(cls, v: str) -> str:
        return _check_url(v)


# ── Other upstream APIs ─────────────────────────────────────────────────


class UpstreamSettings(BaseModel):
    """Base URLs and identity for the unthrottled upstream APIs."""

    fda_base: str = FDA_API_BASE
    who_base: str = WHO_API_BASE
    rxnav_base: str = RXNAV_API_BASE
    pubmed_base: str = PUBMED_API_BASE
    serpapi_base: str = SERPAPI_BASE
    serpapi_key: Optional[str] = None
    user_agent: str = USER_AGENT
    timeout: float = Field(default=UPSTREAM_TIMEOUT, gt=0)

    @field_validator("fda_base", "who_base", "rxnav_base", "pubmed_base", "serpapi_base")
    @classmethod
    def _validate_url(cls, v: str) -> str:
        return _check_url(v)



# ── Top-level config ────────────────────────────────────────────────────


class MedicalMcpConfig(BaseModel):
    """Top-level validated configuration.

    Example YAML::

        server:
          port: 3000
          allowed_origins: ["http://localhost:6274"]
        pbs:
          min_interval: 20
          subscription_key: ${PBS_SUBSCRIPTION_KEY}
        upstreams:
          serpapi_key: ${SERPAPI_KEY}
    """

    server: ServerSettings = Field(default_factory=ServerSettings)
    pbs: PbsSettings = Field(default_factory=PbsSettings)
    upstreams: UpstreamSettings = Field(default_factory=UpstreamSettings)
