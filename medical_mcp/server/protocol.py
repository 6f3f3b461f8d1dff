"""Wire-level checks for the streamable HTTP endpoint.

Everything here runs before a session is looked up, so a rejected
request never touches the session table or a tool handler.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Tuple, Union

from mcp.shared.version import SUPPORTED_PROTOCOL_VERSIONS
from mcp.types import (
    DEFAULT_NEGOTIATED_VERSION,
    INTERNAL_ERROR,
    INVALID_REQUEST,
    PARSE_ERROR,
    ErrorData,
    JSONRPCMessage,
    JSONRPCRequest,
)
from pydantic import ValidationError
from starlette.datastructures import Headers
from starlette.responses import JSONResponse

from medical_mcp.config.schema import ServerSettings

MCP_SESSION_ID_HEADER = "mcp-session-id"
MCP_PROTOCOL_VERSION_HEADER = "mcp-protocol-version"
CONTENT_TYPE_JSON = "application/json"
CONTENT_TYPE_SSE = "text/event-stream"

RequestId = Union[str, int, None]


class ProtocolError(Exception):
    """A request rejected at the transport boundary.

    Rendered as a JSON-RPC error envelope with a matching HTTP status.
    """

    def __init__(
        self,
        status_code: int,
        code: int,
        message: str,
        *,
        data: Any = None,
        request_id: RequestId = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.data = data
        self.request_id = request_id
        self.headers = headers

    def to_response(self) -> JSONResponse:
        return error_response(
            self.status_code,
            self.code,
            self.message,
            data=self.data,
            request_id=self.request_id,
            headers=self.headers,
        )


def error_response(
    status_code: int,
    code: int,
    message: str,
    *,
    data: Any = None,
    request_id: RequestId = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """Build ``{"jsonrpc": "2.0", "error": {...}, "id": ...}``."""
    error = ErrorData(code=code, message=message, data=data)
    body = {
        "jsonrpc": "2.0",
        "error": error.model_dump(exclude_none=True),
        "id": request_id,
    }
    return JSONResponse(body, status_code=status_code, headers=headers)


def internal_error_response() -> JSONResponse:
    return error_response(500, INTERNAL_ERROR, "Internal server error")


# ── Protocol version ────────────────────────────────────────────────────


def supported_versions() -> List[str]:
    return list(SUPPORTED_PROTOCOL_VERSIONS)


def negotiate_version(headers: Headers) -> str:
    """Return the protocol version a request speaks.

    A missing header means the baseline version. Anything outside the
    supported set is rejected.
    """
    version = headers.get(MCP_PROTOCOL_VERSION_HEADER)
    if version is None:
        return DEFAULT_NEGOTIATED_VERSION
    supported = supported_versions()
    if version not in supported:
        raise ProtocolError(
            400,
            INVALID_REQUEST,
            f"Bad Request: Unsupported protocol version: {version}. "
            f"Supported versions: {', '.join(supported)}",
            data={"supported": supported},
        )
    return version


# ── Content negotiation ─────────────────────────────────────────────────


def _media_types(header_value: str) -> List[str]:
    return [part.split(";", 1)[0].strip().lower() for part in header_value.split(",") if part.strip()]


def accepts(headers: Headers) -> Tuple[bool, bool]:
    """Return ``(accepts_json, accepts_sse)`` from the Accept header."""
    types = _media_types(headers.get("accept", ""))
    has_json = any(t in (CONTENT_TYPE_JSON, "application/*", "*/*") for t in types)
    has_sse = any(t in (CONTENT_TYPE_SSE, "text/*", "*/*") for t in types)
    return has_json, has_sse


def check_post_accept(headers: Headers, *, json_response: bool) -> None:
    """A POST must accept JSON, and also SSE when responses may stream."""
    has_json, has_sse = accepts(headers)
    if json_response:
        if not has_json:
            raise ProtocolError(
                406, INVALID_REQUEST, "Not Acceptable: Client must accept application/json"
            )
    elif not (has_json and has_sse):
        raise ProtocolError(
            406,
            INVALID_REQUEST,
            "Not Acceptable: Client must accept both application/json and text/event-stream",
        )


def check_get_accept(headers: Headers) -> None:
    _, has_sse = accepts(headers)
    if not has_sse:
        raise ProtocolError(406, INVALID_REQUEST, "Not Acceptable: Client must accept text/event-stream")


def check_content_type(headers: Headers) -> None:
    content_type = headers.get("content-type", "")
    if _media_types(content_type)[:1] != [CONTENT_TYPE_JSON]:
        raise ProtocolError(
            415, INVALID_REQUEST, "Unsupported Media Type: Content-Type must be application/json"
        )


# ── Message parsing ─────────────────────────────────────────────────────


def parse_message(body: bytes) -> Tuple[JSONRPCMessage, RequestId]:
    """Parse one JSON-RPC message. Batches are not accepted."""
    try:
        raw = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ProtocolError(400, PARSE_ERROR, f"Parse error: {exc}") from exc

    request_id: RequestId = None
    if isinstance(raw, dict):
        candidate = raw.get("id")
        if isinstance(candidate, (str, int)) and not isinstance(candidate, bool):
            request_id = candidate
    try:
        message = JSONRPCMessage.model_validate(raw)
    except ValidationError as exc:
        raise ProtocolError(
            400,
            INVALID_REQUEST,
            "Invalid Request: body is not a single JSON-RPC message",
            request_id=request_id,
        ) from exc
    return message, request_id


def is_initialize(message: JSONRPCMessage) -> bool:
    return isinstance(message.root, JSONRPCRequest) and message.root.method == "initialize"


# ── DNS rebinding protection ────────────────────────────────────────────


def _host_allowed(host: str, allowed: List[str]) -> bool:
    for pattern in allowed:
        if pattern == host:
            return True
        if pattern.endswith(":*") and host.split(":", 1)[0] == pattern[:-2]:
            return True
    return False


def check_origin(headers: Headers, settings: ServerSettings) -> None:
    """Reject requests whose Host or Origin is not explicitly allowed.

    Only active with ``dns_rebinding_protection``. An empty host list
    skips the Host check; a request without Origin is not cross-origin.
    """
    if not settings.dns_rebinding_protection:
        return
    host = headers.get("host", "")
    if settings.allowed_hosts and not _host_allowed(host, settings.allowed_hosts):
        raise ProtocolError(403, INVALID_REQUEST, f"Forbidden: invalid Host header '{host}'")
    origin = headers.get("origin")
    if origin is not None and origin not in settings.allowed_origins:
        raise ProtocolError(403, INVALID_REQUEST, f"Forbidden: invalid Origin header '{origin}'")
