"""Shared async HTTP client for upstream REST APIs."""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

import httpx

from medical_mcp.constants import UPSTREAM_TIMEOUT, USER_AGENT
from medical_mcp.errors import UpstreamError, UpstreamFormatError

logger = logging.getLogger(__name__)

QueryParams = Mapping[str, Any]


class ApiClient:
    """Lazily created :class:`httpx.AsyncClient` bound to one upstream API.

    Parameters
    ----------
    base_url:
        Root URL every request path is resolved against.
    user_agent:
        ``User-Agent`` sent with each request.
    timeout:
        Per-request timeout in seconds.
    headers:
        Extra headers (API keys and the like).
    client:
        Pre-built client, mainly for tests (``httpx.MockTransport``).
        An injected client is not closed by :meth:`close`.
    """

    api_name = "Upstream API"

    def __init__(
        self,
        base_url: str,
        *,
        user_agent: str = USER_AGENT,
        timeout: float = UPSTREAM_TIMEOUT,
        headers: Optional[Dict[str, str]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers: Dict[str, str] = {"User-Agent": user_agent, "Accept": "application/json"}
        if headers:
            self._headers.update(headers)
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None

    @property
    def base_url(self) -> str:
        return self._base_url

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers=self._headers,
                timeout=self._timeout,
                follow_redirects=True,
            )
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    # ── Requests ─────────────────────────────────────────────────────

    async def _get(self, path: str, params: Optional[QueryParams] = None) -> httpx.Response:
        endpoint = path.lstrip("/")
        client = self._ensure_client()
        try:
            resp = await client.get(f"/{endpoint}", params=dict(params or {}))
        except httpx.HTTPError as exc:
            logger.warning("%s request to '%s' failed: %s", self.api_name, endpoint, exc)
            raise UpstreamError(
                endpoint,
                f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__,
                api=self.api_name,
                orig_exc=exc,
            ) from exc

        if not resp.is_success:
            logger.warning(
                "%s request to '%s' returned HTTP %d.", self.api_name, endpoint, resp.status_code
            )
            raise UpstreamError(
                endpoint,
                f"HTTP {resp.status_code} {resp.reason_phrase}".rstrip(),
                api=self.api_name,
                status_code=resp.status_code,
            )
        return resp

    async def get_json(self, path: str, params: Optional[QueryParams] = None) -> Dict[str, Any]:
        """GET *path* and return the decoded JSON object.

        Raises :class:`UpstreamError` on HTTP/network failure and
        :class:`UpstreamFormatError` when the body is not a JSON object.
        """
        resp = await self._get(path, params)
        endpoint = path.lstrip("/")
        try:
            payload = resp.json()
        except ValueError as exc:
            raise UpstreamFormatError(
                endpoint, "response body is not valid JSON", api=self.api_name, orig_exc=exc
            ) from exc
        if not isinstance(payload, dict):
            raise UpstreamFormatError(
                endpoint,
                f"expected a JSON object, got {type(payload).__name__}",
                api=self.api_name,
            )
        return payload

    async def get_text(self, path: str, params: Optional[QueryParams] = None) -> str:
        resp = await self._get(path, params)
        return resp.text
