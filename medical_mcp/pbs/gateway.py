"""Rate-limited, cached access to the PBS public API.

The PBS API allows roughly one request every 20 seconds across *all*
users, so every outbound request from this process goes through one
:class:`ThrottleState`.  Identical queries inside the cache TTL are served
from :class:`ResponseCache` without touching the throttle at all.

Both pieces of state are plain objects owned by whoever builds the
gateway (``MedicalMcpService``) so tests can inject their own clock.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple

import httpx

from medical_mcp.constants import PBS_API_BASE, PBS_CACHE_TTL, PBS_MIN_INTERVAL, PBS_TIMEOUT, USER_AGENT
from medical_mcp.errors import UpstreamFormatError
from medical_mcp.pbs.allowlist import filter_params
from medical_mcp.progress import report_progress_nowait
from medical_mcp.upstream.base import ApiClient

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]
CacheKey = Tuple[str, Tuple[Tuple[str, str], ...]]


def make_cache_key(endpoint: str, params: Mapping[str, str]) -> CacheKey:
    """Key on endpoint plus sorted parameter pairs so ordering never matters."""
    return endpoint, tuple(sorted(params.items()))


# ── Cache ────────────────────────────────────────────────────────────────


@dataclass
class CacheEntry:
    payload: Dict[str, Any]
    inserted_at: float


class ResponseCache:
    """TTL cache for decoded PBS payloads.

    Expired entries are evicted lazily on lookup.  Reads and writes never
    await, so under asyncio they are atomic with respect to other callers.
    """

    def __init__(self, ttl: float = PBS_CACHE_TTL, clock: Clock = time.monotonic) -> None:
        self._ttl = ttl
        self._clock = clock
        self._entries: Dict[CacheKey, CacheEntry] = {}

    @property
    def ttl(self) -> float:
        return self._ttl

    def get(self, key: CacheKey) -> Optional[Dict[str, Any]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.inserted_at >= self._ttl:
            del self._entries[key]
            return None
        return entry.payload

    def put(self, key: CacheKey, payload: Dict[str, Any]) -> None:
        if self._ttl <= 0:
            return
        self._entries[key] = CacheEntry(payload=payload, inserted_at=self._clock())

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


# ── Throttle ─────────────────────────────────────────────────────────────


@dataclass
class ThrottleState:
    """Process-wide send slot for the PBS API."""

    min_interval: float = PBS_MIN_INTERVAL
    last_sent_at: Optional[float] = None
    """Clock value of the last request actually sent; ``None`` until the first send."""

    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    """Guards the check-and-set of *last_sent_at*."""


# ── HTTP client ──────────────────────────────────────────────────────────


class PbsClient(ApiClient):
    """Unthrottled HTTP access to the PBS API; use it through :class:`PbsGateway`."""

    api_name = "PBS API"

    def __init__(
        self,
        base_url: str = PBS_API_BASE,
        *,
        user_agent: str = USER_AGENT,
        timeout: float = PBS_TIMEOUT,
        subscription_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        headers = {"Subscription-Key": subscription_key} if subscription_key else None
        super().__init__(
            base_url, user_agent=user_agent, timeout=timeout, headers=headers, client=client
        )


# ── Gateway ──────────────────────────────────────────────────────────────


class PbsGateway:
    """``fetch(endpoint, params)`` for tool handlers, throttled and cached.

    Parameters
    ----------
    client:
        The HTTP client used for sends.
    throttle:
        Shared throttle state; all gateways talking to PBS must share one.
    cache:
        Response cache.
    clock, sleep:
        Time source and suspension primitive (injectable for tests).
    """

    def __init__(
        self,
        client: PbsClient,
        throttle: Optional[ThrottleState] = None,
        cache: Optional[ResponseCache] = None,
        *,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._client = client
        self._throttle = throttle or ThrottleState()
        self._cache = cache if cache is not None else ResponseCache(clock=clock)
        self._clock = clock
        self._sleep = sleep
        self._sends = 0

    @property
    def throttle(self) -> ThrottleState:
        return self._throttle

    @property
    def cache(self) -> ResponseCache:
        return self._cache

    @property
    def send_count(self) -> int:
        """Number of requests actually sent upstream."""
        return self._sends

    async def close(self) -> None:
        await self._client.close()

    async def fetch(
        self,
        endpoint: str,
        params: Optional[Mapping[str, Any]] = None,
        *,
        use_cache: bool = True,
    ) -> Dict[str, Any]:
        """Return the decoded payload for ``GET /{endpoint}?{params}``.

        Parameters outside the endpoint's allow-list are dropped first.
        Failures raise :class:`~medical_mcp.errors.UpstreamError` or
        :class:`~medical_mcp.errors.UpstreamFormatError` and are never
        cached or retried here.
        """
        safe_params = filter_params(endpoint, params)
        key = make_cache_key(endpoint, safe_params)

        if use_cache:
            cached = self._cache.get(key)
            if cached is not None:
                logger.debug("PBS cache hit: %s %s", endpoint, safe_params)
                return cached

        async with self._throttle.lock:
            await self._wait_for_interval(endpoint)
            if use_cache:
                # A caller ahead of us in the queue may have fetched the same key.
                cached = self._cache.get(key)
                if cached is not None:
                    logger.debug("PBS cache hit after throttle wait: %s", endpoint)
                    return cached
            self._throttle.last_sent_at = self._clock()
            self._sends += 1

        logger.info("PBS request: /%s %s", endpoint, safe_params)
        payload = await self._client.get_json(endpoint, safe_params)
        if not isinstance(payload.get("data", []), list):
            raise UpstreamFormatError(endpoint, "'data' is not a list", api=self._client.api_name)

        if use_cache:
            self._cache.put(key, payload)
        return payload

    async def _wait_for_interval(self, endpoint: str) -> None:
        """Sleep until the minimum interval since the last send has elapsed.

        Must be called with the throttle lock held.
        """
        last = self._throttle.last_sent_at
        if last is None:
            return
        remaining = last + self._throttle.min_interval - self._clock()
        if remaining <= 0:
            return
        logger.info("PBS throttle: waiting %.1fs before /%s", remaining, endpoint)
        report_progress_nowait(f"Waiting {remaining:.0f}s for the PBS API rate limit")
        await self._sleep(remaining)

    # ── Helpers used by several tools ────────────────────────────────

    async def first_row(
        self, endpoint: str, params: Optional[Mapping[str, Any]] = None
    ) -> Optional[Dict[str, Any]]:
        payload = await self.fetch(endpoint, params)
        rows = payload.get("data") or []
        return rows[0] if rows else None

    async def resolve_latest_schedule_code(self) -> Optional[str]:
        row = await self.first_row("schedules", {"get_latest_schedule_only": "true", "limit": 1})
        if row is None or row.get("schedule_code") in (None, ""):
            return None
        return str(row["schedule_code"])

    async def get_item(
        self, pbs_code: str, schedule_code: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        return await self.first_row(
            "items", {"pbs_code": pbs_code, "schedule_code": schedule_code, "limit": 1}
        )
