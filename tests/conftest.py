"""Shared fixtures: fake time and mock upstream transports."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Dict, List

import httpx
import pytest


class FakeClock:
    """Monotonic clock advanced only by :meth:`sleep`."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class RecordingHandler:
    """``httpx.MockTransport`` handler that records requests and their clock time."""

    def __init__(
        self,
        clock: Callable[[], float],
        respond: Callable[[httpx.Request], httpx.Response],
    ) -> None:
        self._clock = clock
        self._respond = respond
        self.requests: List[httpx.Request] = []
        self.sent_at: List[float] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        self.sent_at.append(self._clock())
        return self._respond(request)


def json_response(payload: Any, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, content=json.dumps(payload).encode(), headers={"Content-Type": "application/json"})


def pbs_payload(request: httpx.Request) -> httpx.Response:
    """Echo the request path and query into a PBS-shaped body."""
    params: Dict[str, str] = dict(request.url.params)
    return json_response({"data": [{"endpoint": request.url.path, **params}], "_meta": {"total_records": 1}})


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
