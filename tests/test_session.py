"""Tests for session management."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, List

import pytest

from medical_mcp.server.session.manager import SessionManager
from medical_mcp.server.session.models import MCPSession, SessionState


class FakeTransport:
    def __init__(self, session_id: str, *, hang_on_terminate: bool = False) -> None:
        self.session_id = session_id
        self.terminated = False
        self._hang = hang_on_terminate

    @asynccontextmanager
    async def connect(self):
        yield ("read-stream", "write-stream")

    async def terminate(self) -> None:
        if self._hang:
            await asyncio.Event().wait()
        self.terminated = True


async def run_forever(server: Any, read_stream: Any, write_stream: Any) -> None:
    await asyncio.Event().wait()


async def return_immediately(server: Any, read_stream: Any, write_stream: Any) -> None:
    return None


def _manager(**kwargs: Any) -> SessionManager:
    servers: List[object] = []

    def factory() -> object:
        servers.append(object())
        return servers[-1]

    kwargs.setdefault("transport_factory", FakeTransport)
    kwargs.setdefault("runner", run_forever)
    sm = SessionManager(factory, **kwargs)
    sm.servers_built = servers  # type: ignore[attr-defined]
    return sm


async def _settle() -> None:
    for _ in range(20):
        await asyncio.sleep(0)


# ════════════════════════════════════════════════════════════════════════
#  MCPSession model tests
# ════════════════════════════════════════════════════════════════════════


class TestMCPSession:
    def test_default_state(self) -> None:
        s = MCPSession(id="abc")
        assert s.state is SessionState.UNINITIALIZED
        assert not s.is_active
        assert not s.expired

    def test_touch_updates_last_active(self) -> None:
        s = MCPSession(id="abc")
        old_active = s.last_active
        s.touch()
        assert s.last_active >= old_active

    def test_expired_after_ttl(self) -> None:
        s = MCPSession(id="abc", ttl=5.0)
        s.last_active -= 6.0
        assert s.expired

    def test_open_stream_holds_off_expiry(self) -> None:
        s = MCPSession(id="abc", ttl=5.0)
        s.stream_opened()
        s.last_active -= 6.0
        assert not s.expired
        s.stream_closed()
        assert s.open_streams == 0
        assert not s.expired
        s.last_active -= 6.0
        assert s.expired

    def test_to_dict(self) -> None:
        d = MCPSession(id="abc", transport_type="sse").to_dict()
        assert d["id"] == "abc"
        assert d["state"] == "uninitialized"
        assert d["transport_type"] == "sse"
        assert {"age_seconds", "idle_seconds", "ttl", "expired"} <= set(d)


# ════════════════════════════════════════════════════════════════════════
#  SessionManager tests
# ════════════════════════════════════════════════════════════════════════


class TestCreateAndLookup:
    @pytest.mark.asyncio
    async def test_create_session_is_active(self) -> None:
        sm = _manager()
        session = await sm.create_session()
        assert session.state is SessionState.ACTIVE
        assert isinstance(session.transport, FakeTransport)
        assert session.transport.session_id == session.id
        assert sm.lookup(session.id) is session
        assert sm.active_count == 1
        await sm.shutdown(1.0)

    @pytest.mark.asyncio
    async def test_ids_are_unique_and_never_reused(self) -> None:
        sm = _manager()
        seen = set()
        for _ in range(30):
            session = await sm.create_session()
            assert session.id not in seen
            seen.add(session.id)
            await sm.close(session.id)
        fresh = await sm.create_session()
        assert fresh.id not in seen
        await sm.shutdown(1.0)

    @pytest.mark.asyncio
    async def test_lookup_unknown(self) -> None:
        assert _manager().lookup("nope") is None

    @pytest.mark.asyncio
    async def test_lookup_expired_returns_none_and_closes(self) -> None:
        sm = _manager(default_ttl=5.0)
        session = await sm.create_session()
        session.last_active -= 10.0
        assert sm.lookup(session.id) is None
        await _settle()
        assert session.id not in sm
        assert session.state is SessionState.CLOSED
        await sm.shutdown(1.0)

    @pytest.mark.asyncio
    async def test_shared_server_by_default(self) -> None:
        sm = _manager()
        a = await sm.create_session()
        b = await sm.create_session()
        assert a.server is b.server
        assert len(sm.servers_built) == 1
        await sm.shutdown(1.0)

    @pytest.mark.asyncio
    async def test_per_session_server_released_on_close(self) -> None:
        sm = _manager(per_session_server=True)
        a = await sm.create_session()
        b = await sm.create_session()
        assert a.server is not b.server
        await sm.close(a.id)
        assert a.server is None
        await sm.shutdown(1.0)

    @pytest.mark.asyncio
    async def test_stream_session(self) -> None:
        sm = _manager()
        session = sm.open_stream_session()
        assert session.transport_type == "sse"
        assert sm.lookup(session.id) is session
        await sm.close(session.id)
        assert sm.lookup(session.id) is None

    @pytest.mark.asyncio
    async def test_stream_session_keeps_the_transport_issued_id(self) -> None:
        sm = _manager()
        server = object()
        session = sm.open_stream_session("ab" * 16, server=server)
        assert session.id == "ab" * 16
        assert session.server is server
        assert sm.lookup("ab" * 16) is session
        with pytest.raises(ValueError):
            sm.open_stream_session("ab" * 16)
        await sm.close(session.id)
        with pytest.raises(ValueError):
            sm.open_stream_session("ab" * 16)
        assert sm.servers_built == []


class TestClose:
    @pytest.mark.asyncio
    async def test_close_terminates_transport_and_cancels_task(self) -> None:
        sm = _manager()
        session = await sm.create_session()
        transport, task = session.transport, session.task
        assert await sm.close(session.id) is True
        assert transport.terminated
        assert task.done()
        assert session.id not in sm
        assert sm.lookup(session.id) is None

    @pytest.mark.asyncio
    async def test_close_twice_is_noop(self) -> None:
        sm = _manager()
        session = await sm.create_session()
        assert await sm.close(session.id) is True
        assert await sm.close(session.id) is False

    @pytest.mark.asyncio
    async def test_close_unknown_is_noop(self) -> None:
        assert await _manager().close("never-issued") is False

    @pytest.mark.asyncio
    async def test_concurrent_closes(self) -> None:
        sm = _manager()
        session = await sm.create_session()
        results = await asyncio.gather(*(sm.close(session.id) for _ in range(5)))
        assert results.count(True) == 1

    @pytest.mark.asyncio
    async def test_server_loop_exit_closes_session(self) -> None:
        sm = _manager(runner=return_immediately)
        session = await sm.create_session()
        await _settle()
        assert session.id not in sm
        assert session.state is SessionState.CLOSED


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_cleanup_loop_closes_expired(self) -> None:
        sm = _manager(default_ttl=0.05, cleanup_interval=0.02)
        sm.start()
        session = await sm.create_session()
        await asyncio.sleep(0.2)
        assert session.id not in sm
        await sm.shutdown(1.0)

    @pytest.mark.asyncio
    async def test_cleanup_spares_session_with_open_stream(self) -> None:
        sm = _manager(default_ttl=0.05, cleanup_interval=0.02)
        sm.start()
        held = await sm.create_session()
        idle = await sm.create_session()
        held.stream_opened()
        await asyncio.sleep(0.2)
        assert held.id in sm
        assert idle.id not in sm
        await sm.shutdown(1.0)

    @pytest.mark.asyncio
    async def test_shutdown_closes_all(self) -> None:
        sm = _manager()
        sm.start()
        sessions = [await sm.create_session() for _ in range(3)]
        sessions.append(sm.open_stream_session())
        await sm.shutdown(1.0)
        assert len(sm) == 0
        assert all(s.state is SessionState.CLOSED for s in sessions)
        assert not sm.accepting

    @pytest.mark.asyncio
    async def test_shutdown_deadline(self) -> None:
        sm = _manager(transport_factory=lambda sid: FakeTransport(sid, hang_on_terminate=True))
        session = await sm.create_session()
        await asyncio.wait_for(sm.shutdown(0.05), timeout=2.0)
        assert len(sm) == 0
        await _settle()
        assert session.task.done()

    @pytest.mark.asyncio
    async def test_no_new_sessions_after_shutdown(self) -> None:
        sm = _manager()
        await sm.shutdown(1.0)
        with pytest.raises(RuntimeError):
            await sm.create_session()
